"""Shared fixtures for the player tests.

Nothing here touches Discord, ffmpeg or the network: see fakes.py.
"""
import asyncio

import pytest

from fakes import FakeStreams, FakeVoiceTransport
from musicbox.config import StationInfo
from musicbox.player.manager import SessionManager
from musicbox.player.radio import RadioManager
from musicbox.player.segments import Segment
from musicbox.player.track import TrackData


@pytest.fixture
def voice() -> FakeVoiceTransport:
    return FakeVoiceTransport()


@pytest.fixture
def streams() -> FakeStreams:
    return FakeStreams()


@pytest.fixture
def manager(voice, streams) -> SessionManager:
    return SessionManager(voice, streams, idle_timeout=5.0, join_code_ttl=5.0)


@pytest.fixture
async def session(manager):
    """A session for guild 1 that has joined voice channel 100."""
    session = manager.create_session(1, 100)
    await session.join_task
    return session


@pytest.fixture
def stations() -> dict[str, StationInfo]:
    return {
        "StationX": StationInfo(stream_url="http://radio.test/x", site_url="https://x.test"),
        "StationY": StationInfo(stream_url="http://radio.test/y", site_url="https://y.test"),
    }


@pytest.fixture
def radio(streams, stations) -> RadioManager:
    return RadioManager(streams, stations, idle_timeout=0.05)


@pytest.fixture
def track_data():
    """Factory for TrackData with sensible defaults."""

    def make(video_id: str = "aaaaaaaaaaa", length: float = 180, segments=()) -> TrackData:
        return TrackData(
            channel_id="UC123",
            channel_title="Some Channel",
            id=video_id,
            title=f"Video {video_id}",
            url=f"https://www.youtube.com/watch?v={video_id}",
            length=length,
            segments=list(segments),
        )

    return make


@pytest.fixture
def sponsor_segment():
    return Segment(category="sponsor", start_time=30, end_time=50)


@pytest.fixture
def settle():
    """Let queued loop callbacks (and the tasks they spawn) run."""

    async def run(rounds: int = 10):
        for _ in range(rounds):
            await asyncio.sleep(0)

    return run
