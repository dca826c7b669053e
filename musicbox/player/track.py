"""
Track - a queued YouTube video and its segment-adjusted length
"""
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from musicbox.player.segments import KeepRange, Segment, keep_ranges, select_segments, skipped_duration

if TYPE_CHECKING:
    from musicbox.player.audio import AudioStreamFactory
    from musicbox.player.sink import AudioResource


@dataclass
class TrackData:
    """Everything needed to build a Track, as returned by the metadata provider."""
    channel_id: str
    channel_title: str
    id: str
    title: str
    url: str
    length: float  # seconds
    segments: list[Segment] = field(default_factory=list)


@dataclass
class PlaylistData:
    channel_id: str
    channel_title: str
    playlist_id: str
    playlist_title: str
    tracks: list[TrackData] = field(default_factory=list)

    @property
    def url(self) -> str:
        return f"https://www.youtube.com/playlist?list={self.playlist_id}"


@dataclass
class StreamOptions:
    """How a track's raw audio should be cut before playback."""
    seek: float | None = None
    skip_segments: list[Segment] = field(default_factory=list)

    def keep_ranges(self, length: float) -> list[KeepRange] | None:
        return keep_ranges(length, self.skip_segments, self.seek)


@dataclass
class DownloadRequest:
    """A track snapshot waiting behind a download link."""
    track: "Track"
    options: StreamOptions


class Track:
    """A playable unit in a session's queue.

    Tracks are rebuilt from their data every time they are played or queued,
    so `current_length` (which depends on the session's skip settings) is
    never shared between two queue slots.

    Resources are not created up front: a Track only turns into audio when it
    is taken from the queue.
    """

    def __init__(self, data: "TrackData | Track"):
        self.channel_id: str = data.channel_id
        self.channel_title: str = data.channel_title
        self.id: str = data.id
        self.title: str = data.title
        self.url: str = data.url
        self.length: float = data.length
        self.segments: tuple[Segment, ...] = tuple(data.segments)
        self.current_length: float = self.length

    def apply_segments(self, categories: Iterable[str], enabled: bool = True) -> list[Segment]:
        """Recompute current_length for the selected categories and return the segments to skip."""
        selected = select_segments(self.segments, categories, enabled)
        self.current_length = self.length - skipped_duration(selected, self.length)
        return selected

    async def create_audio_resource(
        self, streams: "AudioStreamFactory", options: StreamOptions | None = None
    ) -> "AudioResource":
        return await streams.create_resource(self, options or StreamOptions())

    def to_data(self) -> TrackData:
        return TrackData(
            channel_id=self.channel_id,
            channel_title=self.channel_title,
            id=self.id,
            title=self.title,
            url=self.url,
            length=self.length,
            segments=list(self.segments),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url,
            "channel_id": self.channel_id,
            "channel_title": self.channel_title,
            "length": self.length,
            "current_length": self.current_length,
        }

    def __repr__(self) -> str:
        return f"<Track id={self.id!r} title={self.title!r} length={self.length} current_length={self.current_length}>"
