"""Tests for the session registry and join codes."""
import asyncio

import pytest

from musicbox.errors import VoiceJoinError
from musicbox.player.manager import SessionManager
from musicbox.player.session import Listener


class TestCreateDelete:
    async def test_create_joins_in_background(self, manager, voice):
        session = manager.create_session(1, 100)
        assert manager.get(1) is session
        await session.join_task
        assert voice.joins == [(1, 100)]
        assert session.voice_channel_id == 100

    async def test_one_session_per_guild(self, manager):
        first = manager.create_session(1, 100)
        assert manager.create_session(1, 200) is first

    async def test_join_failure_is_observable(self, manager, voice):
        voice.failing_guilds.add(1)
        session = manager.create_session(1, 100)
        with pytest.raises(VoiceJoinError):
            await session.join_task
        # The session stays registered until its idle timer cleans it up
        assert manager.get(1) is session
        assert session.idle_timer_armed

    async def test_delete_twice(self, manager, session, voice):
        assert await manager.delete_session(session) is True
        assert await manager.delete_session(session) is False
        assert manager.get(1) is None
        assert session.closed
        assert voice.disconnects == [1]

    async def test_delete_cancels_pending_join(self, manager, voice, settle):
        voice.gate = asyncio.Event()
        session = manager.create_session(1, 100)
        await settle()
        await manager.delete_session(session)
        await settle()
        assert session.join_task.cancelled()

    async def test_leave_own_guild(self, manager, session):
        assert await manager.leave(1) is True
        assert manager.get(1) is None
        assert await manager.leave(1) is False

    async def test_close(self, manager):
        for guild_id in (1, 2):
            await manager.create_session(guild_id, guild_id * 100).join_task
        await manager.close()
        assert manager.sessions == {}


class TestIdleTimeout:
    async def test_idle_session_is_deleted(self, voice, streams, track_data, settle):
        manager = SessionManager(voice, streams, idle_timeout=0.05)
        session = manager.create_session(1, 100)
        await session.join_task
        await asyncio.sleep(0.1)
        await settle()
        assert manager.get(1) is None
        assert session.closed

    async def test_playback_cancels_idle_timer(self, voice, streams, track_data):
        manager = SessionManager(voice, streams, idle_timeout=0.05)
        session = manager.create_session(1, 100)
        await session.join_task
        await session.play(track_data())
        await asyncio.sleep(0.1)
        assert manager.get(1) is session

    async def test_stop_rearms_timer(self, voice, streams, track_data, settle):
        manager = SessionManager(voice, streams, idle_timeout=0.05)
        session = manager.create_session(1, 100)
        await session.join_task
        await session.play(track_data())
        session.stop()
        await asyncio.sleep(0.1)
        await settle()
        assert manager.get(1) is None


class TestJoinCodes:
    async def test_generate_requires_session(self, manager):
        assert manager.generate_join_code(1) is None

    async def test_codes_are_unique(self, manager, session):
        codes = {manager.generate_join_code(1) for _ in range(20)}
        assert len(codes) == 20

    async def test_join_session(self, manager, session, voice, track_data):
        code = manager.generate_join_code(1)
        joined = await manager.join_session(code, Listener(2, 300))
        assert joined is session
        assert manager.get(2) is session
        assert session.listening_guild_ids == [2]

        await session.play(track_data())
        assert voice.connections[2].is_playing()

    async def test_listener_cannot_share_a_session(self, manager, session):
        await manager.create_session(2, 300).join_task
        assert manager.generate_join_code(2) is not None
        code = manager.generate_join_code(1)
        assert await manager.join_session(code, Listener(2, 300)) is None

    async def test_join_twice(self, manager, session):
        code = manager.generate_join_code(1)
        await manager.join_session(code, Listener(2, 300))
        assert await manager.join_session(code, Listener(2, 300)) is None
        assert await manager.join_session(code, Listener(1, 100)) is None

    async def test_alias_cannot_issue_codes(self, manager, session):
        await manager.join_session(manager.generate_join_code(1), Listener(2, 300))
        assert manager.generate_join_code(2) is None

    async def test_unknown_code(self, manager, session):
        assert await manager.join_session("nope", Listener(2, 300)) is None

    async def test_code_expires(self, voice, streams):
        manager = SessionManager(voice, streams, join_code_ttl=0.05)
        await manager.create_session(1, 100).join_task
        code = manager.generate_join_code(1)
        await asyncio.sleep(0.1)
        assert await manager.join_session(code, Listener(2, 300)) is None

    async def test_failed_join_unregisters_alias(self, manager, session, voice):
        voice.failing_guilds.add(2)
        code = manager.generate_join_code(1)
        with pytest.raises(VoiceJoinError):
            await manager.join_session(code, Listener(2, 300))
        assert manager.get(2) is None

    async def test_session_deleted_during_join(self, manager, session, voice):
        code = manager.generate_join_code(1)
        voice.gate = asyncio.Event()
        joining = asyncio.create_task(manager.join_session(code, Listener(2, 300)))
        await asyncio.sleep(0)
        assert await manager.delete_session(session) is True
        voice.gate.set()
        assert await joining is None
        assert manager.get(2) is None
        assert 2 in voice.disconnects

    async def test_leave_alias_keeps_owner_playing(self, manager, session, voice, track_data):
        await manager.join_session(manager.generate_join_code(1), Listener(2, 300))
        await session.play(track_data())
        assert await manager.leave(2) is True
        assert manager.get(2) is None
        assert manager.get(1) is session
        assert voice.connections[1].is_playing()

    async def test_delete_drops_codes_and_aliases(self, manager, session, voice):
        code = manager.generate_join_code(1)
        await manager.join_session(code, Listener(2, 300))
        await manager.delete_session(session)
        assert code not in manager.join_codes
        assert manager.get(2) is None
        assert set(voice.disconnects) == {1, 2}
