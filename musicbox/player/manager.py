"""
Session Registry - one Session per guild, plus short-lived join codes
"""
import asyncio
import logging
from functools import partial
from typing import TYPE_CHECKING

from musicbox.errors import VoiceJoinError
from musicbox.player.session import Listener, Session
from musicbox.player.timers import ExpiringDict
from musicbox.utils import generate_code

if TYPE_CHECKING:
    from musicbox.player.audio import AudioStreamFactory
    from musicbox.player.voice import DiscordVoiceTransport

logger = logging.getLogger(__name__)


class SessionManager:
    """Owns every live Session.

    A guild that joined another guild's session through a join code is
    registered as an alias of that session, so commands issued there act on
    the shared queue. Both guilds' commands run on the same event loop and
    the last one applied wins.
    """

    def __init__(
        self,
        voice: "DiscordVoiceTransport",
        streams: "AudioStreamFactory",
        idle_timeout: float = 300.0,
        join_code_ttl: float = 300.0,
    ):
        self.voice = voice
        self.streams = streams
        self.idle_timeout = idle_timeout
        self.sessions: dict[int, Session] = {}
        self.join_codes: ExpiringDict[str, Session] = ExpiringDict(join_code_ttl)

    def get(self, guild_id: int) -> Session | None:
        return self.sessions.get(guild_id)

    def owned_sessions(self) -> list[Session]:
        """Sessions keyed by their own guild (aliases excluded)."""
        return [session for guild_id, session in self.sessions.items() if session.guild_id == guild_id]

    def create_session(self, guild_id: int, channel_id: int) -> Session:
        """Register a session and start joining voice in the background.

        A join failure is logged and leaves the session un-joined; its idle
        timer then cleans it up. Awaiting session.join_task surfaces the error.
        """
        existing = self.sessions.get(guild_id)
        if existing is not None:
            return existing

        session = Session(guild_id, self, self.voice, self.streams, self.idle_timeout)
        self.sessions[guild_id] = session
        session.join_task = asyncio.create_task(session.join_voice_channel(Listener(guild_id, channel_id)))
        session.join_task.add_done_callback(partial(self._join_done, session))
        logger.info(f"Created session for guild {guild_id}")
        return session

    def _join_done(self, session: Session, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error:
            logger.error(f"[{session.guild_id}] Failed to join voice: {error}")

    async def delete_session(self, session: Session) -> bool:
        """Tear a session down. Returns False if it was already gone."""
        if self.sessions.get(session.guild_id) is not session:
            return False
        for guild_id in [key for key, value in self.sessions.items() if value is session]:
            del self.sessions[guild_id]
        self.join_codes.remove_value(session)
        if session.join_task and not session.join_task.done():
            session.join_task.cancel()
        await session.close()
        logger.info(f"Deleted session for guild {session.guild_id}")
        return True

    async def leave(self, guild_id: int) -> bool:
        """Disconnect a guild: deletes its own session or detaches it from a joined one."""
        session = self.sessions.get(guild_id)
        if session is None:
            return False
        if session.guild_id == guild_id:
            return await self.delete_session(session)
        del self.sessions[guild_id]
        return await session.remove_listener(guild_id)

    def generate_join_code(self, guild_id: int) -> str | None:
        session = self.sessions.get(guild_id)
        if session is None or session.guild_id != guild_id:
            return None
        code = generate_code()
        while code in self.join_codes:
            code = generate_code()
        self.join_codes.set(code, session)
        logger.debug(f"[{guild_id}] Issued join code {code}")
        return code

    async def join_session(self, code: str, listener: Listener) -> Session | None:
        """Attach listener's voice channel to the session behind code.

        Returns None for unknown or expired codes, for guilds already attached
        and for guilds running a session of their own.
        """
        session = self.join_codes.get(code)
        if session is None or session.closed:
            return None
        if listener.guild_id == session.guild_id or listener.guild_id in session.listening_guild_ids:
            return None
        if listener.guild_id in self.sessions:
            return None

        self.sessions[listener.guild_id] = session
        try:
            await session.join_voice_channel(listener)
        except VoiceJoinError:
            if self.sessions.get(listener.guild_id) is session:
                del self.sessions[listener.guild_id]
            raise
        if session.closed:
            # Deleted while the listener was still connecting
            if self.sessions.get(listener.guild_id) is session:
                del self.sessions[listener.guild_id]
            return None
        return session

    async def close(self) -> None:
        for session in self.owned_sessions():
            await self.delete_session(session)
        self.join_codes.clear()
