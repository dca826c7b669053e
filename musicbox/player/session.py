"""
Playback Session - per-guild queue, current track and idle timer

All state lives on the event loop. Every await inside an operation is a point
where another command may have changed the session, so play() re-checks its
generation token and the radio flag before committing a resource it built
while suspended.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Coroutine

from musicbox.config import ALL_CATEGORIES
from musicbox.player.sink import AudioSink, EndReason, SinkEvent, SinkStatus, Subscription
from musicbox.player.timers import Timeout
from musicbox.player.track import StreamOptions, Track, TrackData

if TYPE_CHECKING:
    from musicbox.player.audio import AudioStreamFactory
    from musicbox.player.manager import SessionManager
    from musicbox.player.radio import RadioStation
    from musicbox.player.voice import DiscordVoiceTransport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Listener:
    """A voice channel that receives a session's audio."""
    guild_id: int
    channel_id: int


@dataclass
class PlayInfo:
    track: Track | None  # None when nothing could be started
    eta: float  # seconds until the track starts


class SessionState(Enum):
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"
    RADIO_PLAYING = "radio"


class Session:
    """Queue-driven playback for one guild (plus any guilds that joined it)."""

    def __init__(
        self,
        guild_id: int,
        manager: "SessionManager",
        voice: "DiscordVoiceTransport",
        streams: "AudioStreamFactory",
        idle_timeout: float = 300.0,
    ):
        self.guild_id = guild_id
        self.manager = manager
        self.voice = voice
        self.streams = streams

        self.sink = AudioSink(name=f"session:{guild_id}")
        self.sink.add_listener(self._on_sink_event)

        self.queue: list[Track] = []
        self.queue_time: float = 0.0
        self.current_track: Track | None = None
        self.current_track_end: datetime | None = None

        self.playing = False
        self.repeat = False
        self.shuffle = False
        self.sb_enabled = True
        self.categories: list[str] = list(ALL_CATEGORIES)
        self._volume = 1.0

        self.voice_channel_id: int | None = None
        self.listening_guild_ids: list[int] = []
        self._listener_channels: dict[int, int] = {}
        self.radio_station: "RadioStation | None" = None
        self._subscriptions: dict[int, Subscription] = {}

        self.closed = False
        self.join_task: asyncio.Task | None = None
        self._generation = 0
        self._loading = 0
        self._tasks: set[asyncio.Task] = set()
        self._timeout = Timeout(idle_timeout, self._on_idle_timeout)

    # ==================== STATE ====================

    @property
    def radio_playing(self) -> bool:
        return self.radio_station is not None

    @property
    def state(self) -> SessionState:
        if self.radio_playing:
            return SessionState.RADIO_PLAYING
        if self.sink.status is SinkStatus.PAUSED:
            return SessionState.PAUSED
        if self.playing:
            return SessionState.PLAYING
        return SessionState.IDLE

    @property
    def volume(self) -> float:
        return self._volume

    @property
    def idle_timer_armed(self) -> bool:
        return self._timeout.armed

    # ==================== PLAYBACK ====================

    async def play(self, track_data: TrackData | Track, seek: float | None = None) -> Track | None:
        """Start a fresh copy of track_data, superseding whatever is playing.

        Returns the Track that ended up in the sink, or None when nothing did
        (radio active, session closed, superseded while loading, or every
        candidate was unplayable).
        """
        if self.radio_playing or self.closed:
            return None

        self.playing = True
        self._timeout.cancel()
        self._generation += 1
        generation = self._generation
        track = Track(track_data)

        self._loading += 1
        try:
            while True:
                skip_segments = track.apply_segments(self.categories, self.sb_enabled)
                try:
                    resource = await track.create_audio_resource(self.streams, StreamOptions(seek, skip_segments))
                    break
                except Exception as e:
                    logger.error(f"[{self.guild_id}] Skipping unplayable track {track.title}: {e}")
                if generation != self._generation or self.radio_playing or self.closed:
                    return None
                promoted = self._promote(allow_repeat=False)
                if promoted is None:
                    self._go_idle()
                    return None
                track, seek = Track(promoted), None
        finally:
            self._loading -= 1

        if generation != self._generation or self.radio_playing or self.closed:
            # Something else took over while we were opening the stream
            resource.cleanup()
            return None

        resource.volume = self._volume
        self.current_track = track
        self.current_track_end = datetime.now(timezone.utc) + timedelta(seconds=track.current_length)
        self.sink.play(resource)
        logger.info(f"[{self.guild_id}] Now playing: {track.title}")
        return track

    async def add_track(self, track_data: TrackData | Track, index: int | None = None) -> PlayInfo:
        """Play now when idle, otherwise queue (at a clamped index) and report the ETA."""
        if not self.playing:
            return PlayInfo(await self.play(track_data), 0.0)

        track = Track(track_data)
        track.apply_segments(self.categories, self.sb_enabled)
        self.queue_time += track.current_length
        if index is None:
            self.queue.append(track)
        else:
            index = min(max(index, 0), len(self.queue))
            self.queue.insert(index, track)
        return PlayInfo(track, self.queue_time)

    async def skip(self, amount: int = 1) -> Track | None:
        """Drop the current track and the next `amount - 1` queued ones, then play the one after.

        Asking for more tracks than are queued empties the queue and stops.
        """
        if self.radio_playing or self.closed:
            return None
        amount = max(1, amount)
        popped = self.queue[:amount]
        del self.queue[:amount]
        for track in popped:
            self.queue_time -= track.current_length
        if not self.queue:
            self.queue_time = 0.0

        if len(popped) < amount:
            self.stop()
            return None
        return await self.play(popped[-1])

    def stop(self) -> None:
        """Halt playback and arm the idle timer. The queue is kept."""
        if self.radio_playing:
            self.stop_radio()
        self._generation += 1
        self.sink.stop()
        self.current_track = None
        self.current_track_end = None
        self.playing = False
        if not self.closed:
            self._timeout.arm()

    def pause(self) -> bool:
        if self.radio_playing or self.current_track is None:
            return False
        return self.sink.pause()

    def resume(self) -> bool:
        if self.radio_playing:
            return False
        return self.sink.unpause()

    def set_volume(self, level: float) -> None:
        self._volume = max(0.0, level)
        if self.sink.resource is not None:
            self.sink.resource.volume = self._volume

    def remove(self, index: int) -> Track | None:
        """Remove a queued track by position. Out of range returns None."""
        if not 0 <= index < len(self.queue):
            return None
        track = self.queue.pop(index)
        self.queue_time = sum(t.current_length for t in self.queue)
        return track

    # ==================== RADIO ====================

    def play_radio(self, station: "RadioStation") -> bool:
        """Route every voice connection to a station. Returns False for the station already playing."""
        if self.closed:
            return False
        self.playing = True
        self._timeout.cancel()
        if self.radio_station is not None and self.radio_station.name == station.name:
            return False

        if self.radio_station is None:
            self._generation += 1
            self.sink.stop()
            self.current_track = None
            self.current_track_end = None
        self.radio_station = station
        station.add_close_listener(self._on_station_closed)
        self._route(station)
        logger.info(f"[{self.guild_id}] Radio: {station.name}")
        return True

    def stop_radio(self) -> bool:
        if self.radio_station is None:
            return False
        self.radio_station = None
        self._route(self.sink)
        self.playing = False
        if not self.closed:
            self._timeout.arm()
        return True

    def _on_station_closed(self, station: "RadioStation") -> None:
        if self.radio_station is station:
            logger.warning(f"[{self.guild_id}] Radio {station.name} went away")
            self.stop_radio()

    def _route(self, target: "AudioSink | RadioStation") -> None:
        for guild_id, subscription in list(self._subscriptions.items()):
            connection = subscription.connection
            subscription.unsubscribe()
            self._subscriptions[guild_id] = target.subscribe(connection)

    # ==================== TOGGLES ====================

    def toggle_repeat(self) -> bool:
        self.repeat = not self.repeat
        return self.repeat

    def toggle_shuffle(self) -> bool:
        self.shuffle = not self.shuffle
        return self.shuffle

    def toggle_sponsor_block(self) -> bool:
        self.sb_enabled = not self.sb_enabled
        self._update_tracks_length()
        return self.sb_enabled

    def toggle_category(self, category: str) -> bool:
        """Returns True when the category is now selected."""
        if category in self.categories:
            self.categories.remove(category)
            selected = False
        else:
            self.categories.append(category)
            selected = True
        self._update_tracks_length()
        return selected

    def _update_tracks_length(self) -> None:
        for track in self.queue:
            track.apply_segments(self.categories, self.sb_enabled)
        self.queue_time = sum(track.current_length for track in self.queue)

    # ==================== VOICE ====================

    async def join_voice_channel(self, listener: Listener) -> Any:
        """Connect (or move) a guild's voice client and subscribe it to the active sink.

        Voice errors propagate. The idle timer is armed first so a session
        that never manages to connect still cleans itself up.
        """
        if not self.playing:
            self._timeout.arm()
        connection = await self.voice.join(listener.guild_id, listener.channel_id)
        if self.closed:
            await self.voice.disconnect(listener.guild_id)
            return None

        self.handle_channel_moved(listener.guild_id, listener.channel_id)
        if listener.guild_id != self.guild_id and listener.guild_id not in self.listening_guild_ids:
            self.listening_guild_ids.append(listener.guild_id)

        old = self._subscriptions.pop(listener.guild_id, None)
        if old is not None and old.connection is not connection:
            old.unsubscribe()
        target = self.radio_station or self.sink
        self._subscriptions[listener.guild_id] = target.subscribe(connection)
        logger.info(f"[{self.guild_id}] Listening in guild {listener.guild_id}, channel {listener.channel_id}")
        return connection

    def channel_for(self, guild_id: int) -> int | None:
        """Voice channel the session plays into in the given guild."""
        if guild_id == self.guild_id:
            return self.voice_channel_id
        return self._listener_channels.get(guild_id)

    def handle_channel_moved(self, guild_id: int, channel_id: int) -> None:
        if guild_id == self.guild_id:
            self.voice_channel_id = channel_id
        else:
            self._listener_channels[guild_id] = channel_id

    async def move(self, channel_id: int) -> Any:
        return await self.join_voice_channel(Listener(self.guild_id, channel_id))

    async def remove_listener(self, guild_id: int) -> bool:
        """Detach a joined guild without touching the owner's playback."""
        if guild_id == self.guild_id or guild_id not in self.listening_guild_ids:
            return False
        self.listening_guild_ids.remove(guild_id)
        self._listener_channels.pop(guild_id, None)
        subscription = self._subscriptions.pop(guild_id, None)
        if subscription is not None:
            subscription.unsubscribe()
        await self.voice.disconnect(guild_id)
        return True

    async def close(self) -> None:
        """Stop everything and leave every voice channel. Used by the manager on delete."""
        self.stop()
        self.closed = True
        self._timeout.cancel()
        for subscription in self._subscriptions.values():
            subscription.unsubscribe()
        self._subscriptions.clear()
        for guild_id in [self.guild_id, *self.listening_guild_ids]:
            await self.voice.disconnect(guild_id)
        self.listening_guild_ids.clear()

    # ==================== TRANSITIONS ====================

    def _on_sink_event(self, event: SinkEvent) -> None:
        if event.current is SinkStatus.PLAYING:
            self._timeout.cancel()
        elif event.current is SinkStatus.IDLE and event.reason is EndReason.FINISHED:
            if self._loading or self.closed:
                return
            self._advance()

    def _advance(self) -> None:
        """Natural end of the current resource."""
        track = self._promote()
        if track is None:
            self._go_idle()
            return
        self.playing = True
        self._spawn(self.play(track))

    def _promote(self, allow_repeat: bool = True) -> Track | None:
        """Pick the next track: repeat, then a random index under shuffle, then FIFO."""
        if allow_repeat and self.repeat and self.current_track is not None:
            return self.current_track
        if not self.queue:
            return None
        index = random.randrange(len(self.queue)) if self.shuffle else 0
        track = self.queue.pop(index)
        self.queue_time -= track.current_length
        if not self.queue:
            self.queue_time = 0.0
        return track

    def _go_idle(self) -> None:
        self.sink.stop()
        self.current_track = None
        self.current_track_end = None
        self.playing = False
        if not self.closed:
            self._timeout.arm()

    def _on_idle_timeout(self) -> None:
        logger.info(f"[{self.guild_id}] Idle timeout, leaving voice")
        self._spawn(self.manager.delete_session(self))

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception():
            logger.error(f"[{self.guild_id}] Background task failed: {task.exception()}")

    def to_dict(self) -> dict:
        return {
            "guild_id": str(self.guild_id),
            "state": self.state.value,
            "current_track": self.current_track.to_dict() if self.current_track else None,
            "current_track_end": self.current_track_end.isoformat() if self.current_track_end else None,
            "queue": [track.to_dict() for track in self.queue],
            "queue_time": self.queue_time,
            "repeat": self.repeat,
            "shuffle": self.shuffle,
            "sponsor_block": self.sb_enabled,
            "categories": list(self.categories),
            "volume": self._volume,
            "radio": self.radio_station.name if self.radio_station else None,
            "listening_guild_ids": [str(guild_id) for guild_id in self.listening_guild_ids],
        }

    def __repr__(self) -> str:
        return f"<Session guild_id={self.guild_id} state={self.state.value} queue={len(self.queue)}>"
