"""
Audio Sink - playback state machine feeding voice connections

A sink holds at most one AudioResource and fans its PCM frames out to every
subscribed voice connection, so one decode process can serve several guilds.
discord.py reads frames from its own player threads; anything those threads
learn about the resource (first frame, end of stream) is marshalled back onto
the event loop and applied through handle_started / handle_end.
"""
import asyncio
import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Protocol

import discord

logger = logging.getLogger(__name__)

# Frames kept for subscribers that fall behind the fastest reader (~2s of audio)
FANOUT_BUFFER = 100


class SinkStatus(Enum):
    IDLE = "idle"
    BUFFERING = "buffering"
    PLAYING = "playing"
    PAUSED = "paused"


class EndReason(Enum):
    FINISHED = "finished"
    SUPERSEDED = "superseded"
    STOPPED = "stopped"


class VoiceConnection(Protocol):
    """The subset of discord.VoiceClient the sink drives."""

    @property
    def source(self) -> discord.AudioSource | None: ...

    def play(self, source: discord.AudioSource, *, after: Callable[[Exception | None], Any] | None = None) -> None: ...

    def stop(self) -> None: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...

    def is_playing(self) -> bool: ...

    def is_paused(self) -> bool: ...


class AudioResource:
    """A decoded PCM source plus the object it was built from."""

    def __init__(self, source: discord.AudioSource, metadata: Any = None, *, inline_volume: bool = False, volume: float = 1.0):
        if inline_volume:
            source = discord.PCMVolumeTransformer(source, volume=volume)
        self.source = source
        self.metadata = metadata
        self.started = False
        self.ended = False
        self.closed = False

    @property
    def volume(self) -> float | None:
        if isinstance(self.source, discord.PCMVolumeTransformer):
            return self.source.volume
        return None

    @volume.setter
    def volume(self, value: float) -> None:
        if isinstance(self.source, discord.PCMVolumeTransformer):
            self.source.volume = value

    def read(self) -> bytes:
        if self.closed:
            return b""
        return self.source.read()

    def cleanup(self) -> None:
        """Release the decode process. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        try:
            self.source.cleanup()
        except Exception as e:
            logger.debug(f"Error while cleaning up audio source: {e}")


@dataclass
class SinkEvent:
    """A status transition. `reason` tells why the previous resource went away."""
    previous: SinkStatus
    current: SinkStatus
    resource: AudioResource | None
    reason: EndReason | None = None
    error: Exception | None = None


class Subscription:
    """Link between a sink and one voice connection."""

    def __init__(self, sink: "AudioSink", connection: VoiceConnection):
        self.sink = sink
        self.connection = connection
        self.active = True
        self.source: "_SubscriberSource | None" = None
        self._cursor = 0
        self._generation = -1

    def unsubscribe(self) -> None:
        self.sink._unsubscribe(self)


class _SubscriberSource(discord.AudioSource):
    """What a voice connection actually plays: frames pulled from the sink."""

    def __init__(self, subscription: Subscription):
        self.subscription = subscription

    def read(self) -> bytes:
        return self.subscription.sink._read_frame(self.subscription)

    def is_opus(self) -> bool:
        return False

    def cleanup(self) -> None:
        # The sink owns the underlying resource
        pass


class AudioSink:
    """Playback destination with explicit Idle/Buffering/Playing/Paused states."""

    def __init__(self, name: str = "sink"):
        self.name = name
        self.status = SinkStatus.IDLE
        self._resource: AudioResource | None = None
        self._subscriptions: list[Subscription] = []
        self._listeners: list[Callable[[SinkEvent], None]] = []
        self._subscription_listeners: list[Callable[[Subscription, bool], None]] = []
        self._loop: asyncio.AbstractEventLoop | None = None

        # Guards resource swaps and the fan-out buffer against voice threads
        self._lock = threading.Lock()
        self._read_lock = threading.Lock()
        self._frames: deque[bytes] = deque(maxlen=FANOUT_BUFFER)
        self._cursor = 0
        self._generation = 0

    @property
    def resource(self) -> AudioResource | None:
        return self._resource

    @property
    def subscriptions(self) -> tuple[Subscription, ...]:
        return tuple(self._subscriptions)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def add_listener(self, callback: Callable[[SinkEvent], None]) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[SinkEvent], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def add_subscription_listener(self, callback: Callable[[Subscription, bool], None]) -> None:
        """callback(subscription, subscribed) runs on every subscribe/unsubscribe."""
        self._subscription_listeners.append(callback)

    # ==================== PLAYBACK ====================

    def play(self, resource: AudioResource) -> None:
        """Start a resource, replacing (not finishing) whatever was playing."""
        self._capture_loop()
        old = self._swap(resource)
        if old is not None:
            old.cleanup()
        self._set_status(SinkStatus.BUFFERING, resource, EndReason.SUPERSEDED if old else None)
        for subscription in list(self._subscriptions):
            self._feed(subscription)

    def stop(self) -> bool:
        """Drop the current resource. Returns False when nothing was loaded."""
        old = self._swap(None)
        if old is None:
            return False
        old.cleanup()
        self._set_status(SinkStatus.IDLE, old, EndReason.STOPPED)
        return True

    def pause(self) -> bool:
        if self._resource is None or self.status not in (SinkStatus.PLAYING, SinkStatus.BUFFERING):
            return False
        for subscription in self._subscriptions:
            connection = subscription.connection
            if connection.is_playing() and connection.source is subscription.source:
                connection.pause()
        self._set_status(SinkStatus.PAUSED, self._resource)
        return True

    def unpause(self) -> bool:
        if self.status is not SinkStatus.PAUSED or self._resource is None:
            return False
        status = SinkStatus.PLAYING if self._resource.started else SinkStatus.BUFFERING
        self._set_status(status, self._resource)
        for subscription in list(self._subscriptions):
            self._feed(subscription)
        return True

    # ==================== TRANSITIONS ====================

    def handle_started(self, resource: AudioResource) -> None:
        """First frame of `resource` went out."""
        if resource is not self._resource or self.status is not SinkStatus.BUFFERING:
            return
        self._set_status(SinkStatus.PLAYING, resource)

    def handle_end(self, resource: AudioResource, error: Exception | None = None) -> None:
        """`resource` ran out on its own. Stale resources are ignored."""
        if resource is not self._resource:
            return
        self._swap(None)
        resource.cleanup()
        if error:
            logger.error(f"[{self.name}] Playback error: {error}")
        self._set_status(SinkStatus.IDLE, resource, EndReason.FINISHED, error)

    # ==================== SUBSCRIPTIONS ====================

    def subscribe(self, connection: VoiceConnection) -> Subscription:
        self._capture_loop()
        for subscription in self._subscriptions:
            if subscription.connection is connection:
                return subscription
        subscription = Subscription(self, connection)
        self._subscriptions.append(subscription)
        logger.debug(f"[{self.name}] Subscribed ({self.subscriber_count} total)")
        self._notify_subscription(subscription, True)
        if self._resource is not None and self.status is not SinkStatus.PAUSED:
            self._feed(subscription)
        return subscription

    def remove_subscriptions(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.unsubscribe()

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription not in self._subscriptions:
            return
        self._subscriptions.remove(subscription)
        subscription.active = False
        connection = subscription.connection
        if subscription.source is not None and connection.source is subscription.source:
            connection.stop()
        logger.debug(f"[{self.name}] Unsubscribed ({self.subscriber_count} left)")
        self._notify_subscription(subscription, False)

    def _feed(self, subscription: Subscription) -> None:
        """Make sure the connection is pulling frames from this sink."""
        connection = subscription.connection
        if subscription.source is not None and connection.source is subscription.source:
            if connection.is_paused():
                connection.resume()
            if connection.is_playing():
                return
        elif connection.is_playing() or connection.is_paused():
            connection.stop()

        subscription.source = _SubscriberSource(subscription)
        try:
            connection.play(subscription.source, after=partial(self._after_subscriber, subscription))
        except Exception as e:
            logger.error(f"[{self.name}] Failed to start voice playback: {e}")

    def _after_subscriber(self, subscription: Subscription, error: Exception | None) -> None:
        # Runs on the voice player thread
        self._call_soon(self._subscriber_finished, subscription, error)

    def _subscriber_finished(self, subscription: Subscription, error: Exception | None) -> None:
        if error:
            logger.error(f"[{self.name}] Voice player error: {error}")
        resource = self._resource
        if not subscription.active or resource is None or resource.ended:
            return
        if self.status is SinkStatus.PAUSED:
            return
        if subscription.connection.source is None or not subscription.connection.is_playing():
            self._feed(subscription)

    # ==================== FRAME FAN-OUT ====================

    def _read_frame(self, subscription: Subscription) -> bytes:
        # Runs on voice player threads
        while True:
            with self._lock:
                resource = self._resource
                if resource is None or not subscription.active:
                    return b""
                frame = self._buffered_frame(subscription)
                if frame is not None:
                    return frame
                generation = self._generation

            # Only one thread decodes at a time; self._lock stays free for swaps
            with self._read_lock:
                with self._lock:
                    if generation != self._generation:
                        continue
                    frame = self._buffered_frame(subscription)
                    if frame is not None:
                        return frame
                try:
                    frame = resource.read()
                    error = None
                except Exception as e:
                    frame, error = b"", e

            with self._lock:
                if generation != self._generation:
                    # Swapped out mid-read, start over on whatever replaced it
                    continue
                if not frame:
                    if not resource.ended:
                        resource.ended = True
                        self._call_soon(self.handle_end, resource, error)
                    return b""

                self._frames.append(frame)
                self._cursor += 1
                subscription._cursor = self._cursor
                if not resource.started:
                    resource.started = True
                    self._call_soon(self.handle_started, resource)
                return frame

    def _buffered_frame(self, subscription: Subscription) -> bytes | None:
        """Next frame already decoded for another reader, if any. Caller holds self._lock."""
        if subscription._generation != self._generation:
            # New readers start from the oldest buffered frame
            subscription._generation = self._generation
            subscription._cursor = self._cursor - len(self._frames)

        behind = min(self._cursor - subscription._cursor, len(self._frames))
        if behind > 0:
            subscription._cursor = self._cursor - behind + 1
            return self._frames[-behind]
        return None

    # ==================== INTERNALS ====================

    def _swap(self, resource: AudioResource | None) -> AudioResource | None:
        with self._lock:
            old = self._resource
            self._resource = resource
            self._generation += 1
            self._frames.clear()
            self._cursor = 0
        return old

    def _set_status(self, status: SinkStatus, resource: AudioResource | None,
                    reason: EndReason | None = None, error: Exception | None = None) -> None:
        event = SinkEvent(self.status, status, resource, reason, error)
        self.status = status
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"[{self.name}] Sink listener failed: {e}", exc_info=True)

    def _notify_subscription(self, subscription: Subscription, subscribed: bool) -> None:
        for listener in list(self._subscription_listeners):
            try:
                listener(subscription, subscribed)
            except Exception as e:
                logger.error(f"[{self.name}] Subscription listener failed: {e}", exc_info=True)

    def _capture_loop(self) -> None:
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            pass

    def _call_soon(self, callback: Callable[..., Any], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(callback, *args)
