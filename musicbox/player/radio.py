"""
Radio Station Pool - one shared live stream per station name
"""
import asyncio
import logging
from collections.abc import Callable, Mapping
from functools import partial
from typing import TYPE_CHECKING

from musicbox.config import STATIONS, StationInfo
from musicbox.errors import StationUnavailable
from musicbox.player.sink import AudioResource, AudioSink, EndReason, SinkEvent, SinkStatus, Subscription
from musicbox.player.timers import Timeout

if TYPE_CHECKING:
    from musicbox.player.audio import AudioStreamFactory
    from musicbox.player.sink import VoiceConnection

logger = logging.getLogger(__name__)

MAX_RECONNECTS = 3


class RadioStation:
    """A live stream that any number of guilds can listen to at once.

    The station owns its sink. It deletes itself through the manager once
    nobody has been subscribed for `idle_timeout` seconds.
    """

    def __init__(
        self,
        name: str,
        info: StationInfo,
        resource: AudioResource,
        manager: "RadioManager",
        idle_timeout: float = 10.0,
    ):
        self.name = name
        self.stream_url = info.stream_url
        self.site_url = info.site_url
        self.manager = manager
        self.closed = False

        self.sink = AudioSink(name=f"radio:{name}")
        self.sink.add_listener(self._on_sink_event)
        self.sink.add_subscription_listener(self._on_subscription)
        self._subscriptions: set[Subscription] = set()
        self._close_listeners: list[Callable[["RadioStation"], None]] = []
        self._reconnects = 0
        self._reconnect_task: asyncio.Task | None = None

        self._timeout = Timeout(idle_timeout, self._on_idle_timeout)
        self.sink.play(resource)
        # Nobody is listening yet
        self._timeout.arm()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, connection: "VoiceConnection") -> Subscription:
        return self.sink.subscribe(connection)

    def remove_subscriptions(self) -> None:
        self.sink.remove_subscriptions()

    def add_close_listener(self, callback: Callable[["RadioStation"], None]) -> None:
        if callback not in self._close_listeners:
            self._close_listeners.append(callback)

    def close(self) -> None:
        """Detach every listener and drop the upstream."""
        if self.closed:
            return
        self.closed = True
        self._timeout.cancel()
        task = self._reconnect_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self.remove_subscriptions()
        self.sink.stop()
        for callback in list(self._close_listeners):
            try:
                callback(self)
            except Exception as e:
                logger.error(f"Radio {self.name} close listener failed: {e}", exc_info=True)
        self._close_listeners.clear()

    def _on_subscription(self, subscription: Subscription, subscribed: bool) -> None:
        if subscribed:
            self._subscriptions.add(subscription)
            self._timeout.cancel()
        else:
            self._subscriptions.discard(subscription)
            if not self._subscriptions and not self.closed:
                self._timeout.arm()

    def _on_sink_event(self, event: SinkEvent) -> None:
        if event.current is SinkStatus.PLAYING:
            self._reconnects = 0
        elif event.current is SinkStatus.IDLE and event.reason is EndReason.FINISHED and not self.closed:
            self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        if self._reconnects >= MAX_RECONNECTS:
            logger.error(f"Radio {self.name} keeps dropping, giving up")
            self.manager.delete_radio_station(self)
            return
        self._reconnects += 1
        logger.warning(f"Radio {self.name} upstream ended, reconnecting ({self._reconnects}/{MAX_RECONNECTS})")
        try:
            resource = await self.manager.streams.create_live_resource(self.stream_url)
        except StationUnavailable as e:
            logger.error(f"Radio {self.name} reconnect failed: {e}")
            self.manager.delete_radio_station(self)
            return
        if self.closed:
            resource.cleanup()
            return
        self.sink.play(resource)

    def _on_idle_timeout(self) -> None:
        logger.info(f"Radio {self.name} has no listeners, closing")
        self.manager.delete_radio_station(self)

    def __repr__(self) -> str:
        return f"<RadioStation name={self.name!r} subscribers={self.subscriber_count}>"


class RadioManager:
    """Pool of open stations keyed by name."""

    def __init__(
        self,
        streams: "AudioStreamFactory",
        stations: Mapping[str, StationInfo] = STATIONS,
        idle_timeout: float = 10.0,
    ):
        self.streams = streams
        self.station_info = stations
        self.idle_timeout = idle_timeout
        self.stations: dict[str, RadioStation] = {}
        self._pending: dict[str, asyncio.Task] = {}

    async def get_radio_station(self, name: str) -> RadioStation | None:
        """Pooled station, or a newly opened one. None for unknown names.

        Concurrent callers for the same name share one upstream connection.
        Raises StationUnavailable when the upstream cannot be opened.
        """
        station = self.stations.get(name)
        if station is not None:
            return station
        info = self.station_info.get(name)
        if info is None:
            return None

        task = self._pending.get(name)
        if task is None:
            task = asyncio.create_task(self._open(name, info))
            self._pending[name] = task
            task.add_done_callback(partial(self._forget_pending, name))
        return await asyncio.shield(task)

    def _forget_pending(self, name: str, task: asyncio.Task) -> None:
        if self._pending.get(name) is task:
            del self._pending[name]

    async def _open(self, name: str, info: StationInfo) -> RadioStation:
        resource = await self.streams.create_live_resource(info.stream_url)
        existing = self.stations.get(name)
        if existing is not None:
            resource.cleanup()
            return existing
        station = RadioStation(name, info, resource, self, self.idle_timeout)
        self.stations[name] = station
        logger.info(f"Radio {name} opened")
        return station

    def delete_radio_station(self, station: RadioStation) -> bool:
        station.close()
        if self.stations.get(station.name) is station:
            del self.stations[station.name]
            logger.info(f"Radio {station.name} deleted")
            return True
        return False

    def close(self) -> None:
        for station in list(self.stations.values()):
            self.delete_radio_station(station)
