"""
Single-shot timers and TTL maps on top of the event loop
"""
import asyncio
import logging
from collections.abc import Callable, Iterator
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")


class Timeout:
    """Re-armable single-shot timer.

    Arming an already armed timer replaces the pending call, so there is never
    more than one outstanding callback.
    """

    def __init__(self, delay: float, callback: Callable[[], None]):
        self.delay = delay
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self, delay: float | None = None) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay if delay is None else delay, self._fire)

    def cancel(self) -> None:
        if self._handle:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        try:
            self._callback()
        except Exception as e:
            logger.error(f"Timeout callback failed: {e}", exc_info=True)


class ExpiringDict(Generic[K, V]):
    """Mapping whose entries delete themselves after a fixed TTL."""

    def __init__(self, ttl: float):
        self.ttl = ttl
        self._data: dict[K, V] = {}
        self._handles: dict[K, asyncio.TimerHandle] = {}

    def set(self, key: K, value: V, ttl: float | None = None) -> None:
        self._cancel(key)
        self._data[key] = value
        loop = asyncio.get_running_loop()
        self._handles[key] = loop.call_later(self.ttl if ttl is None else ttl, self._expire, key)

    def get(self, key: K) -> V | None:
        return self._data.get(key)

    def pop(self, key: K) -> V | None:
        self._cancel(key)
        return self._data.pop(key, None)

    def remove_value(self, value: V) -> int:
        """Drop every key pointing at value. Returns how many were removed."""
        keys = [key for key, item in self._data.items() if item is value]
        for key in keys:
            self.pop(key)
        return len(keys)

    def clear(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        self._data.clear()

    def _expire(self, key: K) -> None:
        self._handles.pop(key, None)
        self._data.pop(key, None)
        logger.debug(f"Expired key {key}")

    def _cancel(self, key: K) -> None:
        handle = self._handles.pop(key, None)
        if handle:
            handle.cancel()

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[K]:
        return iter(list(self._data))
