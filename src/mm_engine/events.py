"""Typed observer channels for engine status/context.

Contract: a channel created with ``replay_last=True`` immediately delivers
its most recent value to every new subscriber. Delivery is synchronous and
fire-and-forget; a subscriber that raises is logged and skipped.
"""

from __future__ import annotations

from typing import Callable, Generic, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class EventChannel(Generic[T]):
    def __init__(self, name: str, replay_last: bool = False) -> None:
        self.name = name
        self.replay_last = replay_last
        self._subscribers: list[Callable[[T], None]] = []
        self._last: T | None = None
        self._has_value = False

    @property
    def last(self) -> T | None:
        return self._last

    def subscribe(self, callback: Callable[[T], None]) -> Unsubscribe:
        self._subscribers.append(callback)
        if self.replay_last and self._has_value:
            self._deliver(callback, self._last)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, value: T) -> None:
        self._last = value
        self._has_value = True
        for callback in list(self._subscribers):
            self._deliver(callback, value)

    def _deliver(self, callback: Callable[[T], None], value: T) -> None:
        try:
            callback(value)
        except Exception:
            logger.exception("subscriber_error", channel=self.name)


class KeyedEventChannel(EventChannel[dict[str, T]]):
    """Channel whose value is a map that is updated one key at a time."""

    def __init__(self, name: str) -> None:
        super().__init__(name, replay_last=True)
        self._values: dict[str, T] = {}

    def put(self, key: str, value: T) -> None:
        self._values[key] = value
        self.publish(dict(self._values))

    def remove(self, key: str) -> None:
        if self._values.pop(key, None) is not None:
            self.publish(dict(self._values))

    def get(self, key: str) -> T | None:
        return self._values.get(key)

    def snapshot(self) -> dict[str, T]:
        return dict(self._values)
