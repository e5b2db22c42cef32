"""Process-wide registry of active item ids with snapshot broadcasts."""

import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

Subscriber = Callable[[frozenset[str]], None]


class ActiveSetBroadcaster:
    """
    Tracks which items are active and which are loaded.

    Every change to the active set is pushed to subscribers as a frozenset.
    A failing subscriber never affects the others or the caller.
    """

    def __init__(self, max_loaded: int = 10, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_loaded = max_loaded
        self._clock = clock
        self._active: set[str] = set()
        self._loaded: dict[str, float] = {}
        self._subscribers: list[Subscriber] = []

    def get_active(self) -> frozenset[str]:
        return frozenset(self._active)

    def get_loaded(self) -> frozenset[str]:
        return frozenset(self._loaded)

    def is_loaded(self, item_id: str) -> bool:
        return item_id in self._loaded

    def mark_loaded(self, item_id: str) -> set[str]:
        """Record ``item_id`` as loaded; returns ids evicted as least recently used."""
        self._loaded[item_id] = self._clock()
        return self._evict_loaded()

    def request_active(self, item_id: str) -> None:
        self._loaded[item_id] = self._clock()
        if item_id not in self._active:
            self._active.add(item_id)
            self._notify()

    def clear_active(self, item_id: Optional[str] = None) -> None:
        """Deactivate one id, or every id when none is given."""
        if item_id is not None:
            if item_id in self._active:
                self._active.discard(item_id)
                self._notify()
        elif self._active:
            self._active.clear()
            self._notify()

    def subscribe(self, subscriber: Subscriber) -> None:
        """Register ``subscriber`` and send it the current snapshot."""
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)
        self._deliver(subscriber, self.get_active())

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def _notify(self) -> None:
        snapshot = self.get_active()
        for subscriber in list(self._subscribers):
            self._deliver(subscriber, snapshot)

    @staticmethod
    def _deliver(subscriber: Subscriber, snapshot: frozenset[str]) -> None:
        try:
            subscriber(snapshot)
        except Exception as e:
            logger.error(f"Active-set subscriber {subscriber!r} failed: {e}")

    def _evict_loaded(self) -> set[str]:
        overflow = len(self._loaded) - self.max_loaded
        if overflow <= 0:
            return set()
        oldest = sorted(self._loaded.items(), key=lambda entry: entry[1])[:overflow]
        evicted = {item_id for item_id, _ in oldest}
        for item_id in evicted:
            del self._loaded[item_id]
        return evicted


# Shared registry for callers that do not build their own.
active_set = ActiveSetBroadcaster()


def create_active_set() -> ActiveSetBroadcaster:
    """Create an ActiveSetBroadcaster sized from application settings."""
    from media_relay.config import get_settings

    return ActiveSetBroadcaster(max_loaded=get_settings().max_loaded_items)
