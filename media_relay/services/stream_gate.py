"""Admission gate limiting how many playback streams run at once."""

import logging
from collections import deque
from typing import Callable

logger = logging.getLogger(__name__)

StreamCallback = Callable[[bool], None]


class StreamAdmissionGate:
    """
    FIFO admission control for playback sessions.

    An id either streams (holds one of ``max_concurrent`` slots) or waits in
    the queue. Its subscribed callback is invoked with ``True`` when it is
    admitted.
    """

    def __init__(self, max_concurrent: int = 10) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._queue: deque[str] = deque()
        self._callbacks: dict[str, StreamCallback] = {}
        self._streaming: set[str] = set()

    def subscribe(self, item_id: str, callback: StreamCallback) -> None:
        self._callbacks[item_id] = callback

    def unsubscribe(self, item_id: str) -> None:
        self._callbacks.pop(item_id, None)

    def request_stream(self, item_id: str) -> None:
        """Start streaming ``item_id`` now if a slot is free, else queue it."""
        if item_id in self._streaming or item_id in self._queue:
            return
        if len(self._streaming) < self.max_concurrent:
            self._start(item_id)
        else:
            self._queue.append(item_id)
            logger.debug(f"Stream {item_id} queued at position {len(self._queue)}")

    def finish(self, item_id: str) -> None:
        """Release ``item_id``'s slot (or queue entry) and admit waiting ids."""
        self._streaming.discard(item_id)
        try:
            self._queue.remove(item_id)
        except ValueError:
            pass
        self._promote()

    def is_streaming(self, item_id: str) -> bool:
        return item_id in self._streaming

    def get_queue(self) -> list[str]:
        return list(self._queue)

    @property
    def active_count(self) -> int:
        return len(self._streaming)

    def _promote(self) -> None:
        while len(self._streaming) < self.max_concurrent and self._queue:
            next_id = self._queue.popleft()
            if next_id in self._streaming:
                continue
            self._start(next_id)

    def _start(self, item_id: str) -> None:
        self._streaming.add(item_id)
        callback = self._callbacks.get(item_id)
        if callback is None:
            return
        try:
            callback(True)
        except Exception as e:
            logger.error(f"Stream callback error for {item_id}: {e}")


def create_stream_gate() -> StreamAdmissionGate:
    """Create a StreamAdmissionGate sized from application settings."""
    from media_relay.config import get_settings

    return StreamAdmissionGate(max_concurrent=get_settings().stream_max_concurrent)
