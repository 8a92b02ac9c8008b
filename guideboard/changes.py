"""
Best-effort change notifications for job and contact rows.

Push delivery (``subscribe``) is an in-process API for code running on an
event loop in the same process; HTTP clients poll ``since(seq)`` through
``GET /changes``. Ordering follows publish order within one
process and nothing else depends on it.
"""

import asyncio
import logging
import threading
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime

from guideboard.models import ChangeEvent

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]


class ChangeFeed:
    def __init__(
        self,
        *,
        capacity: int = 1000,
        queue_size: int = 100,
        now_fn: NowFn = lambda: datetime.now(UTC),
    ) -> None:
        self._history: deque[ChangeEvent] = deque(maxlen=capacity)
        self._subscribers: dict[
            asyncio.Queue[ChangeEvent], asyncio.AbstractEventLoop
        ] = {}
        self._queue_size = queue_size
        self._now_fn = now_fn
        self._seq = 0
        self._lock = threading.Lock()

    @property
    def last_seq(self) -> int:
        return self._seq

    def publish(self, table: str, op: str, row_id: str) -> ChangeEvent:
        with self._lock:
            self._seq += 1
            event = ChangeEvent(
                seq=self._seq,
                table=table,
                op=op,
                row_id=row_id,
                at=self._now_fn(),
            )
            self._history.append(event)
            subscribers = list(self._subscribers.items())

        for queue, loop in subscribers:
            if _running_loop() is loop:
                _offer(queue, event)
            elif not loop.is_closed():
                # publish may run on a worker thread
                loop.call_soon_threadsafe(_offer, queue, event)
        return event

    def since(self, seq: int) -> list[ChangeEvent]:
        with self._lock:
            return [e for e in self._history if e.seq > seq]

    def subscribe(self) -> asyncio.Queue[ChangeEvent]:
        queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=self._queue_size)
        with self._lock:
            self._subscribers[queue] = asyncio.get_running_loop()
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ChangeEvent]) -> None:
        with self._lock:
            self._subscribers.pop(queue, None)


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _offer(queue: asyncio.Queue[ChangeEvent], event: ChangeEvent) -> None:
    try:
        queue.put_nowait(event)
    except asyncio.QueueFull:
        logger.debug("dropping change event %s for slow subscriber", event.seq)
