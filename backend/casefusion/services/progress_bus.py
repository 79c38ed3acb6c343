"""
Progress channel owned by a single analysis run.

The pipeline is the only publisher. Subscribers each get a bounded queue;
publishing never blocks, and a subscriber whose queue is full is dropped
instead of slowing the pipeline down.
"""
import asyncio
import logging
from collections import deque
from typing import Deque, List, Optional

from casefusion.config import settings
from casefusion.models.schemas import AnalysisProgress

logger = logging.getLogger(__name__)

_END_OF_STREAM = object()


class Subscription:
    """A single reader attached to a ProgressBus."""

    def __init__(self, bus: "ProgressBus", maxsize: int):
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._ended = False
        self.dropped = False

    def _offer(self, item) -> bool:
        try:
            self._queue.put_nowait(item)
            return True
        except asyncio.QueueFull:
            return False

    def _end(self):
        self._ended = True
        self._offer(_END_OF_STREAM)

    async def get(self, timeout: Optional[float] = None) -> Optional[AnalysisProgress]:
        """Next progress event, or None once the stream has ended.

        Raises asyncio.TimeoutError when nothing arrives within ``timeout``.
        """
        if self._ended and self._queue.empty():
            return None
        item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is _END_OF_STREAM:
            self._ended = True
            return None
        return item

    def close(self):
        self._bus.unsubscribe(self)


class ProgressBus:
    """Single-producer, multi-consumer fan-out of AnalysisProgress events."""

    def __init__(self, case_id: str, queue_size: Optional[int] = None, history_size: int = 200):
        self.case_id = case_id
        self.queue_size = queue_size or settings.sse_queue_size
        self._subscribers: List[Subscription] = []
        self._history: Deque[AnalysisProgress] = deque(maxlen=history_size)
        self._last_progress = 0
        self.closed = False
        self.error: Optional[str] = None

    @property
    def history(self) -> List[AnalysisProgress]:
        return list(self._history)

    @property
    def last(self) -> Optional[AnalysisProgress]:
        return self._history[-1] if self._history else None

    @property
    def last_progress(self) -> int:
        return self._last_progress

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, progress: AnalysisProgress) -> AnalysisProgress:
        """Fan ``progress`` out to every subscriber without blocking.

        ``progress.progress`` is raised to the highest value published so far
        so readers always observe a non-decreasing sequence.
        """
        if self.closed:
            logger.warning(f"Progress published after bus closed for case {self.case_id}: {progress.step}")
            return progress
        if progress.progress < self._last_progress:
            progress = progress.model_copy(update={"progress": self._last_progress})
        self._last_progress = progress.progress
        self._history.append(progress)

        for sub in self._subscribers[:]:
            if not sub._offer(progress):
                logger.warning(f"Dropping slow progress subscriber for case {self.case_id}")
                sub.dropped = True
                sub._ended = True
                self._subscribers.remove(sub)
        return progress

    def subscribe(self) -> Subscription:
        """Attach a reader. Events already published are replayed to it first."""
        sub = Subscription(self, self.queue_size)
        backlog = list(self._history)[-max(self.queue_size - 1, 1):]
        for progress in backlog:
            sub._offer(progress)
        if self.closed:
            sub._end()
        else:
            self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription):
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    def close(self, error: Optional[str] = None):
        """Record the run outcome and wake every subscriber with end-of-stream."""
        if self.closed:
            return
        self.closed = True
        self.error = error
        for sub in self._subscribers:
            sub._end()
        self._subscribers.clear()
