"""
Test doubles shared by unit and integration tests.
"""
import heapq
import itertools
from typing import Any, Callable, List, Optional, Tuple

from signals.scheduler import Scheduler
from sync.transport import SendOutcome, Transmitter


class ManualTimerHandle:
    def __init__(self, when: float, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler(Scheduler):
    """
    Deterministic scheduler: time only moves when advance() is called.

    Callbacks due within the advanced span run in time order, including
    callbacks scheduled by other callbacks during the advance.
    """

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self._queue: List[Tuple[float, int, ManualTimerHandle]] = []
        self._sequence = itertools.count()

    def now(self) -> float:
        return self._now

    def monotonic(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimerHandle:
        handle = ManualTimerHandle(self._now + max(delay, 0.0), callback)
        heapq.heappush(self._queue, (handle.when, next(self._sequence), handle))
        return handle

    def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, when)
            handle.callback()
        self._now = target

    def pending(self) -> int:
        return sum(1 for _, _, handle in self._queue if not handle.cancelled)

    def next_due(self) -> Optional[float]:
        live = [when for when, _, handle in self._queue if not handle.cancelled]
        return min(live) - self._now if live else None


class ScriptedTransmitter(Transmitter):
    """
    Records every batch and answers with scripted outcomes.

    ``outcomes`` is consumed in order; once exhausted ``default`` is used.
    Exception instances in the script are raised instead of returned.
    """

    name = "scripted"

    def __init__(self, outcomes: Optional[List[Any]] = None, default: Any = SendOutcome.SUCCESS):
        self.outcomes = list(outcomes or [])
        self.default = default
        self.batches: List[List[str]] = []
        self.healthy = True
        self.closed = False

    async def send(self, batch):
        self.batches.append([item.item_id for item in batch])
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def health_check(self) -> bool:
        return self.healthy

    async def close(self) -> None:
        self.closed = True

    @property
    def sent_ids(self) -> List[str]:
        return [item_id for batch in self.batches for item_id in batch]
