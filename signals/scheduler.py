"""
Time and timer port.

Every confirmation window and periodic tick in the engine goes through a
Scheduler so that timers are cancellable and tests can drive time by hand.
AsyncioScheduler runs timers on the event loop. now() reports wall-clock
POSIX seconds for stamping samples; monotonic() reports the loop clock
that timers run on, for measuring elapsed time and deadlines.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(ABC):
    """Clock plus one-shot cancellable timers."""

    @abstractmethod
    def now(self) -> float:
        """Current time in POSIX seconds."""
        pass

    def monotonic(self) -> float:
        """Clock for deadlines; never jumps with the wall clock."""
        return self.now()

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` once after ``delay`` seconds."""
        pass


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return self.loop.call_later(max(delay, 0.0), callback)


class PeriodicTimer:
    """
    Repeating timer built on Scheduler.call_later.

    The next tick is scheduled before the callback runs, so a callback
    that raises does not stop the timer.
    """

    def __init__(self, scheduler: Scheduler, interval: float, callback: Callable[[], None], name: str = "timer"):
        self._scheduler = scheduler
        self._interval = interval
        self._callback = callback
        self._name = name
        self._handle: Optional[TimerHandle] = None

    @property
    def running(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        if self._handle is None:
            self._handle = self._scheduler.call_later(self._interval, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        if self._handle is None:
            return
        self._handle = self._scheduler.call_later(self._interval, self._fire)
        try:
            self._callback()
        except Exception:
            logger.exception("Periodic timer '%s' callback failed", self._name)
