"""
Event streams and signal source ports.

Components communicate only through EventStream subscriptions. External
signal providers (position fixes, motion sensor, connectivity, battery,
app lifecycle) are modelled as SignalSource implementations; PushSource is
the in-process implementation fed by the HTTP ingestion layer and tests.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], None]
ErrorListener = Callable[[Exception], None]


class Subscription:
    """Handle returned by subscribe(); cancel() detaches the listener."""

    def __init__(self, detach: Callable[[], None]):
        self._detach: Optional[Callable[[], None]] = detach

    @property
    def active(self) -> bool:
        return self._detach is not None

    def cancel(self) -> None:
        if self._detach is not None:
            detach, self._detach = self._detach, None
            detach()


class EventStream(Generic[T]):
    """
    Synchronous fan-out of values to subscribed listeners.

    Listeners run in subscription order. A listener that raises is logged
    and does not prevent delivery to the remaining listeners.
    """

    def __init__(self, name: str):
        self.name = name
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Subscription:
        self._listeners.append(listener)

        def detach() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return Subscription(detach)

    def emit(self, value: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception(
                    "Listener failed on stream '%s'",
                    self.name,
                    extra={"extra_data": {"stream": self.name}},
                )

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def clear(self) -> None:
        self._listeners.clear()


class SignalSource(ABC, Generic[T]):
    """
    Abstract source of one kind of platform signal.

    Implementations deliver values to ``on_value``; read failures are
    reported to ``on_error`` instead of being raised to the consumer.
    """

    @abstractmethod
    def subscribe(
        self,
        on_value: Listener,
        on_error: Optional[ErrorListener] = None,
    ) -> Subscription:
        """Attach listeners; the returned subscription detaches both."""
        pass

    @property
    @abstractmethod
    def latest(self) -> Optional[T]:
        """Most recent value, or None if nothing has been delivered."""
        pass


class PushSource(SignalSource[T]):
    """In-process signal source; values are pushed in by the host."""

    def __init__(self, name: str):
        self.name = name
        self._values: EventStream[T] = EventStream(f"{name}.values")
        self._errors: EventStream[Exception] = EventStream(f"{name}.errors")
        self._latest: Optional[T] = None

    def subscribe(
        self,
        on_value: Listener,
        on_error: Optional[ErrorListener] = None,
    ) -> Subscription:
        subscriptions = [self._values.subscribe(on_value)]
        if on_error is not None:
            subscriptions.append(self._errors.subscribe(on_error))

        def detach() -> None:
            for subscription in subscriptions:
                subscription.cancel()

        return Subscription(detach)

    @property
    def latest(self) -> Optional[T]:
        return self._latest

    def push(self, value: T) -> None:
        self._latest = value
        self._values.emit(value)

    def push_error(self, error: Exception) -> None:
        logger.debug(
            "Signal source '%s' reported an error: %s",
            self.name,
            error,
        )
        self._errors.emit(error)

    @property
    def subscriber_count(self) -> int:
        return self._values.listener_count
