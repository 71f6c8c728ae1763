"""Zero-payload notification channels."""

import inspect
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)

Subscriber = Callable[[], Awaitable[None] | None]


class Signal:
    """Observer list delivering a zero-payload notification to every subscriber.

    Subscribers may be plain callables or coroutine functions. Dispatch runs on
    the caller's event loop; a failing subscriber is logged and does not stop
    delivery to the others.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: list[Subscriber] = []

    def connect(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber and return a callable that removes it."""
        self._subscribers.append(subscriber)
        return lambda: self.disconnect(subscriber)

    def disconnect(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def emit(self) -> None:
        for subscriber in list(self._subscribers):
            try:
                result = subscriber()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception("signal_subscriber_failed", signal=self.name, error=str(e))
