"""Subscription interface for approval and audit notifications."""

import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger(__name__)

Subscriber = Callable[[Any], Union[None, Awaitable[None]]]


class EventType(str, Enum):
    """Notifications emitted by capguard."""

    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_RESULT = "approval_result"
    AUDIT_LOGGED = "audit_logged"


class EventBus:
    """Delivers notifications to subscribers in subscription order."""

    def __init__(self):
        self._subscribers: dict[EventType, list[Subscriber]] = {t: [] for t in EventType}

    def subscribe(self, event_type: EventType, callback: Subscriber) -> Callable[[], None]:
        """Register a sync or async callback.

        Returns:
            A function that removes the subscription
        """
        event_type = EventType(event_type)
        self._subscribers[event_type].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers[event_type]:
                self._subscribers[event_type].remove(callback)

        return unsubscribe

    def subscriber_count(self, event_type: EventType) -> int:
        return len(self._subscribers[EventType(event_type)])

    async def emit(self, event_type: EventType, payload: Any) -> None:
        """Call every subscriber. A failing subscriber is logged and skipped."""
        for callback in list(self._subscribers[EventType(event_type)]):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    f"Subscriber for {EventType(event_type).value} failed: {type(e).__name__}: {e}"
                )
