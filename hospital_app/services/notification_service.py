# hospital_app/services/notification_service.py
"""In-process event channel for booking and OT status announcements.

Publishing happens after the business transaction committed (routers hand
``publish`` to FastAPI ``BackgroundTasks``). Subscriber failures are logged
and never reach the publisher.
"""
import inspect
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog
from fastapi import Request
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

APPOINTMENT_BOOKED = "appointment.booked"
APPOINTMENT_CANCELLED = "appointment.cancelled"
OT_CASE_CREATED = "ot_case.created"
OT_CASE_STATUS_CHANGED = "ot_case.status_changed"

ALL_EVENTS = "*"


class Notification(BaseModel):
    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


Handler = Callable[[Notification], Union[None, Awaitable[None]]]


class NotificationService:
    def __init__(self):
        self._subscribers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``event`` ("*" for every event). Returns an unsubscribe callable."""
        self._subscribers[event].append(handler)
        logger.debug("notification_subscribed", notification_event=event, handler=getattr(handler, "__qualname__", repr(handler)))

        def unsubscribe() -> None:
            if handler in self._subscribers[event]:
                self._subscribers[event].remove(handler)

        return unsubscribe

    def subscriber_count(self, event: Optional[str] = None) -> int:
        if event is None:
            return sum(len(handlers) for handlers in self._subscribers.values())
        return len(self._subscribers.get(event, [])) + len(self._subscribers.get(ALL_EVENTS, []))

    async def publish(self, event: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """Deliver to every subscriber of ``event``; returns how many handlers succeeded."""
        notification = Notification(event=event, payload=payload or {})
        handlers = list(self._subscribers.get(event, [])) + list(self._subscribers.get(ALL_EVENTS, []))
        delivered = 0
        for handler in handlers:
            try:
                result = handler(notification)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception:
                logger.exception(
                    "notification_delivery_failed",
                    notification_event=event,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                )
        logger.info("notification_published", notification_event=event, subscribers=len(handlers), delivered=delivered)
        return delivered


def get_notifier(request: Request) -> NotificationService:
    return request.app.state.notifier
