"""Change notifications for live-update consumers.

Stores call :meth:`Notifier.notify` after every successful mutation. Delivery
is best effort: a failing subscriber is logged and skipped, and the store
operation that triggered the event still succeeds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from .models import UpdateAction, UpdateKind, utc_now


@dataclass(slots=True)
class UpdateEvent:
    update_kind: str
    action: str
    project_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "data_updated",
            "projectId": self.project_id,
            "updateType": self.update_kind,
            "action": self.action,
            "data": dict(self.payload),
            "timestamp": self.timestamp,
        }


Subscriber = Callable[[UpdateEvent], Any]


class Notifier:
    """Fan-out of :class:`UpdateEvent` values to registered subscribers."""

    def __init__(self):
        self.subscribers: List[Subscriber] = []
        self.logger = logging.getLogger("taskstore.notifications")

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        self.subscribers.append(callback)
        self.logger.debug(f"Registered subscriber {getattr(callback, '__name__', repr(callback))}")

        def unsubscribe() -> None:
            if callback in self.subscribers:
                self.subscribers.remove(callback)

        return unsubscribe

    def notify(
        self,
        project_id: Optional[str],
        update_kind: Union[UpdateKind, str],
        action: Union[UpdateAction, str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> UpdateEvent:
        event = UpdateEvent(
            update_kind=UpdateKind(update_kind).value,
            action=UpdateAction(action).value,
            project_id=project_id,
            payload=dict(payload or {}),
        )
        self.logger.info(
            f"Data updated: {event.update_kind} {event.action}",
            extra={"extra_fields": event.to_dict()},
        )
        for subscriber in list(self.subscribers):
            try:
                subscriber(event)
            except Exception as e:
                self.logger.error(f"Subscriber failed for {event.update_kind} {event.action}: {e}")
        return event
