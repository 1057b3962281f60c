"""Workflow lifecycle events and the in-process bus that fans them out.

The engine buffers events while a unit of work is open and publishes them
only after ``commit()`` succeeds. Subscribers (audit forwarding, notification
dispatch, cache invalidation) run after the data is durable; a failing
subscriber is logged and never affects the workflow outcome.
"""
import enum
import logging
import uuid
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.db.base import utcnow

logger = logging.getLogger(__name__)

ALL_EVENTS = "*"


class EventType(str, enum.Enum):
    REQUEST_CREATED = "approval.request.created"
    REQUEST_APPROVED = "approval.request.approved"
    REQUEST_REJECTED = "approval.request.rejected"
    REQUEST_RETURNED = "approval.request.returned"
    REQUEST_CANCELLED = "approval.request.cancelled"

    STEP_APPROVED = "approval.step.approved"
    STEP_REJECTED = "approval.step.rejected"
    STEP_RETURNED = "approval.step.returned"
    STEP_SKIPPED = "approval.step.skipped"
    STEP_ACTIVATED = "approval.step.activated"
    STEP_TIMED_OUT = "approval.step.timed_out"

    WORKFLOW_STARTED = "approval.workflow.started"
    WORKFLOW_COMPLETED = "approval.workflow.completed"

    DELEGATION_CREATED = "approval.delegation.created"
    DELEGATION_REVOKED = "approval.delegation.revoked"
    DELEGATION_EXPIRED = "approval.delegation.expired"


@dataclass(frozen=True)
class WorkflowEvent:
    type: EventType
    entity_type: str
    entity_id: uuid.UUID | None
    actor_id: uuid.UUID | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)
    event_id: uuid.UUID = field(default_factory=uuid.uuid4)

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe representation (used as the Celery task argument)."""
        return {
            "event_id": str(self.event_id),
            "type": self.type.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "actor_id": str(self.actor_id) if self.actor_id else None,
            "payload": {k: _jsonable(v) for k, v in self.payload.items()},
            "occurred_at": self.occurred_at.isoformat(),
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    return value


EventHandler = Callable[[WorkflowEvent], None]


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> None:
        key = event_type.value if isinstance(event_type, EventType) else event_type
        self._handlers[key].append(handler)

    def publish(self, events: Iterable[WorkflowEvent]) -> None:
        for event in events:
            handlers = self._handlers.get(event.type.value, []) + self._handlers.get(ALL_EVENTS, [])
            for handler in handlers:
                try:
                    handler(event)
                except Exception:
                    # Delivery problems must not leak into an already-committed workflow.
                    logger.exception(
                        "Event handler %r failed for %s (%s)",
                        handler, event.type.value, event.entity_id,
                    )
