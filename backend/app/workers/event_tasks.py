"""Celery task that writes committed workflow events to the audit log."""
import logging

from app.services.events import ALL_EVENTS, EventBus, WorkflowEvent
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def _get_sync_session():
    """Return a sync SQLAlchemy session. Caller must close it."""
    from app.db.session import SessionLocal
    return SessionLocal()


@celery_app.task(bind=True, name="app.workers.event_tasks.record_audit_event", max_retries=3)
def record_audit_event(self, event: dict) -> dict:
    """Append one serialised workflow event to audit_logs."""
    from app.services.audit import record_event

    db = _get_sync_session()
    try:
        entry = record_event(db, event)
        db.commit()
        return {"status": "ok", "audit_id": str(entry.id)}
    except Exception as exc:
        db.rollback()
        logger.exception("record_audit_event failed for %s %s", event.get("type"), event.get("entity_id"))
        raise self.retry(exc=exc, countdown=30)
    finally:
        db.close()


def forward_to_audit(event: WorkflowEvent) -> None:
    """Event bus subscriber: hand the event to the worker."""
    record_audit_event.delay(event.to_dict())


def build_event_bus() -> EventBus:
    bus = EventBus()
    bus.subscribe(ALL_EVENTS, forward_to_audit)
    return bus
