"""Optimistic version checks for every workflow mutation.

Rows carry an integer ``version``. A write names the version the caller last
saw; the UPDATE only matches while that version is still current and bumps it
by one. Zero matched rows means someone else got there first: the caller gets
``ConflictError`` and the surrounding unit of work is rolled back. There is no
retry here; callers reload and resubmit.
"""
import logging
import uuid
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.exceptions import ConflictError, RuleViolation

logger = logging.getLogger(__name__)


class ConcurrencyGuard:
    def check(self, entity: Any, expected_version: int) -> None:
        """Fail fast when the loaded row is already newer than the caller's copy."""
        if entity.version != expected_version:
            raise self._conflict(entity.__class__.__name__, entity.id, expected_version, entity.version)

    def apply(self, db: Session, entity: Any, expected_version: int, **values: Any) -> None:
        """Compare-and-swap ``values`` onto ``entity``'s row.

        Raises ConflictError if the stored version is not ``expected_version``.
        The instance is expired afterwards so the next attribute access reads
        the new row state inside the same transaction.
        """
        model = entity.__class__
        stmt = (
            update(model)
            .where(model.id == entity.id, model.version == expected_version)
            .values(version=model.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        result = db.execute(stmt)
        if result.rowcount != 1:
            raise self._conflict(model.__name__, entity.id, expected_version, None)
        db.expire(entity)

    def bump_many(self, db: Session, model: Any, *criteria: Any, **values: Any) -> int:
        """Update every row matching ``criteria`` and bump each row's version once.

        Used for cascades inside a unit of work whose parent row has already
        passed its own version check.
        """
        stmt = (
            update(model)
            .where(*criteria)
            .values(version=model.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        return db.execute(stmt).rowcount

    @staticmethod
    def _conflict(kind: str, entity_id: uuid.UUID, expected: int, actual: int | None) -> ConflictError:
        logger.warning(
            "Version conflict on %s %s: expected=%s actual=%s", kind, entity_id, expected, actual
        )
        return ConflictError(
            f"{kind} {entity_id} was modified by someone else; reload and retry.",
            violations=[
                RuleViolation(
                    "version_conflict",
                    "Stale version",
                    "error",
                    {"entity": kind, "expected_version": expected, "current_version": actual},
                )
            ],
        )
