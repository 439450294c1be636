"""Optimistic concurrency guard for version-stamped records."""

from __future__ import annotations

import logging
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")

PROTECTED_FIELDS = frozenset({"id", "version"})


class ConcurrentModificationError(Exception):
    """Raised when the record changed since the caller last read it."""

    def __init__(
        self,
        record_id: UUID,
        expected_version: int,
        actual_version: int | None = None,
    ):
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        if actual_version is None:
            message = f"Record {record_id} no longer exists"
        else:
            message = (
                f"Concurrent modification detected (expected version {expected_version}, "
                f"found {actual_version}). Please refresh and retry."
            )
        super().__init__(message)

    @property
    def record_exists(self) -> bool:
        return self.actual_version is not None


def update_with_optimistic_lock(
    db: Session,
    model: type[ModelT],
    record_id: UUID,
    expected_version: int,
    patch: dict[str, Any],
    *,
    commit: bool = True,
) -> ModelT:
    """
    Apply ``patch`` only if the record is still at ``expected_version``.

    The version is incremented in the same UPDATE, so of two writers holding
    the same version exactly one wins.

    Raises:
        ValueError: patch touches id/version
        ConcurrentModificationError: no row matched id + expected version
    """
    protected = PROTECTED_FIELDS.intersection(patch)
    if protected:
        raise ValueError(f"Cannot patch protected fields: {', '.join(sorted(protected))}")

    values = dict(patch)
    values["version"] = model.version + 1
    if hasattr(model, "updated_at"):
        values["updated_at"] = func.now()

    result = db.execute(
        update(model)
        .where(model.id == record_id, model.version == expected_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )

    if result.rowcount != 1:
        actual = db.execute(select(model.version).where(model.id == record_id)).scalar_one_or_none()
        logger.info(
            "Optimistic lock conflict on %s %s (expected=%s actual=%s)",
            model.__name__,
            record_id,
            expected_version,
            actual,
        )
        raise ConcurrentModificationError(record_id, expected_version, actual)

    if commit:
        db.commit()
    else:
        db.flush()

    record = db.execute(
        select(model).where(model.id == record_id).execution_options(populate_existing=True)
    ).scalar_one()
    return record
