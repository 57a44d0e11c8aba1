from __future__ import annotations

import logging
from typing import Any, Callable, Dict, TypeVar

from sqlalchemy import update
from sqlalchemy.orm import Session

from estate_contracts.core.errors import ConcurrentModification, LifecycleError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compare_and_swap(
    db: Session,
    instance: Any,
    *,
    values: Dict[str, Any],
) -> None:
    """
    Conditional write of one row.

    The UPDATE only matches while the row still carries the status and version
    that ``instance`` was loaded with; version is bumped on success. A miss
    means another writer got there first and raises ConcurrentModification.
    Does not commit.
    """
    model = type(instance)
    seen_status = instance.status
    seen_version = instance.version

    stmt = (
        update(model)
        .where(
            model.id == instance.id,
            model.status == seen_status,
            model.version == seen_version,
        )
        .values(version=seen_version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        raise ConcurrentModification(model.__name__, instance.id)

    # later reads in this transaction must see the new row
    db.expire(instance)


def run_with_cas_retry(
    db: Session,
    fn: Callable[[], T],
    *,
    attempts: int,
    operation: str,
    entity_id: Any,
) -> T:
    """
    Runs ``fn`` (which loads, validates, writes and commits) and re-runs it
    from a clean transaction when it loses a compare-and-swap race.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ConcurrentModification:
            db.rollback()
            if attempt >= attempts:
                logger.warning(
                    "cas retries exhausted",
                    extra={"operation": operation, "entity_id": str(entity_id), "attempts": attempt},
                )
                raise
            logger.warning(
                "cas conflict, retrying",
                extra={"operation": operation, "entity_id": str(entity_id), "attempt": attempt},
            )
        except LifecycleError:
            db.rollback()
            raise
    raise AssertionError("unreachable")
