"""Idempotency ledger of processed event ids.

The claim row is written last, inside the same unit of work as the event's
effects: a crash before commit leaves no claim, so redelivery reprocesses the
event in full; a claim that collides at flush time means a concurrent
delivery won, and the whole unit of work must roll back.
"""

import enum
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from classstats.core.errors import DuplicateEventError
from classstats.db.models import ProcessedEvent


class ClaimResult(str, enum.Enum):
    ALREADY_PROCESSED = "already_processed"
    NEWLY_CLAIMED = "newly_claimed"


def is_processed(db: Session, event_id: str) -> bool:
    return (
        db.scalar(select(ProcessedEvent.event_id).where(ProcessedEvent.event_id == event_id))
        is not None
    )


def try_claim(
    db: Session,
    event_id: str,
    event_type: str,
    occurred_at: datetime | None = None,
    attempt_id: str | None = None,
    attempt_version: int | None = None,
) -> ClaimResult:
    """Record *event_id* as processed.

    Returns ``ALREADY_PROCESSED`` if the id is visible in the ledger. Raises
    :class:`DuplicateEventError` when a concurrent delivery inserts the same
    id first; the session is then unusable until rolled back.
    """
    if is_processed(db, event_id):
        return ClaimResult.ALREADY_PROCESSED

    db.add(
        ProcessedEvent(
            event_id=event_id,
            type=event_type,
            attempt_id=attempt_id,
            attempt_version=attempt_version,
            occurred_at=occurred_at,
        )
    )
    try:
        db.flush()
    except IntegrityError as exc:
        raise DuplicateEventError(event_id) from exc
    return ClaimResult.NEWLY_CLAIMED
