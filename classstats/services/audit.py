"""Attempt audit mirror & ordering gate.

One row per attempt id holds the last seen (highest version) view of that
attempt. An incoming event whose version is not strictly newer than the
mirrored one is stale and must not touch aggregates.
"""

import logging

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from classstats.db.models import AttemptAudit
from classstats.schemas.events import AttemptEvent
from classstats.services.clock import as_utc, utcnow

logger = logging.getLogger(__name__)


def get_audit_row(db: Session, attempt_id: str) -> AttemptAudit | None:
    return db.scalar(
        select(AttemptAudit)
        .where(AttemptAudit.attempt_id == attempt_id)
        .with_for_update()
    )


def is_stale(previous: AttemptAudit | None, incoming_version: int) -> bool:
    """True if a mirrored view at the same or a newer version already exists."""
    return previous is not None and previous.attempt_version >= incoming_version


def is_same_version_anomaly(previous: AttemptAudit | None, evt: AttemptEvent) -> bool:
    """Same attempt, same version, different outcome: a delivery anomaly."""
    if previous is None or previous.attempt_version != evt.attempt_version:
        return False
    return (previous.score, previous.max_score, previous.valid) != (
        evt.score,
        evt.max_score,
        evt.is_valid_finalize,
    )


def upsert_audit_row(
    db: Session,
    evt: AttemptEvent,
    previous: AttemptAudit | None,
    *,
    class_id: str | None,
    subject: str | None,
    topic: str | None,
) -> AttemptAudit:
    """Store the incoming view of the attempt, keeping known fields it omits."""
    row = previous or AttemptAudit(attempt_id=evt.attempt_id, created_at=utcnow())
    row.attempt_version = evt.attempt_version
    row.quiz_id = evt.quiz_id
    row.quiz_root_id = evt.quiz_root_id or (previous.quiz_root_id if previous else None)
    row.quiz_version = (
        evt.quiz_version
        if evt.quiz_version is not None
        else (previous.quiz_version if previous else None)
    )
    row.class_id = class_id or (previous.class_id if previous else None)
    row.schedule_id = evt.schedule_id
    row.student_id = evt.student_id
    row.subject = subject or (previous.subject if previous else None)
    row.topic = topic or (previous.topic if previous else None)
    if evt.finished_at is not None:
        row.finished_at = as_utc(evt.finished_at)
    elif previous is None:
        row.finished_at = None
    row.score = evt.score if evt.score is not None else (previous.score if previous else None)
    row.max_score = (
        evt.max_score
        if evt.max_score is not None
        else (previous.max_score if previous else None)
    )
    row.valid = evt.is_valid_finalize
    row.updated_at = utcnow()
    if previous is None:
        db.add(row)
    db.flush()
    return row


def best_valid_attempt(
    db: Session,
    class_id: str,
    student_id: str,
    schedule_id: str,
    exclude_attempt_id: str | None = None,
) -> AttemptAudit | None:
    """Best valid mirrored attempt for (student, schedule).

    Ordered by score, then latest finish, then highest version, then attempt id.
    """
    stmt = select(AttemptAudit).where(
        AttemptAudit.class_id == class_id,
        AttemptAudit.student_id == student_id,
        AttemptAudit.schedule_id == schedule_id,
        AttemptAudit.valid.is_(True),
        AttemptAudit.score.is_not(None),
        AttemptAudit.max_score.is_not(None),
    )
    if exclude_attempt_id is not None:
        stmt = stmt.where(AttemptAudit.attempt_id != exclude_attempt_id)
    stmt = stmt.order_by(
        AttemptAudit.score.desc(),
        AttemptAudit.finished_at.desc().nulls_last(),
        AttemptAudit.attempt_version.desc(),
        AttemptAudit.attempt_id.desc(),
    ).limit(1)
    return db.scalar(stmt)


def purge_quiz_family(db: Session, quiz_root_id: str) -> int:
    """Delete mirrored attempts of a deleted quiz family (any version)."""
    result = db.execute(
        delete(AttemptAudit).where(
            or_(
                AttemptAudit.quiz_root_id == quiz_root_id,
                AttemptAudit.quiz_id == quiz_root_id,
            )
        )
    )
    return result.rowcount or 0
