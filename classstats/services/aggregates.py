"""Aggregate updater: applies canonical changes to the stored aggregates.

All counters move through SQL-expression increments (``col = col + :delta``)
so concurrent writers never lose each other's updates. The per-student row
is locked (``SELECT ... FOR UPDATE``) before the canonical decision is made,
which serialises events for the same student where the database supports it.
"""

import logging

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from classstats.db.models import (
    AttendanceDay,
    CanonicalAttempt,
    ScheduleStat,
    StatBucket,
    StudentClassStat,
)
from classstats.services.canonical import BucketDelta, CanonicalChange, CanonicalEntry
from classstats.services.clock import as_utc, utcnow

logger = logging.getLogger(__name__)


# ── Loading ───────────────────────────────────────────────────────────────────


def find_student_stat(
    db: Session, class_id: str, student_id: str, for_update: bool = False
) -> StudentClassStat | None:
    stmt = select(StudentClassStat).where(
        StudentClassStat.class_id == class_id,
        StudentClassStat.student_id == student_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    return db.scalar(stmt)


def get_or_create_student_stat(
    db: Session, class_id: str, student_id: str
) -> StudentClassStat:
    """Locked stats row for (class, student), seeded with zeros on first use."""
    stat = find_student_stat(db, class_id, student_id, for_update=True)
    if stat is None:
        stat = StudentClassStat(
            class_id=class_id,
            student_id=student_id,
            sum_score=0.0,
            sum_max=0.0,
            participation_count=0,
            overall_score=0.0,
            streak_days=0,
            best_streak_days=0,
            version=0,
            updated_at=utcnow(),
        )
        db.add(stat)
        db.flush()
        logger.debug("Created stats row for student %s in class %s", student_id, class_id)
    return stat


def load_canonical(db: Session, stat_id, schedule_id: str) -> CanonicalAttempt | None:
    return db.scalar(
        select(CanonicalAttempt).where(
            CanonicalAttempt.stat_id == stat_id,
            CanonicalAttempt.schedule_id == schedule_id,
        )
    )


def entry_from_canonical(row: CanonicalAttempt | None) -> CanonicalEntry | None:
    if row is None:
        return None
    return CanonicalEntry(
        attempt_id=row.attempt_id,
        score=float(row.score),
        max_score=float(row.max_score),
        finished_at=as_utc(row.finished_at),
        subject=row.subject,
        topic=row.topic,
    )


# ── Applying a change ─────────────────────────────────────────────────────────


def apply_canonical_change(
    db: Session,
    stat: StudentClassStat,
    schedule_id: str,
    change: CanonicalChange,
    contribution: float,
    *,
    quiz_id: str | None = None,
    update_schedule_stat: bool = True,
) -> bool:
    """Apply every delta implied by *change*. Returns False for a no-op."""
    if not change.replaces:
        return False

    _write_canonical_slot(db, stat.id, schedule_id, change.next)
    bump_student(
        db,
        stat.id,
        sum_score=change.delta_score,
        sum_max=change.delta_max,
        overall_score=change.delta_overall(contribution),
        participation=change.participation_delta,
    )
    for bucket_delta in change.bucket_deltas():
        _bump_bucket(db, stat.id, bucket_delta)
    prune_empty_buckets(db, stat.id)

    if update_schedule_stat:
        bump_schedule_stat(db, stat.class_id, schedule_id, change, quiz_id=quiz_id)
    return True


def bump_student(
    db: Session,
    stat_id,
    *,
    sum_score: float = 0.0,
    sum_max: float = 0.0,
    overall_score: float = 0.0,
    participation: int = 0,
) -> None:
    db.execute(
        update(StudentClassStat)
        .where(StudentClassStat.id == stat_id)
        .values(
            sum_score=StudentClassStat.sum_score + sum_score,
            sum_max=StudentClassStat.sum_max + sum_max,
            overall_score=StudentClassStat.overall_score + overall_score,
            participation_count=StudentClassStat.participation_count + participation,
            version=StudentClassStat.version + 1,
            updated_at=utcnow(),
        )
    )


def bump_schedule_stat(
    db: Session,
    class_id: str,
    schedule_id: str,
    change: CanonicalChange,
    quiz_id: str | None = None,
) -> None:
    """Move the per-schedule aggregate; the row is created on the first canonical."""
    row_id = db.scalar(
        select(ScheduleStat.id).where(ScheduleStat.schedule_id == schedule_id)
    )
    if row_id is None:
        if change.next is None:
            logger.warning("No schedule stats row to decrement for %s", schedule_id)
            return
        db.add(
            ScheduleStat(
                schedule_id=schedule_id,
                class_id=class_id,
                quiz_id=quiz_id or "",
                participants=change.participation_delta,
                sum_score=change.delta_score,
                sum_max=change.delta_max,
                version=1,
                updated_at=utcnow(),
            )
        )
        db.flush()
        return

    db.execute(
        update(ScheduleStat)
        .where(ScheduleStat.id == row_id)
        .values(
            participants=ScheduleStat.participants + change.participation_delta,
            sum_score=ScheduleStat.sum_score + change.delta_score,
            sum_max=ScheduleStat.sum_max + change.delta_max,
            version=ScheduleStat.version + 1,
            updated_at=utcnow(),
        )
    )


def _write_canonical_slot(
    db: Session, stat_id, schedule_id: str, entry: CanonicalEntry | None
) -> None:
    if entry is None:
        db.execute(
            delete(CanonicalAttempt).where(
                CanonicalAttempt.stat_id == stat_id,
                CanonicalAttempt.schedule_id == schedule_id,
            )
        )
        return

    row = load_canonical(db, stat_id, schedule_id)
    if row is None:
        row = CanonicalAttempt(stat_id=stat_id, schedule_id=schedule_id)
        db.add(row)
    row.attempt_id = entry.attempt_id
    row.score = entry.score
    row.max_score = entry.max_score
    row.finished_at = entry.finished_at
    row.subject = entry.subject
    row.topic = entry.topic
    db.flush()


def _bump_bucket(db: Session, stat_id, delta: BucketDelta) -> None:
    bucket_id = db.scalar(
        select(StatBucket.id).where(
            StatBucket.stat_id == stat_id,
            StatBucket.dimension == delta.dimension,
            StatBucket.label == delta.label,
        )
    )
    if bucket_id is None:
        db.add(
            StatBucket(
                stat_id=stat_id,
                dimension=delta.dimension,
                label=delta.label,
                sum_score=delta.sum_score,
                sum_max=delta.sum_max,
                attempts=delta.attempts,
            )
        )
        db.flush()
        return

    db.execute(
        update(StatBucket)
        .where(StatBucket.id == bucket_id)
        .values(
            sum_score=StatBucket.sum_score + delta.sum_score,
            sum_max=StatBucket.sum_max + delta.sum_max,
            attempts=StatBucket.attempts + delta.attempts,
        )
    )


def prune_empty_buckets(db: Session, stat_id) -> int:
    """Drop buckets with no attempts left or with both sums at zero."""
    result = db.execute(
        delete(StatBucket).where(
            StatBucket.stat_id == stat_id,
            or_(
                StatBucket.attempts <= 0,
                (StatBucket.sum_score == 0) & (StatBucket.sum_max == 0),
            ),
        )
    )
    return result.rowcount or 0


# ── Student departure ─────────────────────────────────────────────────────────


def drop_student_stats(db: Session, class_id: str, student_id: str) -> bool:
    """Delete a departing student's stats row and release their schedule slots."""
    stat = find_student_stat(db, class_id, student_id, for_update=True)
    if stat is None:
        return False

    canonicals = db.scalars(
        select(CanonicalAttempt).where(CanonicalAttempt.stat_id == stat.id)
    ).all()
    for row in canonicals:
        current = entry_from_canonical(row)
        bump_schedule_stat(
            db, class_id, row.schedule_id, CanonicalChange(previous=current, next=None)
        )

    for child in (CanonicalAttempt, AttendanceDay, StatBucket):
        db.execute(delete(child).where(child.stat_id == stat.id))
    db.delete(stat)
    db.flush()
    logger.info("Dropped stats of student %s in class %s", student_id, class_id)
    return True
