"""Corrective operations driven by the scheduling CRUD layer.

- Contribution change → bulk reweight of ``overall_score`` for every student
  holding a canonical entry for the schedule.
- Schedule removal → capture the contribution, reverse every canonical
  contribution of the schedule, then delete it (one unit of work).
- Student departure → drop the student's stats row.

Attendance and streaks are never touched here.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import case, delete, exists, select, update
from sqlalchemy.orm import Session

from classstats.core.errors import ScheduleNotFoundError
from classstats.db.models import (
    CanonicalAttempt,
    ScheduleItem,
    ScheduleStat,
    StudentClassStat,
)
from classstats.db.session import unit_of_work
from classstats.services import roster
from classstats.services.aggregates import (
    apply_canonical_change,
    drop_student_stats,
    entry_from_canonical,
)
from classstats.services.canonical import removal
from classstats.services.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContributionChange:
    schedule_id: str
    old_contribution: float
    new_contribution: float
    students_affected: int


@dataclass(frozen=True)
class ScheduleRemoval:
    schedule_id: str
    contribution: float
    students_reversed: int


# ── Building blocks (run inside the caller's unit of work) ────────────────────


def reweight_schedule(
    db: Session,
    class_id: str,
    schedule_id: str,
    old_contribution: float,
    new_contribution: float,
) -> int:
    """Shift overall scores by ``pct(canonical) * (new - old)`` in one statement.

    Only rows holding a canonical entry for the schedule are touched. Returns
    the number of student rows updated.
    """
    delta_c = float(new_contribution) - float(old_contribution)
    if not delta_c:
        return 0

    canonical_for_row = (
        CanonicalAttempt.stat_id == StudentClassStat.id,
        CanonicalAttempt.schedule_id == schedule_id,
    )
    weighted_pct = (
        select(
            case(
                (
                    CanonicalAttempt.max_score > 0,
                    CanonicalAttempt.score / CanonicalAttempt.max_score,
                ),
                else_=0.0,
            )
            * delta_c
        )
        .where(*canonical_for_row)
        .scalar_subquery()
    )
    result = db.execute(
        update(StudentClassStat)
        .where(
            StudentClassStat.class_id == class_id,
            exists().where(*canonical_for_row),
        )
        .values(
            overall_score=StudentClassStat.overall_score + weighted_pct,
            version=StudentClassStat.version + 1,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    affected = result.rowcount or 0
    logger.info(
        "Reweighted schedule %s: %s → %s (%d students)",
        schedule_id,
        old_contribution,
        new_contribution,
        affected,
    )
    return affected


def reverse_schedule(
    db: Session, class_id: str, schedule_id: str, contribution: float
) -> int:
    """Undo every aggregate contribution of a schedule and drop its stats row.

    Precondition: *contribution* was captured before the schedule was deleted
    from the roster store. Returns the number of students reversed.
    """
    rows = db.execute(
        select(StudentClassStat, CanonicalAttempt)
        .join(CanonicalAttempt, CanonicalAttempt.stat_id == StudentClassStat.id)
        .where(
            StudentClassStat.class_id == class_id,
            CanonicalAttempt.schedule_id == schedule_id,
        )
        .with_for_update(of=StudentClassStat)
    ).all()

    for stat, canonical in rows:
        apply_canonical_change(
            db,
            stat,
            schedule_id,
            removal(entry_from_canonical(canonical)),
            contribution,
            update_schedule_stat=False,
        )

    db.execute(delete(ScheduleStat).where(ScheduleStat.schedule_id == schedule_id))
    logger.info(
        "Reversed schedule %s in class %s (%d students, contribution=%s)",
        schedule_id,
        class_id,
        len(rows),
        contribution,
    )
    return len(rows)


def capture_and_remove_schedule(db: Session, schedule: ScheduleItem) -> ScheduleRemoval:
    """Two-phase removal: capture contribution → reverse aggregates → delete."""
    contribution = roster.get_schedule_contribution(db, schedule.id)
    reversed_count = reverse_schedule(db, schedule.class_id, schedule.id, contribution)
    db.delete(schedule)
    db.flush()
    return ScheduleRemoval(schedule.id, contribution, reversed_count)


# ── Entry points (own their unit of work) ─────────────────────────────────────


def _load_schedule(db: Session, schedule_id: str, class_id: str | None) -> ScheduleItem:
    schedule = db.scalar(
        select(ScheduleItem).where(ScheduleItem.id == schedule_id).with_for_update()
    )
    if schedule is None or (class_id is not None and schedule.class_id != class_id):
        raise ScheduleNotFoundError(schedule_id)
    return schedule


def change_schedule_contribution(
    db: Session,
    schedule_id: str,
    new_contribution: float,
    class_id: str | None = None,
) -> ContributionChange:
    """Store a schedule's new weight and reweight its students atomically."""
    with unit_of_work(db):
        schedule = _load_schedule(db, schedule_id, class_id)
        old = max(0.0, float(schedule.contribution or 0))
        new = max(0.0, float(new_contribution))
        schedule.contribution = new
        db.flush()
        affected = reweight_schedule(db, schedule.class_id, schedule.id, old, new)
    return ContributionChange(schedule_id, old, new, affected)


def remove_schedule(
    db: Session, schedule_id: str, class_id: str | None = None
) -> ScheduleRemoval:
    """Delete a schedule and reverse its aggregate contributions atomically."""
    with unit_of_work(db):
        schedule = _load_schedule(db, schedule_id, class_id)
        result = capture_and_remove_schedule(db, schedule)
    return result


def remove_student(db: Session, class_id: str, student_id: str) -> bool:
    """Student left the class: delete their stats row atomically."""
    with unit_of_work(db):
        removed = drop_student_stats(db, class_id, student_id)
    return removed
