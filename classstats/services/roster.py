"""Reads from the roster / schedule store owned by the CRUD layer."""

from sqlalchemy import select
from sqlalchemy.orm import Session

from classstats.config import settings
from classstats.db.models import ClassRoom, ScheduleItem


def get_class(db: Session, class_id: str) -> ClassRoom | None:
    return db.get(ClassRoom, class_id)


def get_class_timezone(db: Session, class_id: str) -> str:
    """IANA zone configured for the class, or the default zone."""
    tz = db.scalar(select(ClassRoom.timezone).where(ClassRoom.id == class_id))
    return tz or settings.DEFAULT_CLASS_TIMEZONE


def get_schedule(db: Session, schedule_id: str) -> ScheduleItem | None:
    return db.get(ScheduleItem, schedule_id)


def share_schedule(db: Session, schedule_id: str) -> ScheduleItem | None:
    """Schedule row held FOR SHARE until the unit of work ends.

    Ingestion takes this before any student stats row. Reweight and removal
    hold the same row FOR UPDATE, so the two never interleave.
    """
    return db.scalar(
        select(ScheduleItem)
        .where(ScheduleItem.id == schedule_id)
        .with_for_update(read=True)
        .execution_options(populate_existing=True)
    )


def contribution_of(schedule: ScheduleItem | None) -> float:
    if schedule is None or schedule.contribution is None:
        return 0.0
    return max(0.0, float(schedule.contribution))


def get_schedule_contribution(db: Session, schedule_id: str) -> float:
    """Weight of a schedule toward overall score (0 when it no longer exists).

    Reversal callers must read this *before* the schedule row is deleted.
    """
    contribution = db.scalar(
        select(ScheduleItem.contribution).where(ScheduleItem.id == schedule_id)
    )
    if contribution is None:
        return 0.0
    return max(0.0, float(contribution))
