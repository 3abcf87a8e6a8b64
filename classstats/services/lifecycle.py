"""Quiz lifecycle corrections.

These events come from the quiz authoring side and never go through the
canonical/delta machinery: a deleted quiz reverses its schedules, metadata and
version bumps only patch the schedule snapshots.
"""

import logging

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from classstats.db.models import ScheduleItem
from classstats.schemas.events import (
    QuizDeletedEvent,
    QuizMetaUpdatedEvent,
    QuizVersionUpdatedEvent,
)
from classstats.services.audit import purge_quiz_family
from classstats.services.clock import as_utc, utcnow
from classstats.services.corrections import capture_and_remove_schedule

logger = logging.getLogger(__name__)

# QuizMeta field → ScheduleItem column
_META_COLUMNS = {
    "name": "quiz_name",
    "subject": "subject",
    "subject_color_hex": "subject_color",
    "topic": "topic",
}


def _schedules_for_quiz(db: Session, quiz_root_id: str) -> list[ScheduleItem]:
    return list(
        db.scalars(
            select(ScheduleItem)
            .where(
                or_(
                    ScheduleItem.quiz_root_id == quiz_root_id,
                    ScheduleItem.quiz_id == quiz_root_id,
                )
            )
            .order_by(ScheduleItem.id)
            .with_for_update()
        ).all()
    )


def apply_quiz_deleted(db: Session, evt: QuizDeletedEvent) -> bool:
    """Reverse and drop every schedule of the quiz, then purge its mirrored attempts."""
    schedules = _schedules_for_quiz(db, evt.quiz_id)
    for schedule in schedules:
        capture_and_remove_schedule(db, schedule)
    purged = purge_quiz_family(db, evt.quiz_id)
    logger.info(
        "Quiz %s deleted: %d schedules removed, %d mirrored attempts purged",
        evt.quiz_id,
        len(schedules),
        purged,
    )
    return bool(schedules) or purged > 0


def apply_quiz_meta_updated(db: Session, evt: QuizMetaUpdatedEvent) -> bool:
    """Patch snapshot fields present in the event; absent fields are left alone."""
    patch = {
        _META_COLUMNS[field]: getattr(evt.meta, field)
        for field in evt.meta.model_fields_set
        if field in _META_COLUMNS
    }
    if not patch:
        return False

    schedules = _schedules_for_quiz(db, evt.quiz_id)
    for schedule in schedules:
        for column, value in patch.items():
            setattr(schedule, column, value)
    db.flush()
    return bool(schedules)


def apply_quiz_version_updated(db: Session, evt: QuizVersionUpdatedEvent) -> bool:
    """Point ongoing and future schedules at the new quiz version."""
    now = utcnow()
    changed = 0
    for schedule in _schedules_for_quiz(db, evt.quiz_id):
        if schedule.end_date is not None and as_utc(schedule.end_date) < now:
            continue
        target_quiz_id = evt.new_quiz_id or schedule.quiz_id
        if schedule.quiz_version == evt.new_version and schedule.quiz_id == target_quiz_id:
            continue
        schedule.quiz_version = evt.new_version
        schedule.quiz_id = target_quiz_id
        changed += 1
    if changed:
        db.flush()
        # Downstream fan-out of ScheduleUpdated belongs to the transport layer
        logger.info(
            "Quiz %s v%d → v%d: %d schedules updated",
            evt.quiz_id,
            evt.previous_version,
            evt.new_version,
            changed,
        )
    return changed > 0
