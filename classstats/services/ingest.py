"""Event ingestion gate.

``process_quiz_event`` is the single entry point used by the HTTP route and
the Celery consumer. Each event runs as one unit of work:

1. validate the envelope (malformed → raise, nothing written, id not claimed)
2. short-circuit ids already in the idempotency ledger
3. apply the attempt or lifecycle handler
4. claim the event id last, so a failure anywhere above leaves no claim
"""

import enum
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from classstats.core.errors import DuplicateEventError
from classstats.db.models import AttemptAudit
from classstats.db.session import unit_of_work
from classstats.schemas.events import (
    ATTEMPT_FINALIZED,
    AttemptEvent,
    LifecycleEvent,
    QuizDeletedEvent,
    QuizMetaUpdatedEvent,
    QuizVersionUpdatedEvent,
    parse_quiz_event,
)
from classstats.services import audit, ledger, lifecycle, roster
from classstats.services.aggregates import (
    apply_canonical_change,
    entry_from_canonical,
    find_student_stat,
    get_or_create_student_stat,
    load_canonical,
)
from classstats.services.attendance import record_attendance
from classstats.services.canonical import (
    CanonicalEntry,
    select_after_edit,
    select_on_finalize,
)
from classstats.services.clock import as_utc

logger = logging.getLogger(__name__)


class IngestOutcome(str, enum.Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    STALE = "stale"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class IngestResult:
    event_id: str
    outcome: IngestOutcome


def entry_from_audit(row: AttemptAudit | None) -> CanonicalEntry | None:
    """Canonical candidate built from a mirrored attempt (valid rows only)."""
    if row is None or row.score is None or row.max_score is None:
        return None
    return CanonicalEntry(
        attempt_id=row.attempt_id,
        score=float(row.score),
        max_score=float(row.max_score),
        finished_at=as_utc(row.finished_at or row.updated_at),
        subject=row.subject,
        topic=row.topic,
    )


def process_quiz_event(db: Session, raw: Any) -> IngestResult:
    """Validate and apply one raw event envelope.

    Raises :class:`~classstats.core.errors.MalformedEventError` before any
    write when the envelope is invalid. Store errors propagate after the unit
    of work has rolled back.
    """
    evt = parse_quiz_event(raw)

    try:
        with unit_of_work(db):
            if ledger.is_processed(db, evt.event_id):
                logger.debug("Duplicate event %s skipped", evt.event_id)
                return IngestResult(evt.event_id, IngestOutcome.DUPLICATE)

            if isinstance(evt, AttemptEvent):
                outcome = apply_attempt_event(db, evt)
            else:
                outcome = apply_lifecycle_event(db, evt)

            claim = ledger.try_claim(
                db,
                evt.event_id,
                evt.type,
                occurred_at=_occurred_at(evt),
                attempt_id=getattr(evt, "attempt_id", None),
                attempt_version=getattr(evt, "attempt_version", None),
            )
            if claim is ledger.ClaimResult.ALREADY_PROCESSED:
                raise DuplicateEventError(evt.event_id)
    except DuplicateEventError:
        logger.debug("Event %s claimed by a concurrent delivery", evt.event_id)
        return IngestResult(evt.event_id, IngestOutcome.DUPLICATE)

    logger.info("Event %s (%s) → %s", evt.event_id, evt.type, outcome.value)
    return IngestResult(evt.event_id, outcome)


def _occurred_at(evt: AttemptEvent | LifecycleEvent):
    if isinstance(evt, QuizDeletedEvent):
        return evt.deleted_at
    if isinstance(evt, QuizVersionUpdatedEvent):
        return evt.updated_at
    return evt.occurred_at


# ── Attempt events ────────────────────────────────────────────────────────────


def apply_attempt_event(db: Session, evt: AttemptEvent) -> IngestOutcome:
    # Lock order: schedule (shared), audit row, student stats row
    schedule = roster.share_schedule(db, evt.schedule_id)
    previous = audit.get_audit_row(db, evt.attempt_id)
    if audit.is_stale(previous, evt.attempt_version):
        if audit.is_same_version_anomaly(previous, evt):
            logger.warning(
                "Attempt %s v%d re-delivered with a different outcome; keeping the first",
                evt.attempt_id,
                evt.attempt_version,
            )
        else:
            logger.debug(
                "Stale event %s for attempt %s (v%d ≤ v%d)",
                evt.event_id,
                evt.attempt_id,
                evt.attempt_version,
                previous.attempt_version,
            )
        return IngestOutcome.STALE

    class_id = evt.class_id or (schedule.class_id if schedule else None)
    row = audit.upsert_audit_row(
        db,
        evt,
        previous,
        class_id=class_id,
        subject=evt.subject or (schedule.subject if schedule else None),
        topic=evt.topic or (schedule.topic if schedule else None),
    )
    class_id = row.class_id

    if class_id is None or roster.get_class(db, class_id) is None:
        logger.warning(
            "Class %s not found; attempt %s mirrored without stats",
            class_id,
            evt.attempt_id,
        )
        return IngestOutcome.SKIPPED

    if schedule is None:
        logger.warning(
            "Schedule %s not found; attempt %s mirrored without stats",
            evt.schedule_id,
            evt.attempt_id,
        )
        return IngestOutcome.SKIPPED

    contribution = roster.contribution_of(schedule)
    if row.valid:
        _apply_valid_view(db, evt, row, class_id, contribution)
    else:
        _apply_invalid_view(db, evt, class_id, contribution)
    return IngestOutcome.APPLIED


def _apply_valid_view(
    db: Session,
    evt: AttemptEvent,
    row: AttemptAudit,
    class_id: str,
    contribution: float,
) -> None:
    stat = get_or_create_student_stat(db, class_id, evt.student_id)
    current = entry_from_canonical(load_canonical(db, stat.id, evt.schedule_id))
    candidate = entry_from_audit(row)

    if current is not None and current.attempt_id == candidate.attempt_id:
        # Edit of the incumbent: a downward regrade may hand the slot to another attempt
        other = audit.best_valid_attempt(
            db,
            class_id,
            evt.student_id,
            evt.schedule_id,
            exclude_attempt_id=candidate.attempt_id,
        )
        change = select_after_edit(current, candidate, entry_from_audit(other))
    else:
        change = select_on_finalize(current, candidate)

    apply_canonical_change(
        db, stat, evt.schedule_id, change, contribution, quiz_id=evt.quiz_id
    )
    record_attendance(
        db, stat.id, candidate.finished_at, roster.get_class_timezone(db, class_id)
    )


def _apply_invalid_view(
    db: Session, evt: AttemptEvent, class_id: str, contribution: float
) -> None:
    stat = find_student_stat(db, class_id, evt.student_id, for_update=True)
    if stat is None:
        return
    current = entry_from_canonical(load_canonical(db, stat.id, evt.schedule_id))
    if current is None or current.attempt_id != evt.attempt_id:
        return

    other = audit.best_valid_attempt(
        db,
        class_id,
        evt.student_id,
        evt.schedule_id,
        exclude_attempt_id=evt.attempt_id,
    )
    change = select_after_edit(current, None, entry_from_audit(other))
    apply_canonical_change(
        db, stat, evt.schedule_id, change, contribution, quiz_id=evt.quiz_id
    )
    if evt.type == ATTEMPT_FINALIZED:
        logger.info("Attempt %s finalized without a score; treated as invalidated", evt.attempt_id)


# ── Lifecycle events ──────────────────────────────────────────────────────────


def apply_lifecycle_event(db: Session, evt: LifecycleEvent) -> IngestOutcome:
    if isinstance(evt, QuizDeletedEvent):
        applied = lifecycle.apply_quiz_deleted(db, evt)
    elif isinstance(evt, QuizMetaUpdatedEvent):
        applied = lifecycle.apply_quiz_meta_updated(db, evt)
    else:
        applied = lifecycle.apply_quiz_version_updated(db, evt)
    return IngestOutcome.APPLIED if applied else IngestOutcome.IGNORED
