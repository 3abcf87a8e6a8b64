"""Quiz event ingestion routes (called by the event transport)."""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, status
from sqlalchemy.orm import Session

from classstats.core.errors import MalformedEventError
from classstats.db.session import get_db
from classstats.schemas.events import EventAck, EventQueued, parse_quiz_event
from classstats.services.ingest import process_quiz_event
from classstats.tasks import process_quiz_event as process_quiz_event_task

logger = logging.getLogger(__name__)
router = APIRouter()


def _bad_request(exc: MalformedEventError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"message": str(exc), "errors": exc.details},
    )


@router.post("/quiz", response_model=EventAck)
def ingest_quiz_event(
    event: Any = Body(...),
    db: Session = Depends(get_db),
):
    """Apply one event synchronously.

    Duplicates and stale versions are acknowledged with 200 so the transport
    stops redelivering them.
    """
    try:
        result = process_quiz_event(db, event)
    except MalformedEventError as exc:
        raise _bad_request(exc)
    return EventAck(event_id=result.event_id, outcome=result.outcome.value)


@router.post(
    "/quiz/enqueue", response_model=EventQueued, status_code=status.HTTP_202_ACCEPTED
)
def enqueue_quiz_event(event: Any = Body(...)):
    """Validate the envelope, then hand it to the Celery consumer."""
    try:
        parse_quiz_event(event)
    except MalformedEventError as exc:
        raise _bad_request(exc)
    task = process_quiz_event_task.delay(event)
    logger.info("Queued event %s as task %s", event.get("eventId"), task.id)
    return EventQueued(task_id=str(task.id))
