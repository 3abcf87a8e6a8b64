"""Background tasks executed by Celery workers."""

import logging

from sqlalchemy.exc import IntegrityError, OperationalError

from classstats.celery_app import celery_app
from classstats.config import settings
from classstats.core.errors import MalformedEventError
from classstats.db.session import get_session_factory
from classstats.services.ingest import process_quiz_event as ingest_event

logger = logging.getLogger(__name__)


def _event_id(event) -> str | None:
    return event.get("eventId") if isinstance(event, dict) else None


@celery_app.task(
    bind=True, name="process_quiz_event", max_retries=settings.EVENT_MAX_RETRIES
)
def process_quiz_event(self, event: dict) -> dict:
    """Apply one quiz event delivered by the transport.

    Malformed envelopes are rejected without retry. Store conflicts roll the
    unit of work back and are retried with exponential back-off; the
    idempotency ledger makes the retry safe.
    """
    factory = get_session_factory()
    db = factory()
    try:
        result = ingest_event(db, event)
        return {"event_id": result.event_id, "outcome": result.outcome.value}

    except MalformedEventError as exc:
        logger.warning("Rejected malformed event: %s %s", exc, exc.details)
        return {"event_id": _event_id(event), "outcome": "rejected"}

    except (IntegrityError, OperationalError) as exc:
        logger.exception("Unit of work aborted for event %s", _event_id(event))
        raise self.retry(
            exc=exc,
            countdown=settings.EVENT_RETRY_BASE_SECONDS * (3**self.request.retries),
        )

    finally:
        db.close()
