"""Inbound quiz event envelopes.

Attempt events may carry their outcome fields flat or nested under
``payload`` (the upstream producer's shape); both are normalised here so the
engine only ever sees one representation.
"""

import math
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from classstats.core.errors import MalformedEventError

ATTEMPT_FINALIZED = "AttemptFinalized"
ATTEMPT_INVALIDATED = "AttemptInvalidated"
QUIZ_DELETED = "QuizDeleted"
QUIZ_META_UPDATED = "QuizMetaUpdated"
QUIZ_VERSION_UPDATED = "QuizVersionUpdated"

# Width of the id columns in the stats store
ID_MAX_LENGTH = 64


class _Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event_id: str = Field(alias="eventId", min_length=1, max_length=ID_MAX_LENGTH)


class AttemptEvent(_Envelope):
    """AttemptFinalized / AttemptInvalidated from the grading service."""

    type: Literal["AttemptFinalized", "AttemptInvalidated"]
    occurred_at: datetime | None = Field(default=None, alias="occurredAt")
    attempt_id: str = Field(alias="attemptId", min_length=1, max_length=ID_MAX_LENGTH)
    attempt_version: int = Field(default=1, alias="attemptVersion")
    quiz_id: str = Field(alias="quizId", max_length=ID_MAX_LENGTH)
    quiz_root_id: str | None = Field(default=None, alias="quizRootId", max_length=ID_MAX_LENGTH)
    quiz_version: int | None = Field(default=None, alias="quizVersion")
    class_id: str | None = Field(default=None, alias="classId", max_length=ID_MAX_LENGTH)
    schedule_id: str = Field(alias="scheduleId", min_length=1, max_length=ID_MAX_LENGTH)
    student_id: str = Field(alias="studentId", min_length=1, max_length=ID_MAX_LENGTH)

    started_at: datetime | None = Field(default=None, alias="startedAt")
    finished_at: datetime | None = Field(default=None, alias="finishedAt")
    score: float | None = None
    max_score: float | None = Field(default=None, alias="maxScore")
    subject: str | None = Field(default=None, max_length=100)
    topic: str | None = Field(default=None, max_length=200)

    @model_validator(mode="before")
    @classmethod
    def _lift_payload(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("payload"), dict):
            lifted = dict(data["payload"])
            lifted.update({k: v for k, v in data.items() if k != "payload"})
            return lifted
        return data

    @field_validator("attempt_version", mode="before")
    @classmethod
    def _default_version(cls, v: Any) -> Any:
        return 1 if v is None else v

    @field_validator("score", "max_score", mode="before")
    @classmethod
    def _numeric_or_none(cls, v: Any) -> Any:
        # Non-numeric outcomes make the attempt invalid, not the envelope malformed
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return None
        return v if math.isfinite(v) else None

    @field_validator("subject", "topic", mode="before")
    @classmethod
    def _label_or_none(cls, v: Any) -> Any:
        if isinstance(v, str) and v.strip():
            return v.strip()
        return None

    @property
    def is_valid_finalize(self) -> bool:
        """Only a finalize with numeric score and max can become canonical."""
        return (
            self.type == ATTEMPT_FINALIZED
            and self.score is not None
            and self.max_score is not None
        )


class QuizDeletedEvent(_Envelope):
    type: Literal["QuizDeleted"]
    quiz_id: str = Field(alias="quizId", max_length=ID_MAX_LENGTH)  # root id
    deleted_at: datetime = Field(alias="deletedAt")
    purge_count: int | None = Field(default=None, alias="purgeCount")


class QuizMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str | None = None
    subject: str | None = None
    subject_color_hex: str | None = Field(default=None, alias="subjectColorHex")
    topic: str | None = None


class QuizMetaUpdatedEvent(_Envelope):
    type: Literal["QuizMetaUpdated"]
    quiz_id: str = Field(alias="quizId", max_length=ID_MAX_LENGTH)  # root id
    occurred_at: datetime = Field(alias="occurredAt")
    meta: QuizMeta


class QuizVersionUpdatedEvent(_Envelope):
    type: Literal["QuizVersionUpdated"]
    quiz_id: str = Field(alias="quizId", max_length=ID_MAX_LENGTH)  # root id
    previous_version: int = Field(alias="previousVersion")
    new_version: int = Field(alias="newVersion")
    new_quiz_id: str | None = Field(default=None, alias="newQuizId", max_length=ID_MAX_LENGTH)
    content_changed: bool = Field(default=False, alias="contentChanged")
    update_scope: str = Field(default="current_and_future", alias="updateScope")
    updated_at: datetime = Field(alias="updatedAt")


LifecycleEvent = Union[QuizDeletedEvent, QuizMetaUpdatedEvent, QuizVersionUpdatedEvent]

QuizEvent = Annotated[
    Union[AttemptEvent, QuizDeletedEvent, QuizMetaUpdatedEvent, QuizVersionUpdatedEvent],
    Field(discriminator="type"),
]

_quiz_event_adapter: TypeAdapter[QuizEvent] = TypeAdapter(QuizEvent)


def parse_quiz_event(raw: Any) -> AttemptEvent | LifecycleEvent:
    """Validate a raw envelope, raising :class:`MalformedEventError` on failure."""
    if not isinstance(raw, dict):
        raise MalformedEventError("Event envelope must be a JSON object")
    try:
        return _quiz_event_adapter.validate_python(raw)
    except ValidationError as exc:
        raise MalformedEventError(
            "Invalid event payload",
            details=exc.errors(include_url=False, include_context=False, include_input=False),
        ) from exc


class EventAck(BaseModel):
    """Response of the synchronous ingestion endpoint."""

    ok: bool = True
    event_id: str
    outcome: str


class EventQueued(BaseModel):
    ok: bool = True
    task_id: str
