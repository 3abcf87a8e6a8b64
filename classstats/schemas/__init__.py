"""Pydantic schemas, re-exported for convenience."""

from classstats.schemas.events import (  # noqa: F401
    AttemptEvent,
    EventAck,
    EventQueued,
    QuizDeletedEvent,
    QuizMetaUpdatedEvent,
    QuizVersionUpdatedEvent,
    parse_quiz_event,
)
from classstats.schemas.stats import (  # noqa: F401
    BucketRead,
    CanonicalRead,
    ClassStatsRead,
    ContributionChangeRead,
    ContributionUpdate,
    LeaderboardRead,
    LeaderboardRow,
    ScheduleRemovalRead,
    ScheduleStatsRead,
    StudentStatsRead,
)
