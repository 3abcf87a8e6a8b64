"""Domain exceptions raised by the stats engine.

Routes translate these into HTTP errors; the Celery consumer decides from
them whether a delivery is worth retrying.
"""

from typing import Any


class StatsError(Exception):
    """Base class for every engine error."""


class MalformedEventError(StatsError):
    """The event envelope is missing required fields or has the wrong shape.

    Nothing is written and the event id is not claimed, so a corrected
    resend can still succeed.
    """

    def __init__(self, message: str, details: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.details = details or []


class DuplicateEventError(StatsError):
    """Another delivery of the same event id committed first."""

    def __init__(self, event_id: str):
        super().__init__(f"Event {event_id} already processed")
        self.event_id = event_id


class ClassNotFoundError(StatsError):
    def __init__(self, class_id: str):
        super().__init__(f"Class {class_id} not found")
        self.class_id = class_id


class ScheduleNotFoundError(StatsError):
    def __init__(self, schedule_id: str):
        super().__init__(f"Schedule {schedule_id} not found")
        self.schedule_id = schedule_id
