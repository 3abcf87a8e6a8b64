"""Read models and correction requests for stats endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field


class BucketRead(BaseModel):
    """Subject or topic bucket."""

    sum_score: float
    sum_max: float
    attempts: int
    avg_pct: float = 0.0


class CanonicalRead(BaseModel):
    attempt_id: str
    score: float
    max_score: float
    finished_at: datetime
    subject: str | None = None
    topic: str | None = None


class StudentStatsRead(BaseModel):
    """One student's aggregates in a class, with read-time projections applied."""

    class_id: str
    student_id: str
    sum_score: float
    sum_max: float
    participation_count: int
    overall_score: float
    streak_days: int
    current_streak_days: int
    best_streak_days: int
    last_streak_date: datetime | None = None
    participation_pct: int = 0
    avg_score_pct: int = 0
    canonical_by_schedule: dict[str, CanonicalRead] = {}
    attendance_days: dict[str, bool] = {}
    by_subject: dict[str, BucketRead] = {}
    by_topic: dict[str, BucketRead] = {}
    version: int = 0
    updated_at: datetime | None = None


class ClassStatsRead(BaseModel):
    """Class rollup, recomputed from student rows on every read."""

    class_id: str
    # The roster mirror keeps no member list; only students with stats are counted
    students: int = Field(description="Students holding a stats row in the class")
    assigned: int
    attempts: int
    sum_score: float
    sum_max: float
    avg_score_pct: int = 0
    participants: dict[str, bool] = {}
    by_subject: dict[str, BucketRead] = {}


class LeaderboardRow(BaseModel):
    rank: int
    student_id: str
    overall_score: float
    participation_count: int
    current_streak_days: int
    best_streak_days: int
    avg_score_pct: int


class LeaderboardRead(BaseModel):
    class_id: str
    rows: list[LeaderboardRow] = []


class ScheduleStatsRead(BaseModel):
    schedule_id: str
    class_id: str
    quiz_id: str
    participants: int
    sum_score: float
    sum_max: float
    avg_pct: float
    version: int


class ContributionUpdate(BaseModel):
    """New weight of a schedule toward the overall score."""

    contribution: float = Field(ge=0)


class ContributionChangeRead(BaseModel):
    schedule_id: str
    old_contribution: float
    new_contribution: float
    students_affected: int


class ScheduleRemovalRead(BaseModel):
    schedule_id: str
    contribution: float
    students_reversed: int
