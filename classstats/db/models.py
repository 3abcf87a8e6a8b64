"""SQLAlchemy ORM models for the class stats engine.

Tables
------
- classes             – roster classes (only the time zone matters here)
- schedules           – quizzes scheduled into a class, with their contribution weight
- student_class_stats – per‑student per‑class aggregates (leaderboard source of truth)
- canonical_attempts  – the best attempt per (student stats row, schedule)
- attendance_days     – append‑only ledger of class‑local days a student attended
- stat_buckets        – per‑subject / per‑topic score buckets of a student stats row
- schedule_stats      – per‑schedule aggregates
- attempt_audit       – last known view of every attempt (ordering gate + rebuilds)
- processed_events    – idempotency ledger of consumed event ids

``classes`` and ``schedules`` are owned by the roster CRUD layer; the engine
reads them and only patches schedule snapshot fields on lifecycle events.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, attribute_keyed_dict, mapped_column, relationship

from classstats.config import settings
from classstats.db.session import Base


# ── helpers ───────────────────────────────────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> uuid.UUID:
    return uuid.uuid4()


def _default_contribution() -> float:
    return settings.DEFAULT_SCHEDULE_CONTRIBUTION


# Bucket dimensions (stored as plain strings)
SUBJECT = "subject"
TOPIC = "topic"
DIMENSIONS = (SUBJECT, TOPIC)


# ── Roster (read‑only for the engine) ─────────────────────────────────────────


class ClassRoom(Base):
    __tablename__ = "classes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    schedules: Mapped[list["ScheduleItem"]] = relationship(back_populates="klass")


class ScheduleItem(Base):
    """A quiz assigned to a class for a time window."""

    __tablename__ = "schedules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    class_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("classes.id"), index=True
    )
    quiz_id: Mapped[str] = mapped_column(String(64))
    quiz_root_id: Mapped[str] = mapped_column(String(64), index=True)
    quiz_version: Mapped[int] = mapped_column(Integer, default=1)
    quiz_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subject: Mapped[str | None] = mapped_column(String(100), nullable=True)
    subject_color: Mapped[str | None] = mapped_column(String(16), nullable=True)
    topic: Mapped[str | None] = mapped_column(String(200), nullable=True)
    contribution: Mapped[float] = mapped_column(Float, default=_default_contribution)
    start_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    klass: Mapped["ClassRoom"] = relationship(back_populates="schedules")


# ── Student aggregates ────────────────────────────────────────────────────────


class StudentClassStat(Base):
    """Per‑student, per‑class aggregates.

    Counters are only ever moved with SQL‑expression increments; the keyed
    collections below are read views over the child tables.
    """

    __tablename__ = "student_class_stats"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    class_id: Mapped[str] = mapped_column(String(64), index=True)
    student_id: Mapped[str] = mapped_column(String(64), index=True)

    sum_score: Mapped[float] = mapped_column(Float, default=0.0)
    sum_max: Mapped[float] = mapped_column(Float, default=0.0)
    participation_count: Mapped[int] = mapped_column(Integer, default=0)
    overall_score: Mapped[float] = mapped_column(Float, default=0.0)

    # Stored "last earned" streak; projected to 0 on reads when stale.
    streak_days: Mapped[int] = mapped_column(Integer, default=0)
    best_streak_days: Mapped[int] = mapped_column(Integer, default=0)
    # Noon UTC of the most recent attended class‑local day.
    last_streak_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    version: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    canonical_by_schedule: Mapped[dict[str, "CanonicalAttempt"]] = relationship(
        collection_class=attribute_keyed_dict("schedule_id"),
        viewonly=True,
    )
    attendance_days: Mapped[dict[str, "AttendanceDay"]] = relationship(
        collection_class=attribute_keyed_dict("day_key"),
        viewonly=True,
    )
    by_subject: Mapped[dict[str, "StatBucket"]] = relationship(
        primaryjoin="and_(StudentClassStat.id == StatBucket.stat_id, "
        "StatBucket.dimension == 'subject')",
        collection_class=attribute_keyed_dict("label"),
        viewonly=True,
    )
    by_topic: Mapped[dict[str, "StatBucket"]] = relationship(
        primaryjoin="and_(StudentClassStat.id == StatBucket.stat_id, "
        "StatBucket.dimension == 'topic')",
        collection_class=attribute_keyed_dict("label"),
        viewonly=True,
    )

    __table_args__ = (
        UniqueConstraint("class_id", "student_id", name="uq_class_student_stats"),
        Index("ix_leaderboard", "class_id", "overall_score", "streak_days"),
    )


class CanonicalAttempt(Base):
    """The attempt currently representing a student's outcome for one schedule."""

    __tablename__ = "canonical_attempts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    stat_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("student_class_stats.id", ondelete="CASCADE")
    )
    schedule_id: Mapped[str] = mapped_column(String(64), index=True)
    attempt_id: Mapped[str] = mapped_column(String(64))
    score: Mapped[float] = mapped_column(Float)
    max_score: Mapped[float] = mapped_column(Float)
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    subject: Mapped[str | None] = mapped_column(String(100), nullable=True)
    topic: Mapped[str | None] = mapped_column(String(200), nullable=True)

    __table_args__ = (
        UniqueConstraint("stat_id", "schedule_id", name="uq_canonical_stat_schedule"),
    )


class AttendanceDay(Base):
    """One attended class‑local day (``YYYY-MM-DD``). Never deleted by events."""

    __tablename__ = "attendance_days"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    stat_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("student_class_stats.id", ondelete="CASCADE")
    )
    day_key: Mapped[str] = mapped_column(String(10))

    __table_args__ = (
        UniqueConstraint("stat_id", "day_key", name="uq_attendance_stat_day"),
    )


class StatBucket(Base):
    """Subject or topic bucket: sums over the canonical attempts carrying that label."""

    __tablename__ = "stat_buckets"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    stat_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("student_class_stats.id", ondelete="CASCADE")
    )
    dimension: Mapped[str] = mapped_column(String(16))  # "subject" | "topic"
    label: Mapped[str] = mapped_column(String(200))
    sum_score: Mapped[float] = mapped_column(Float, default=0.0)
    sum_max: Mapped[float] = mapped_column(Float, default=0.0)
    attempts: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        UniqueConstraint(
            "stat_id", "dimension", "label", name="uq_bucket_stat_dimension_label"
        ),
    )


# ── Schedule aggregates ───────────────────────────────────────────────────────


class ScheduleStat(Base):
    __tablename__ = "schedule_stats"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    schedule_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    class_id: Mapped[str] = mapped_column(String(64), index=True)
    quiz_id: Mapped[str] = mapped_column(String(64), index=True)
    participants: Mapped[int] = mapped_column(Integer, default=0)
    sum_score: Mapped[float] = mapped_column(Float, default=0.0)
    sum_max: Mapped[float] = mapped_column(Float, default=0.0)
    version: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


# ── Audit trails ──────────────────────────────────────────────────────────────


class AttemptAudit(Base):
    """Mirror of the last known view of an attempt, across its edit history."""

    __tablename__ = "attempt_audit"

    attempt_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    attempt_version: Mapped[int] = mapped_column(Integer)
    quiz_id: Mapped[str] = mapped_column(String(64), index=True)
    quiz_root_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, index=True
    )
    quiz_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    class_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    schedule_id: Mapped[str] = mapped_column(String(64))
    student_id: Mapped[str] = mapped_column(String(64))
    subject: Mapped[str | None] = mapped_column(String(100), nullable=True)
    topic: Mapped[str | None] = mapped_column(String(200), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    valid: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index(
            "ix_audit_student_schedule",
            "class_id",
            "student_id",
            "schedule_id",
            "valid",
        ),
    )


class ProcessedEvent(Base):
    """Idempotency ledger entry; its existence means the event fully landed."""

    __tablename__ = "processed_events"

    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[str] = mapped_column(String(40))
    attempt_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    attempt_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    occurred_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
