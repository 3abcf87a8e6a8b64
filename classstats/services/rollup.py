"""Read-side reductions over the stored aggregates.

Nothing here writes: class rollups, leaderboards and per-student views are
recomputed from ``student_class_stats`` on every read, and the current streak
is projected (never stored) from the last attended day.
"""

import math
from datetime import datetime
from typing import Any, Iterable, Mapping

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from classstats.core.errors import ClassNotFoundError, ScheduleNotFoundError
from classstats.db.models import ScheduleItem, ScheduleStat, StudentClassStat
from classstats.schemas.stats import (
    BucketRead,
    CanonicalRead,
    ClassStatsRead,
    LeaderboardRead,
    LeaderboardRow,
    ScheduleStatsRead,
    StudentStatsRead,
)
from classstats.services import roster
from classstats.services.attendance import projected_streak
from classstats.services.canonical import pct
from classstats.services.clock import as_utc, utcnow


def as_plain_mapping(collection: Mapping[str, Any] | None, convert=None) -> dict[str, Any]:
    """Turn a keyed ORM collection into a plain ``dict`` (optionally converting values)."""
    if not collection:
        return {}
    if convert is None:
        return {str(k): v for k, v in collection.items()}
    return {str(k): convert(v) for k, v in collection.items()}


def round_pct(numerator: float, denominator: float) -> int:
    """Whole percentage rounded half up; 0 when the denominator is not positive."""
    if denominator <= 0:
        return 0
    return int(math.floor(numerator / denominator * 100 + 0.5))


def participation_pct(participations: int, eligible: int) -> int:
    return round_pct(min(participations, eligible), eligible) if eligible > 0 else 0


def _bucket_read(bucket) -> BucketRead:
    return BucketRead(
        sum_score=bucket.sum_score,
        sum_max=bucket.sum_max,
        attempts=bucket.attempts,
        avg_pct=round(pct(bucket.sum_score, bucket.sum_max) * 100, 2),
    )


def _canonical_read(row) -> CanonicalRead:
    return CanonicalRead(
        attempt_id=row.attempt_id,
        score=row.score,
        max_score=row.max_score,
        finished_at=as_utc(row.finished_at),
        subject=row.subject,
        topic=row.topic,
    )


def _load_stats(db: Session, class_id: str) -> list[StudentClassStat]:
    return list(
        db.scalars(
            select(StudentClassStat)
            .where(StudentClassStat.class_id == class_id)
            .options(selectinload(StudentClassStat.by_subject))
            .order_by(StudentClassStat.student_id)
        ).all()
    )


def _require_class(db: Session, class_id: str):
    klass = roster.get_class(db, class_id)
    if klass is None:
        raise ClassNotFoundError(class_id)
    return klass


def eligible_schedule_count(db: Session, class_id: str, now: datetime | None = None) -> int:
    """Schedules of the class that have already opened."""
    now = now or utcnow()
    starts = db.scalars(
        select(ScheduleItem.start_date).where(ScheduleItem.class_id == class_id)
    ).all()
    return sum(1 for start in starts if start is None or as_utc(start) <= now)


# ── Class rollup ──────────────────────────────────────────────────────────────


def derive_class_stats(db: Session, class_id: str) -> ClassStatsRead:
    _require_class(db, class_id)
    stats = _load_stats(db, class_id)
    assigned = db.scalar(
        select(func.count()).select_from(ScheduleItem).where(ScheduleItem.class_id == class_id)
    )

    attempts = 0
    sum_score = 0.0
    sum_max = 0.0
    participants: dict[str, bool] = {}
    merged: dict[str, dict[str, float]] = {}
    for st in stats:
        attempts += st.participation_count
        sum_score += st.sum_score
        sum_max += st.sum_max
        if st.participation_count > 0:
            participants[st.student_id] = True
        for label, bucket in st.by_subject.items():
            acc = merged.setdefault(label, {"sum_score": 0.0, "sum_max": 0.0, "attempts": 0})
            acc["sum_score"] += bucket.sum_score
            acc["sum_max"] += bucket.sum_max
            acc["attempts"] += bucket.attempts

    return ClassStatsRead(
        class_id=class_id,
        students=len(stats),
        assigned=assigned or 0,
        attempts=attempts,
        sum_score=sum_score,
        sum_max=sum_max,
        avg_score_pct=round_pct(sum_score, sum_max),
        participants=participants,
        by_subject={
            label: BucketRead(
                sum_score=acc["sum_score"],
                sum_max=acc["sum_max"],
                attempts=int(acc["attempts"]),
                avg_pct=round(pct(acc["sum_score"], acc["sum_max"]) * 100, 2),
            )
            for label, acc in sorted(merged.items())
        },
    )


# ── Leaderboard ───────────────────────────────────────────────────────────────


def compute_ranks(scores: Iterable[float]) -> list[int]:
    """Standard competition ranks ("1224") for scores already sorted descending."""
    ranks: list[int] = []
    previous = None
    for position, score in enumerate(scores, start=1):
        if ranks and score == previous:
            ranks.append(ranks[-1])
        else:
            ranks.append(position)
        previous = score
    return ranks


def build_leaderboard(
    db: Session, class_id: str, limit: int | None = None, now: datetime | None = None
) -> LeaderboardRead:
    _require_class(db, class_id)
    tz = roster.get_class_timezone(db, class_id)
    now = now or utcnow()

    entries = []
    for st in _load_stats(db, class_id):
        current = projected_streak(st.streak_days, st.last_streak_date, tz, now=now)
        entries.append((st, current))
    entries.sort(key=lambda e: (-e[0].overall_score, -e[1], e[0].student_id))

    ranks = compute_ranks(round(st.overall_score, 6) for st, _ in entries)
    rows = [
        LeaderboardRow(
            rank=rank,
            student_id=st.student_id,
            overall_score=st.overall_score,
            participation_count=st.participation_count,
            current_streak_days=current,
            best_streak_days=st.best_streak_days,
            avg_score_pct=round_pct(st.sum_score, st.sum_max),
        )
        for rank, (st, current) in zip(ranks, entries)
    ]
    if limit is not None:
        rows = rows[:limit]
    return LeaderboardRead(class_id=class_id, rows=rows)


# ── Per-student / per-schedule views ──────────────────────────────────────────


def student_stats_view(
    db: Session, class_id: str, student_id: str, now: datetime | None = None
) -> StudentStatsRead:
    """Stats of one student; a student with no events yet reads as all zeros."""
    _require_class(db, class_id)
    tz = roster.get_class_timezone(db, class_id)
    now = now or utcnow()
    eligible = eligible_schedule_count(db, class_id, now=now)

    st = db.scalar(
        select(StudentClassStat).where(
            StudentClassStat.class_id == class_id,
            StudentClassStat.student_id == student_id,
        )
    )
    if st is None:
        return StudentStatsRead(
            class_id=class_id,
            student_id=student_id,
            sum_score=0.0,
            sum_max=0.0,
            participation_count=0,
            overall_score=0.0,
            streak_days=0,
            current_streak_days=0,
            best_streak_days=0,
        )

    return StudentStatsRead(
        class_id=class_id,
        student_id=student_id,
        sum_score=st.sum_score,
        sum_max=st.sum_max,
        participation_count=st.participation_count,
        overall_score=st.overall_score,
        streak_days=st.streak_days,
        current_streak_days=projected_streak(
            st.streak_days, st.last_streak_date, tz, now=now
        ),
        best_streak_days=st.best_streak_days,
        last_streak_date=as_utc(st.last_streak_date) if st.last_streak_date else None,
        participation_pct=participation_pct(st.participation_count, eligible),
        avg_score_pct=round_pct(st.sum_score, st.sum_max),
        canonical_by_schedule=as_plain_mapping(st.canonical_by_schedule, _canonical_read),
        attendance_days=as_plain_mapping(st.attendance_days, lambda _: True),
        by_subject=as_plain_mapping(st.by_subject, _bucket_read),
        by_topic=as_plain_mapping(st.by_topic, _bucket_read),
        version=st.version,
        updated_at=as_utc(st.updated_at) if st.updated_at else None,
    )


def schedule_stats_view(db: Session, schedule_id: str) -> ScheduleStatsRead:
    schedule = roster.get_schedule(db, schedule_id)
    if schedule is None:
        raise ScheduleNotFoundError(schedule_id)

    row = db.scalar(select(ScheduleStat).where(ScheduleStat.schedule_id == schedule_id))
    if row is None:
        return ScheduleStatsRead(
            schedule_id=schedule_id,
            class_id=schedule.class_id,
            quiz_id=schedule.quiz_id,
            participants=0,
            sum_score=0.0,
            sum_max=0.0,
            avg_pct=0.0,
            version=0,
        )
    return ScheduleStatsRead(
        schedule_id=schedule_id,
        class_id=row.class_id,
        quiz_id=row.quiz_id,
        participants=row.participants,
        sum_score=row.sum_score,
        sum_max=row.sum_max,
        avg_pct=round(pct(row.sum_score, row.sum_max) * 100, 2),
        version=row.version,
    )
