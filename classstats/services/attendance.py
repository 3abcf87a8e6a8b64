"""Attendance ledger & streak derivation (earned and sticky).

A student attends a class-local calendar day by finalizing an attempt that
day. Days are only ever added to the ledger; edits and invalidations never
revoke one, so streak history is decoupled from grading corrections.

Stored values on the stats row:

- ``streak_days``      – run length ending at the most recent attended day
- ``best_streak_days`` – longest run anywhere in the ledger
- ``last_streak_date`` – noon UTC of the most recent attended day

Read projection: the *current* streak is 0 unless the last attended day is
today or yesterday in the class time zone (:func:`projected_streak`).
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from classstats.config import settings
from classstats.db.models import AttendanceDay, StudentClassStat
from classstats.services.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

# Stable mid-day marker so the stored date never flips across zone boundaries
_MARKER_TIME = time(12, 0, tzinfo=timezone.utc)


def resolve_zone(tz_name: str | None) -> ZoneInfo:
    """Return the zone for *tz_name*, falling back to the configured default."""
    if tz_name:
        try:
            return ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(
                "Unknown time zone %r, using %s", tz_name, settings.DEFAULT_CLASS_TIMEZONE
            )
    return ZoneInfo(settings.DEFAULT_CLASS_TIMEZONE)


def day_key(moment: datetime, tz_name: str | None) -> str:
    """``YYYY-MM-DD`` of *moment* as perceived in the class time zone."""
    return as_utc(moment).astimezone(resolve_zone(tz_name)).date().isoformat()


@dataclass(frozen=True)
class StreakSummary:
    streak_days: int
    best_streak_days: int
    last_streak_date: datetime | None


def summarize_streaks(day_keys) -> StreakSummary:
    """Derive trailing and best streaks from a collection of day keys.

    Keys one calendar day apart are consecutive; any larger gap breaks the run.
    """
    days = sorted({date.fromisoformat(k) for k in day_keys})
    if not days:
        return StreakSummary(0, 0, None)

    trailing = 1
    for i in range(len(days) - 1, 0, -1):
        if (days[i] - days[i - 1]).days == 1:
            trailing += 1
        else:
            break

    best = run = 1
    for prev, cur in zip(days, days[1:]):
        run = run + 1 if (cur - prev).days == 1 else 1
        best = max(best, run)

    marker = datetime.combine(days[-1], _MARKER_TIME)
    return StreakSummary(trailing, best, marker)


def projected_streak(
    streak_days: int,
    last_streak_date: datetime | None,
    tz_name: str | None,
    now: datetime | None = None,
) -> int:
    """Current streak as shown to readers; never written back."""
    if last_streak_date is None:
        return 0
    last_day = as_utc(last_streak_date).date()
    today = as_utc(now or utcnow()).astimezone(resolve_zone(tz_name)).date()
    if last_day in (today, today - timedelta(days=1)):
        return int(streak_days or 0)
    return 0


def record_attendance(
    db: Session, stat_id, finished_at: datetime, tz_name: str | None
) -> bool:
    """Mark the class-local day of *finished_at* attended and refresh streaks.

    Returns False when the day was already in the ledger (nothing changes).
    Must run inside the unit of work that applied the finalize.
    """
    key = day_key(finished_at, tz_name)
    existing = db.scalar(
        select(AttendanceDay.id).where(
            AttendanceDay.stat_id == stat_id, AttendanceDay.day_key == key
        )
    )
    if existing is not None:
        return False

    db.add(AttendanceDay(stat_id=stat_id, day_key=key))
    db.flush()

    keys = db.scalars(
        select(AttendanceDay.day_key).where(AttendanceDay.stat_id == stat_id)
    ).all()
    summary = summarize_streaks(keys)
    db.execute(
        update(StudentClassStat)
        .where(StudentClassStat.id == stat_id)
        .values(
            streak_days=summary.streak_days,
            best_streak_days=case(
                (
                    StudentClassStat.best_streak_days > summary.best_streak_days,
                    StudentClassStat.best_streak_days,
                ),
                else_=summary.best_streak_days,
            ),
            last_streak_date=summary.last_streak_date,
            version=StudentClassStat.version + 1,
            updated_at=utcnow(),
        )
    )
    logger.debug("Attendance %s recorded for stats row %s (streak=%d)", key, stat_id, summary.streak_days)
    return True
