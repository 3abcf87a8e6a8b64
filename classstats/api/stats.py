"""Read-only stats routes: class rollup, leaderboard, student and schedule views."""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from classstats.core.errors import ClassNotFoundError, ScheduleNotFoundError
from classstats.db.session import get_db
from classstats.schemas.stats import (
    ClassStatsRead,
    LeaderboardRead,
    ScheduleStatsRead,
    StudentStatsRead,
)
from classstats.services import rollup

router = APIRouter()


def _class_not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Class not found")


@router.get("/classes/{class_id}/stats", response_model=ClassStatsRead)
def get_class_stats(class_id: str, db: Session = Depends(get_db)):
    try:
        return rollup.derive_class_stats(db, class_id)
    except ClassNotFoundError:
        raise _class_not_found()


@router.get("/classes/{class_id}/leaderboard", response_model=LeaderboardRead)
def get_leaderboard(
    class_id: str,
    limit: int | None = Query(None, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """Students ranked by overall score (competition ranking)."""
    try:
        return rollup.build_leaderboard(db, class_id, limit=limit)
    except ClassNotFoundError:
        raise _class_not_found()


@router.get(
    "/classes/{class_id}/students/{student_id}/stats", response_model=StudentStatsRead
)
def get_student_stats(class_id: str, student_id: str, db: Session = Depends(get_db)):
    try:
        return rollup.student_stats_view(db, class_id, student_id)
    except ClassNotFoundError:
        raise _class_not_found()


@router.get("/schedules/{schedule_id}/stats", response_model=ScheduleStatsRead)
def get_schedule_stats(schedule_id: str, db: Session = Depends(get_db)):
    try:
        return rollup.schedule_stats_view(db, schedule_id)
    except ScheduleNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
