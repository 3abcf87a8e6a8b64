"""Schedule correction routes used by the scheduling CRUD layer."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from classstats.core.errors import ScheduleNotFoundError
from classstats.db.session import get_db
from classstats.schemas.stats import (
    ContributionChangeRead,
    ContributionUpdate,
    ScheduleRemovalRead,
)
from classstats.services.corrections import change_schedule_contribution, remove_schedule

router = APIRouter()


@router.patch(
    "/{class_id}/schedules/{schedule_id}/contribution",
    response_model=ContributionChangeRead,
)
def update_contribution(
    class_id: str,
    schedule_id: str,
    payload: ContributionUpdate,
    db: Session = Depends(get_db),
):
    """Change a schedule's weight and reweight every affected student."""
    try:
        change = change_schedule_contribution(
            db, schedule_id, payload.contribution, class_id=class_id
        )
    except ScheduleNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    return ContributionChangeRead(
        schedule_id=change.schedule_id,
        old_contribution=change.old_contribution,
        new_contribution=change.new_contribution,
        students_affected=change.students_affected,
    )


@router.delete("/{class_id}/schedules/{schedule_id}", response_model=ScheduleRemovalRead)
def delete_schedule(class_id: str, schedule_id: str, db: Session = Depends(get_db)):
    """Remove a schedule and reverse its contribution to every student."""
    try:
        removed = remove_schedule(db, schedule_id, class_id=class_id)
    except ScheduleNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    return ScheduleRemovalRead(
        schedule_id=removed.schedule_id,
        contribution=removed.contribution,
        students_reversed=removed.students_reversed,
    )
