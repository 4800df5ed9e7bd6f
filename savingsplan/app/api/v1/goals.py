from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional

from savingsplan.app.database import get_db_session
from savingsplan.app.models.models import GoalStatus
from savingsplan.app.schemas.goals import GoalCreate, GoalUpdate, GoalResponse
from savingsplan.app.schemas.planning import MonthlyRequirement
from savingsplan.app.services.exchange_rate_service import ExchangeRateService, get_rate_service
from savingsplan.app.services.goal_service import (
    create_goal, list_goals, get_goal, update_goal, cancel_goal, finish_goal
)
from savingsplan.app.services.recalculation_service import (
    GOAL_CHANGED, RecalculationScheduler, get_recalculation_scheduler
)
from savingsplan.app.services.requirement_service import get_goal_requirement
from savingsplan.app.utils.dates import month_label

router = APIRouter()

@router.post("/", response_model=GoalResponse)
async def create_new_goal(
    goal_data: GoalCreate,
    db: Session = Depends(get_db_session),
    scheduler: RecalculationScheduler = Depends(get_recalculation_scheduler)
):
    """
    Create a new savings goal.

    - Target amount, currency and deadline are required
    - New goals start as active and flexible
    """
    goal = create_goal(db, goal_data)
    scheduler.notify(GOAL_CHANGED, month_label())
    return goal

@router.get("/", response_model=List[GoalResponse])
async def get_goals(
    status: Optional[GoalStatus] = Query(None, description="Filter by goal status"),
    db: Session = Depends(get_db_session)
):
    """Get all goals, optionally filtered by status."""
    return list_goals(db, status)

@router.get("/{goal_id}", response_model=GoalResponse)
async def get_single_goal(goal_id: str, db: Session = Depends(get_db_session)):
    return get_goal(db, goal_id)

@router.put("/{goal_id}", response_model=GoalResponse)
async def update_existing_goal(
    goal_id: str,
    update_data: GoalUpdate,
    db: Session = Depends(get_db_session),
    scheduler: RecalculationScheduler = Depends(get_recalculation_scheduler)
):
    """
    Update a goal.

    - Changing the target, currency or deadline triggers a recalculation
    """
    goal, needs_recalculation = update_goal(db, goal_id, update_data)
    if needs_recalculation:
        scheduler.notify(GOAL_CHANGED, month_label())
    return goal

@router.post("/{goal_id}/cancel", response_model=GoalResponse)
async def cancel_existing_goal(
    goal_id: str,
    db: Session = Depends(get_db_session),
    scheduler: RecalculationScheduler = Depends(get_recalculation_scheduler)
):
    """
    Cancel a goal.

    - Releases every allocation pointing at it
    - Excluded from future plans
    """
    goal = cancel_goal(db, goal_id)
    scheduler.notify(GOAL_CHANGED, month_label())
    return goal

@router.post("/{goal_id}/finish", response_model=GoalResponse)
async def finish_existing_goal(
    goal_id: str,
    db: Session = Depends(get_db_session),
    scheduler: RecalculationScheduler = Depends(get_recalculation_scheduler)
):
    """Mark a goal as reached and release its allocations."""
    goal = finish_goal(db, goal_id)
    scheduler.notify(GOAL_CHANGED, month_label())
    return goal

@router.get("/{goal_id}/requirement", response_model=MonthlyRequirement)
async def get_requirement(
    goal_id: str,
    db: Session = Depends(get_db_session),
    rate_service: ExchangeRateService = Depends(get_rate_service)
):
    """
    Monthly requirement for a single goal.

    - Remaining amount, months remaining and required monthly contribution
    - Status: on_track, attention, critical or completed
    """
    return get_goal_requirement(db, goal_id, rate_service)
