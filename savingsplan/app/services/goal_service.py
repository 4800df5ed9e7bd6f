from sqlalchemy.orm import Session
from fastapi import HTTPException
from typing import List, Optional, Tuple
import logging

from savingsplan.app.models.models import Goal, GoalStatus, utcnow
from savingsplan.app.schemas.goals import GoalCreate, GoalUpdate
from savingsplan.app.services.allocation_service import release_goal_allocations

logger = logging.getLogger(__name__)


def create_goal(db: Session, goal_data: GoalCreate) -> Goal:
    """Service function to create a new savings goal"""
    goal = Goal(
        name=goal_data.name,
        target_amount=goal_data.target_amount,
        currency=goal_data.currency.upper(),
        deadline=goal_data.deadline,
        status=GoalStatus.ACTIVE.value
    )
    db.add(goal)
    db.commit()
    db.refresh(goal)
    logger.info("Created goal %s (%s %s by %s)", goal.id, goal.target_amount, goal.currency, goal.deadline)
    return goal

def get_goal(db: Session, goal_id: str) -> Goal:
    goal = db.query(Goal).filter(Goal.id == goal_id).first()
    if not goal:
        raise HTTPException(status_code=404, detail=f"Goal with id {goal_id} not found")
    return goal

def list_goals(db: Session, status: Optional[GoalStatus] = None) -> List[Goal]:
    query = db.query(Goal)
    if status is not None:
        query = query.filter(Goal.status == status.value)
    return query.order_by(Goal.created_at).all()

def update_goal(db: Session, goal_id: str, goal_update: GoalUpdate) -> Tuple[Goal, bool]:
    """
    Update a goal. Returns (goal, needs_recalculation); any change to the
    target, currency or deadline moves the monthly requirement.
    """
    goal = get_goal(db, goal_id)
    if goal.status != GoalStatus.ACTIVE.value:
        raise HTTPException(status_code=400, detail=f"Cannot update a {goal.status} goal")

    update_data = goal_update.model_dump(exclude_unset=True)
    if "currency" in update_data and update_data["currency"]:
        update_data["currency"] = update_data["currency"].upper()

    needs_recalculation = False
    for key, value in update_data.items():
        if value is None or getattr(goal, key) == value:
            continue
        setattr(goal, key, value)
        if key in ("target_amount", "currency", "deadline"):
            needs_recalculation = True

    db.commit()
    db.refresh(goal)
    return goal, needs_recalculation

def _close_goal(db: Session, goal_id: str, status: GoalStatus) -> Goal:
    goal = get_goal(db, goal_id)
    if goal.status != GoalStatus.ACTIVE.value:
        raise HTTPException(status_code=400, detail=f"Goal is already {goal.status}")

    released = release_goal_allocations(db, goal.id, utcnow())
    goal.status = status.value
    db.commit()
    db.refresh(goal)
    logger.info("Goal %s marked %s, released %d allocation(s)", goal.id, status.value, released)
    return goal

def cancel_goal(db: Session, goal_id: str) -> Goal:
    """Cancel a goal and free the assets earmarked for it"""
    return _close_goal(db, goal_id, GoalStatus.CANCELLED)

def finish_goal(db: Session, goal_id: str) -> Goal:
    """Mark a goal as reached; its allocations are released like a cancellation"""
    return _close_goal(db, goal_id, GoalStatus.FINISHED)
