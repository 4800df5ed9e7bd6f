from datetime import date, datetime
from math import ceil
from typing import List, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy.orm import Session

from savingsplan.app.config import get_settings
from savingsplan.app.models.models import Goal, GoalStatus, RequirementStatus, utcnow
from savingsplan.app.schemas.planning import MonthlyRequirement, RequirementThresholds
from savingsplan.app.services.derivation_service import current_goal_totals
from savingsplan.app.services.exchange_rate_service import ExchangeRateService
from savingsplan.app.utils.dates import days_until

EPSILON = 1e-9


def default_thresholds() -> RequirementThresholds:
    settings = get_settings()
    return RequirementThresholds(
        attention=settings.attention_threshold,
        critical=settings.critical_threshold,
        days_per_month=settings.days_per_month
    )


def months_remaining(deadline: date, now: datetime, days_per_month: float) -> int:
    """Whole months left until the deadline, partial months rounded up, never below 1"""
    return max(1, ceil(days_until(deadline, now) / days_per_month))


def calculate_requirement(
    goal_id: str,
    goal_name: str,
    currency: str,
    target_amount: float,
    current_total: float,
    deadline: date,
    now: datetime,
    thresholds: Optional[RequirementThresholds] = None
) -> MonthlyRequirement:
    """
    Project the monthly contribution a goal needs to hit its deadline.

    Pure function of its inputs: recomputing it never accumulates drift.
    A zero target is immediately completed, and a passed deadline with money
    still missing is critical no matter how small the remainder is.
    """
    thresholds = thresholds or default_thresholds()

    remaining = max(0.0, target_amount - current_total)
    if remaining <= EPSILON:
        remaining = 0.0
    months = months_remaining(deadline, now, thresholds.days_per_month)
    required_monthly = remaining / months if months > 0 else remaining
    progress = min(max(current_total / target_amount, 0.0), 1.0) if target_amount > 0 else 1.0

    if remaining == 0:
        status = RequirementStatus.COMPLETED
    elif days_until(deadline, now) < 0:
        status = RequirementStatus.CRITICAL
    elif required_monthly > thresholds.critical:
        status = RequirementStatus.CRITICAL
    elif required_monthly > thresholds.attention:
        status = RequirementStatus.ATTENTION
    else:
        status = RequirementStatus.ON_TRACK

    return MonthlyRequirement(
        goal_id=goal_id,
        goal_name=goal_name,
        currency=currency,
        target_amount=target_amount,
        current_total=current_total,
        remaining_amount=remaining,
        months_remaining=months,
        required_monthly=required_monthly,
        progress=progress,
        deadline=deadline,
        status=status
    )


def get_active_goals(db: Session) -> List[Goal]:
    return db.query(Goal).filter(Goal.status == GoalStatus.ACTIVE.value).order_by(Goal.created_at).all()


def build_requirements(
    db: Session,
    rate_service: ExchangeRateService,
    now: Optional[datetime] = None,
    thresholds: Optional[RequirementThresholds] = None
) -> Tuple[List[MonthlyRequirement], bool]:
    """
    Requirements for every active goal, using the real funded value of its
    allocations at current rates. Returns (requirements, rates_stale).
    """
    now = now or utcnow()
    goals = get_active_goals(db)
    totals, stale = current_goal_totals(db, rate_service, [goal.id for goal in goals], now)

    requirements = [
        calculate_requirement(
            goal.id,
            goal.name,
            goal.currency,
            goal.target_amount,
            totals.get(goal.id, 0.0),
            goal.deadline,
            now,
            thresholds
        )
        for goal in goals
    ]
    return requirements, stale


def get_goal_requirement(
    db: Session,
    goal_id: str,
    rate_service: ExchangeRateService,
    now: Optional[datetime] = None
) -> MonthlyRequirement:
    goal = db.query(Goal).filter(Goal.id == goal_id).first()
    if not goal:
        raise HTTPException(status_code=404, detail=f"Goal with id {goal_id} not found")

    now = now or utcnow()
    totals, _ = current_goal_totals(db, rate_service, [goal.id], now)
    return calculate_requirement(
        goal.id, goal.name, goal.currency, goal.target_amount,
        totals.get(goal.id, 0.0), goal.deadline, now
    )
