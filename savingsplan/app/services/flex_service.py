from sqlalchemy.orm import Session
from fastapi import HTTPException
from typing import Dict, Iterable, List, Optional, Tuple
from datetime import datetime
import logging

from savingsplan.app.exceptions import InvalidTransition
from savingsplan.app.models.models import (
    ExecutionRecord, ExecutionStatus, FlexPreference, FlexState, Goal, GoalStatus,
    RedistributionStrategy, RequirementStatus, utcnow
)
from savingsplan.app.schemas.planning import (
    AdjustedRequirement, FlexAdjustmentRequest, FlexPreferenceUpdate, FlexPreviewResponse,
    MonthlyRequirement, QuickAction
)
from savingsplan.app.services.exchange_rate_service import ExchangeRateService
from savingsplan.app.services.requirement_service import build_requirements

logger = logging.getLogger(__name__)

MIN_FACTOR = 0.0
MAX_FACTOR = 2.0

SEVERITY_ORDER = {
    RequirementStatus.COMPLETED: 0,
    RequirementStatus.ON_TRACK: 1,
    RequirementStatus.ATTENTION: 2,
    RequirementStatus.CRITICAL: 3,
}


def clamp_factor(factor: float) -> float:
    return min(MAX_FACTOR, max(MIN_FACTOR, factor))


def _priority_order(
    requirements: List[MonthlyRequirement],
    originals: Dict[str, float],
    strategy: RedistributionStrategy
) -> List[MonthlyRequirement]:
    """Flexible goals in the order they get funded; ties by name then id"""
    if strategy == RedistributionStrategy.URGENT_FIRST:
        key = lambda r: (r.deadline, r.goal_name, r.goal_id)
    elif strategy == RedistributionStrategy.LARGEST_FIRST:
        key = lambda r: (-originals[r.goal_id], r.goal_name, r.goal_id)
    elif strategy == RedistributionStrategy.MINIMIZE_RISK:
        key = lambda r: (SEVERITY_ORDER[RequirementStatus(r.status)], r.goal_name, r.goal_id)
    else:
        key = lambda r: (r.goal_name, r.goal_id)
    return sorted(requirements, key=key)


def _fill_in_order(ordered: List[MonthlyRequirement], originals: Dict[str, float], budget: float) -> Dict[str, float]:
    """Fund each goal to 100% in order until the budget runs out"""
    adjusted = {}
    left = budget
    for requirement in ordered:
        amount = min(originals[requirement.goal_id], max(left, 0.0))
        adjusted[requirement.goal_id] = amount
        left -= amount
    return adjusted


def _distribute_surplus(
    ordered: List[MonthlyRequirement],
    originals: Dict[str, float],
    surplus: float
) -> Dict[str, float]:
    """
    Top up past 100%. The least-funded goal (by progress toward its target)
    absorbs surplus first, up to what it still needs beyond this month's
    amount; anything left is spread in proportion to the original amounts.
    """
    adjusted = dict(originals)
    rank = {requirement.goal_id: index for index, requirement in enumerate(ordered)}
    by_need = sorted(ordered, key=lambda r: (r.progress, rank[r.goal_id]))

    left = surplus
    for requirement in by_need:
        if left <= 0:
            break
        headroom = max(0.0, requirement.remaining_amount - originals[requirement.goal_id])
        extra = min(headroom, left)
        adjusted[requirement.goal_id] += extra
        left -= extra

    total_original = sum(originals.values())
    if left > 0 and total_original > 0:
        for goal_id, original in originals.items():
            adjusted[goal_id] += left * original / total_original
    return adjusted


def apply_flex_adjustment(
    requirements: List[MonthlyRequirement],
    factor: float,
    protected_ids: Iterable[str] = (),
    skipped_ids: Iterable[str] = (),
    strategy: RedistributionStrategy = RedistributionStrategy.BALANCED,
    custom_amounts: Optional[Dict[str, float]] = None
) -> List[AdjustedRequirement]:
    """
    Redistribute a global adjustment factor across goals.

    Skipped goals drop to 0 and protected goals keep their amount. The
    flexible goals share a budget of `factor * sum(flexible originals)`:
    `balanced` scales each one by the factor, the other strategies fill goals
    to 100% in priority order so any cut lands on the last goals. Above 100%
    the surplus goes to the goals that are furthest behind first.
    """
    factor = clamp_factor(factor)
    protected_ids = set(protected_ids)
    skipped_ids = set(skipped_ids)
    custom_amounts = custom_amounts or {}
    strategy = RedistributionStrategy(strategy)

    originals = {
        r.goal_id: max(0.0, custom_amounts.get(r.goal_id, r.required_monthly)) for r in requirements
    }
    states = {}
    for r in requirements:
        if r.goal_id in skipped_ids:
            states[r.goal_id] = FlexState.SKIPPED
        elif r.goal_id in protected_ids:
            states[r.goal_id] = FlexState.PROTECTED
        else:
            states[r.goal_id] = FlexState.FLEXIBLE

    flexible = [r for r in requirements if states[r.goal_id] == FlexState.FLEXIBLE]
    flexible_originals = {r.goal_id: originals[r.goal_id] for r in flexible}
    total_flexible = sum(flexible_originals.values())
    budget = factor * total_flexible

    if strategy == RedistributionStrategy.BALANCED or total_flexible <= 0:
        flexible_adjusted = {goal_id: amount * factor for goal_id, amount in flexible_originals.items()}
    else:
        ordered = _priority_order(flexible, flexible_originals, strategy)
        if factor <= 1:
            flexible_adjusted = _fill_in_order(ordered, flexible_originals, budget)
        else:
            flexible_adjusted = _distribute_surplus(ordered, flexible_originals, budget - total_flexible)

    results = []
    for r in requirements:
        state = states[r.goal_id]
        original = originals[r.goal_id]
        if state == FlexState.SKIPPED:
            adjusted = 0.0
        elif state == FlexState.PROTECTED:
            adjusted = original
        else:
            adjusted = max(0.0, flexible_adjusted[r.goal_id])
        results.append(AdjustedRequirement(
            requirement=r,
            flex_state=state,
            original_amount=original,
            adjusted_amount=adjusted,
            delta=adjusted - original
        ))
    return results


# --- Stored preferences ---

def get_flex_preferences(db: Session) -> Dict[str, FlexPreference]:
    return {preference.goal_id: preference for preference in db.query(FlexPreference).all()}


def preference_sets(preferences: Dict[str, FlexPreference]) -> Tuple[set, set, Dict[str, float]]:
    protected = {goal_id for goal_id, p in preferences.items() if p.flex_state == FlexState.PROTECTED.value}
    skipped = {goal_id for goal_id, p in preferences.items() if p.flex_state == FlexState.SKIPPED.value}
    custom = {goal_id: p.custom_amount for goal_id, p in preferences.items() if p.custom_amount is not None}
    return protected, skipped, custom


def adjusted_plan(
    db: Session,
    rate_service: ExchangeRateService,
    factor: float,
    strategy: RedistributionStrategy,
    now: Optional[datetime] = None,
    protected_ids: Optional[Iterable[str]] = None,
    skipped_ids: Optional[Iterable[str]] = None
) -> Tuple[List[AdjustedRequirement], bool]:
    """Requirements for active goals with the flex adjustment applied. Returns (plan, rates_stale)."""
    requirements, stale = build_requirements(db, rate_service, now)
    stored_protected, stored_skipped, custom = preference_sets(get_flex_preferences(db))
    return apply_flex_adjustment(
        requirements,
        factor,
        stored_protected if protected_ids is None else protected_ids,
        stored_skipped if skipped_ids is None else skipped_ids,
        strategy,
        custom
    ), stale


def preview_flex_adjustment(
    db: Session,
    rate_service: ExchangeRateService,
    request: FlexAdjustmentRequest,
    now: Optional[datetime] = None
) -> FlexPreviewResponse:
    """What-if view of an adjustment. Nothing is written."""
    adjusted, stale = adjusted_plan(
        db, rate_service, request.factor, request.strategy, now,
        request.protected_goal_ids, request.skipped_goal_ids
    )
    return FlexPreviewResponse(
        factor=clamp_factor(request.factor),
        strategy=request.strategy,
        total_original=sum(a.original_amount for a in adjusted),
        total_adjusted=sum(a.adjusted_amount for a in adjusted),
        adjusted_requirements=adjusted,
        rates_stale=stale
    )


def ensure_draft(record: Optional[ExecutionRecord]):
    if record is not None and record.status != ExecutionStatus.DRAFT.value:
        raise InvalidTransition(
            f"Month {record.month_label} is {record.status}; the plan can only be changed while it is a draft"
        )


def _preference_for(db: Session, goal_id: str) -> FlexPreference:
    preference = db.query(FlexPreference).filter(FlexPreference.goal_id == goal_id).first()
    if preference is None:
        preference = FlexPreference(goal_id=goal_id, flex_state=FlexState.FLEXIBLE.value)
        db.add(preference)
    return preference


def _set_states(db: Session, protected_ids: Optional[List[str]], skipped_ids: Optional[List[str]]):
    if protected_ids is None and skipped_ids is None:
        return
    protected_ids = set(protected_ids or [])
    skipped_ids = set(skipped_ids or [])
    goal_ids = {goal.id for goal in db.query(Goal).filter(Goal.status == GoalStatus.ACTIVE.value).all()}
    goal_ids |= set(get_flex_preferences(db))
    for goal_id in goal_ids:
        if goal_id in skipped_ids:
            state = FlexState.SKIPPED
        elif goal_id in protected_ids:
            state = FlexState.PROTECTED
        else:
            state = FlexState.FLEXIBLE
        _preference_for(db, goal_id).flex_state = state.value


def commit_flex_adjustment(db: Session, record: ExecutionRecord, request: FlexAdjustmentRequest) -> ExecutionRecord:
    """Persist an adjustment onto a draft month and the goals' flex states"""
    ensure_draft(record)
    _set_states(db, request.protected_goal_ids, request.skipped_goal_ids)
    record.adjustment_factor = clamp_factor(request.factor)
    record.strategy = RedistributionStrategy(request.strategy).value
    db.commit()
    db.refresh(record)
    logger.info("Committed flex factor %s (%s) for %s", record.adjustment_factor, record.strategy, record.month_label)
    return record


def set_flex_preference(
    db: Session,
    goal_id: str,
    update: FlexPreferenceUpdate,
    record: Optional[ExecutionRecord] = None
) -> FlexPreference:
    ensure_draft(record)
    goal = db.query(Goal).filter(Goal.id == goal_id).first()
    if not goal:
        raise HTTPException(status_code=404, detail=f"Goal with id {goal_id} not found")

    preference = _preference_for(db, goal.id)
    if update.flex_state is not None:
        preference.flex_state = update.flex_state.value
    if update.clear_custom_amount:
        preference.custom_amount = None
    elif update.custom_amount is not None:
        preference.custom_amount = update.custom_amount
    preference.updated_at = utcnow()

    db.commit()
    db.refresh(preference)
    return preference


def apply_quick_action(db: Session, record: ExecutionRecord, action: QuickAction) -> ExecutionRecord:
    """
    One-tap adjustments:
    - skip_month: every goal that is not protected is skipped
    - pay_half / pay_exact: factor 0.5 / 1.0
    - reset: clear custom amounts and skips, keep protections, factor 1.0
    """
    ensure_draft(record)
    action = QuickAction(action)

    if action == QuickAction.SKIP_MONTH:
        for goal in db.query(Goal).filter(Goal.status == GoalStatus.ACTIVE.value).all():
            preference = _preference_for(db, goal.id)
            if preference.flex_state != FlexState.PROTECTED.value:
                preference.flex_state = FlexState.SKIPPED.value
    elif action == QuickAction.PAY_HALF:
        record.adjustment_factor = 0.5
    elif action == QuickAction.PAY_EXACT:
        record.adjustment_factor = 1.0
    elif action == QuickAction.RESET:
        for preference in get_flex_preferences(db).values():
            preference.custom_amount = None
            if preference.flex_state == FlexState.SKIPPED.value:
                preference.flex_state = FlexState.FLEXIBLE.value
        record.adjustment_factor = 1.0
        record.strategy = RedistributionStrategy.BALANCED.value

    db.commit()
    db.refresh(record)
    logger.info("Applied quick action %s to %s", action.value, record.month_label)
    return record
