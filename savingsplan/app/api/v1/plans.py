from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from savingsplan.app.database import get_db_session
from savingsplan.app.schemas.planning import (
    FlexAdjustmentRequest, FlexPreviewResponse, FlexPreferenceUpdate, FlexPreferenceResponse,
    PlanResponse, QuickAction
)
from savingsplan.app.services.exchange_rate_service import ExchangeRateService, get_rate_service
from savingsplan.app.services.execution_service import find_open_record, get_current_plan, get_or_create_record
from savingsplan.app.services.flex_service import (
    apply_quick_action, commit_flex_adjustment, preview_flex_adjustment, set_flex_preference
)
from savingsplan.app.utils.dates import month_label as current_month_label, validate_month_label

router = APIRouter()

@router.post("/flex/preview", response_model=FlexPreviewResponse)
async def preview_adjustment(
    request: FlexAdjustmentRequest,
    db: Session = Depends(get_db_session),
    rate_service: ExchangeRateService = Depends(get_rate_service)
):
    """
    Preview a flex adjustment without saving it.

    - factor between 0 and 2 (0% to 200%)
    - Omitted protected/skipped lists fall back to the stored preferences
    """
    return preview_flex_adjustment(db, rate_service, request)

@router.put("/preferences/{goal_id}", response_model=FlexPreferenceResponse)
async def update_flex_preference(
    goal_id: str,
    update: FlexPreferenceUpdate,
    db: Session = Depends(get_db_session)
):
    """
    Set a goal's flex state or custom monthly amount.

    - Only allowed while the current month is still a draft
    """
    return set_flex_preference(db, goal_id, update, find_open_record(db, current_month_label()))

@router.get("/{month_label}", response_model=PlanResponse)
async def get_plan(
    month_label: str,
    db: Session = Depends(get_db_session),
    rate_service: ExchangeRateService = Depends(get_rate_service)
):
    """
    Get the plan for a month (YYYY-MM, UTC).

    - Creates a draft the first time a month is viewed
    - Executing and closed months show the amounts captured at start
    """
    return get_current_plan(db, month_label, rate_service)

@router.post("/{month_label}/flex", response_model=PlanResponse)
async def commit_adjustment(
    month_label: str,
    request: FlexAdjustmentRequest,
    db: Session = Depends(get_db_session),
    rate_service: ExchangeRateService = Depends(get_rate_service)
):
    """Save a flex adjustment onto a draft month."""
    validate_month_label(month_label)
    record = get_or_create_record(db, month_label)
    commit_flex_adjustment(db, record, request)
    return get_current_plan(db, month_label, rate_service)

@router.post("/{month_label}/quick-actions/{action}", response_model=PlanResponse)
async def run_quick_action(
    month_label: str,
    action: QuickAction,
    db: Session = Depends(get_db_session),
    rate_service: ExchangeRateService = Depends(get_rate_service)
):
    """
    One-tap adjustments for a draft month.

    - skip_month, pay_half, pay_exact, reset
    """
    record = get_or_create_record(db, month_label)
    apply_quick_action(db, record, action)
    return get_current_plan(db, month_label, rate_service)
