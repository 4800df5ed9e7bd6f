from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime, date
from enum import Enum

from savingsplan.app.models.models import FlexState, RequirementStatus, RedistributionStrategy, ExecutionStatus


class MonthlyRequirement(BaseModel):
    """How much a goal needs this month. Transient, recomputed on demand."""
    goal_id: str
    goal_name: str
    currency: str
    target_amount: float
    current_total: float
    remaining_amount: float
    months_remaining: int
    required_monthly: float
    progress: float
    deadline: date
    status: RequirementStatus

class AdjustedRequirement(BaseModel):
    requirement: MonthlyRequirement
    flex_state: FlexState
    original_amount: float
    adjusted_amount: float
    delta: float

class RequirementThresholds(BaseModel):
    attention: float
    critical: float
    days_per_month: float = 30.436875

class FlexAdjustmentRequest(BaseModel):
    factor: float = Field(1.0, ge=0, le=2)
    strategy: RedistributionStrategy = RedistributionStrategy.BALANCED
    protected_goal_ids: Optional[List[str]] = None  # None keeps stored preferences
    skipped_goal_ids: Optional[List[str]] = None
    month_label: Optional[str] = None

class FlexPreviewResponse(BaseModel):
    factor: float
    strategy: RedistributionStrategy
    total_original: float
    total_adjusted: float
    adjusted_requirements: List[AdjustedRequirement]
    rates_stale: bool = False

class FlexPreferenceUpdate(BaseModel):
    flex_state: Optional[FlexState] = None
    custom_amount: Optional[float] = Field(None, ge=0)
    clear_custom_amount: bool = False

class FlexPreferenceResponse(BaseModel):
    goal_id: str
    flex_state: FlexState
    custom_amount: Optional[float] = None

    class Config:
        from_attributes = True

class QuickAction(str, Enum):
    SKIP_MONTH = "skip_month"
    PAY_HALF = "pay_half"
    PAY_EXACT = "pay_exact"
    RESET = "reset"

class PlanResponse(BaseModel):
    record_id: str
    month_label: str
    status: ExecutionStatus
    adjustment_factor: float
    strategy: RedistributionStrategy
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    undo_deadline: Optional[datetime] = None
    requirements: List[AdjustedRequirement]
    total_planned: float
    rates_stale: bool = False
