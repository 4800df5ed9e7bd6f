from pydantic import BaseModel
from typing import Optional, List, Dict
from datetime import datetime

from savingsplan.app.models.models import ExecutionStatus, FlexState, ContributionSource
from savingsplan.app.schemas.planning import PlanResponse


class ExecutionRecordResponse(BaseModel):
    id: str
    month_label: str
    status: ExecutionStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    undo_deadline: Optional[datetime] = None
    adjustment_factor: float
    strategy: str

    class Config:
        from_attributes = True

class GoalProgress(BaseModel):
    goal_id: str
    goal_name: str
    currency: str
    planned_amount: float
    contributed: float
    percentage: float
    fulfilled: bool

class AssetShortfall(BaseModel):
    asset_id: str
    currency: str
    balance: float
    total_targets: float
    shortfall: float

class ContributionEvent(BaseModel):
    timestamp: datetime
    source: ContributionSource
    asset_id: str
    asset_currency: str
    goal_id: str
    goal_currency: str
    asset_amount: float
    amount_in_goal_currency: float
    exchange_rate_used: float

class ProgressResponse(BaseModel):
    month_label: str
    status: ExecutionStatus
    goals: List[GoalProgress]
    total_planned: float
    total_contributed: float
    shortfalls: List[AssetShortfall] = []
    contributions: List[ContributionEvent] = []
    rates_stale: bool = False
    frozen: bool = False

class CompletedGoalSnapshot(BaseModel):
    goal_id: str
    goal_name: str
    currency: str
    planned_amount: float
    actual_amount: float
    percentage: float
    fulfilled: bool
    flex_state: FlexState

class CompletedExecutionResponse(BaseModel):
    id: str
    record_id: str
    month_label: str
    completed_at: datetime
    exchange_rates: Dict[str, float]
    goal_snapshots: List[CompletedGoalSnapshot]
    contributions: List[ContributionEvent]
    shortfalls: List[AssetShortfall] = []

    class Config:
        from_attributes = True

class RecalculationResponse(BaseModel):
    plan: PlanResponse
    progress: Optional[ProgressResponse] = None
    unfulfilled_goal_ids: List[str] = []
