from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Any, Dict, List

from savingsplan.app.database import get_db_session
from savingsplan.app.schemas.executions import (
    CompletedExecutionResponse, ExecutionRecordResponse, ProgressResponse, RecalculationResponse
)
from savingsplan.app.services.exchange_rate_service import ExchangeRateService, get_rate_service
from savingsplan.app.services.execution_service import (
    complete, get_history, get_progress, recalculate, run_automation, start_executing, undo
)

router = APIRouter()

@router.get("/history", response_model=List[CompletedExecutionResponse])
async def get_completed_history(
    page_size: int = Query(20, ge=1, le=100, description="Number of months to return"),
    offset: int = Query(0, ge=0, description="Number of months to skip"),
    db: Session = Depends(get_db_session)
):
    """
    Completed months, most recent first.

    - Planned vs actual per goal
    - Exchange rates frozen at completion
    - Every contribution event that made up the actuals
    """
    return get_history(db, page_size, offset)

@router.post("/automation/run", response_model=List[Dict[str, Any]])
async def run_scheduled_transitions(
    db: Session = Depends(get_db_session),
    rate_service: ExchangeRateService = Depends(get_rate_service)
):
    """
    Apply scheduled transitions as of now.

    - Starts the current month on its first day
    - Completes executing months on their last day or once they are over
    """
    return run_automation(db, rate_service)

@router.post("/{month_label}/start", response_model=ExecutionRecordResponse)
async def start_month(
    month_label: str,
    db: Session = Depends(get_db_session),
    rate_service: ExchangeRateService = Depends(get_rate_service)
):
    """
    Start tracking a month.

    - Captures the current plan into a snapshot
    - Contributions count from this moment on
    - Can be undone within the grace period
    """
    return start_executing(db, month_label, rate_service)

@router.post("/{month_label}/complete", response_model=ExecutionRecordResponse)
async def complete_month(
    month_label: str,
    db: Session = Depends(get_db_session),
    rate_service: ExchangeRateService = Depends(get_rate_service)
):
    """
    Finish a month.

    - Freezes actual contributions and the exchange rates used
    - Can be undone within the grace period
    """
    return complete(db, month_label, rate_service)

@router.post("/{month_label}/undo", response_model=ExecutionRecordResponse)
async def undo_month(month_label: str, db: Session = Depends(get_db_session)):
    """Step a month back one state while its undo window is open."""
    return undo(db, month_label)

@router.post("/{month_label}/recalculate", response_model=RecalculationResponse)
async def recalculate_month(
    month_label: str,
    db: Session = Depends(get_db_session),
    rate_service: ExchangeRateService = Depends(get_rate_service)
):
    return recalculate(db, month_label, rate_service)

@router.get("/{month_label}/progress", response_model=ProgressResponse)
async def get_month_progress(
    month_label: str,
    db: Session = Depends(get_db_session),
    rate_service: ExchangeRateService = Depends(get_rate_service)
):
    """
    Derived progress for a month.

    - Live exchange rates while executing, frozen rates once closed
    - Shortfall for assets whose allocations exceed their balance
    """
    return get_progress(db, month_label, rate_service)
