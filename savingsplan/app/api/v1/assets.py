from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import datetime

from savingsplan.app.database import get_db_session
from savingsplan.app.schemas.assets import (
    AssetCreate, AssetResponse, AssetTransactionCreate, AssetTransactionResponse, RecordedTransactionResponse,
    AllocationUpdate, AllocationTargetResponse, AllocationHistoryEntryResponse, AssetAllocationSummary
)
from savingsplan.app.services.allocation_service import (
    set_allocation, remove_allocation, get_asset_allocation_summary, get_allocation_history
)
from savingsplan.app.services.recalculation_service import (
    ASSET_CHANGED, ALLOCATION_CHANGED, RecalculationScheduler, get_recalculation_scheduler
)
from savingsplan.app.services.transaction_service import (
    create_asset, get_asset, list_assets, list_transactions, record_transaction
)
from savingsplan.app.utils.dates import month_label

router = APIRouter()

@router.post("/", response_model=AssetResponse)
async def create_new_asset(asset_data: AssetCreate, db: Session = Depends(get_db_session)):
    """Create an asset (a wallet or account) holding a single currency."""
    return create_asset(db, asset_data)

@router.get("/", response_model=List[AssetResponse])
async def get_assets(db: Session = Depends(get_db_session)):
    return list_assets(db)

@router.get("/{asset_id}", response_model=AssetResponse)
async def get_single_asset(asset_id: str, db: Session = Depends(get_db_session)):
    return get_asset(db, asset_id)

@router.post("/{asset_id}/transactions", response_model=RecordedTransactionResponse)
async def create_asset_transaction(
    asset_id: str,
    transaction_data: AssetTransactionCreate,
    db: Session = Depends(get_db_session),
    scheduler: RecalculationScheduler = Depends(get_recalculation_scheduler)
):
    """
    Record a deposit (positive) or withdrawal (negative) on an asset.

    - Deposits into an asset fully dedicated to one goal raise that goal's allocation
    - Triggers a recalculation of the current month
    """
    transaction, routed_to = record_transaction(
        db, asset_id, transaction_data.amount, transaction_data.timestamp, transaction_data.note
    )
    scheduler.notify(ASSET_CHANGED, month_label())
    return {"transaction": transaction, "auto_routed_goal_id": routed_to}

@router.get("/{asset_id}/transactions", response_model=List[AssetTransactionResponse])
async def get_asset_transactions(
    asset_id: str,
    since: Optional[datetime] = Query(None, description="Only transactions at or after this instant"),
    db: Session = Depends(get_db_session)
):
    return list_transactions(db, asset_id, since)

@router.put("/{asset_id}/allocations/{goal_id}", response_model=AllocationTargetResponse)
async def update_allocation(
    asset_id: str,
    goal_id: str,
    allocation: AllocationUpdate,
    db: Session = Depends(get_db_session),
    scheduler: RecalculationScheduler = Depends(get_recalculation_scheduler)
):
    """
    Set how much of the asset is earmarked for a goal.

    - Amount is in the asset's currency
    - Appends to the allocation history
    """
    target = set_allocation(db, asset_id, goal_id, allocation.amount, allocation.timestamp)
    scheduler.notify(ALLOCATION_CHANGED, month_label())
    return target

@router.delete("/{asset_id}/allocations/{goal_id}")
async def delete_allocation(
    asset_id: str,
    goal_id: str,
    db: Session = Depends(get_db_session),
    scheduler: RecalculationScheduler = Depends(get_recalculation_scheduler)
):
    remove_allocation(db, asset_id, goal_id)
    scheduler.notify(ALLOCATION_CHANGED, month_label())
    return {"status": "success", "message": "Allocation removed"}

@router.get("/{asset_id}/allocations", response_model=AssetAllocationSummary)
async def get_allocations(asset_id: str, db: Session = Depends(get_db_session)):
    """
    Allocation summary for an asset.

    - Balance, total allocated and unallocated amount
    - Shortfall when targets add up to more than the balance
    """
    return get_asset_allocation_summary(db, asset_id)

@router.get("/{asset_id}/allocation-history", response_model=List[AllocationHistoryEntryResponse])
async def get_history_entries(
    asset_id: str,
    goal_id: Optional[str] = Query(None, description="Filter by goal"),
    db: Session = Depends(get_db_session)
):
    return get_allocation_history(db, asset_id, goal_id)
