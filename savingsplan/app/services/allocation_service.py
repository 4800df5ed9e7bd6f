from sqlalchemy.orm import Session
from fastapi import HTTPException
from typing import List, Optional
from datetime import datetime
import logging

from savingsplan.app.models.models import AllocationTarget, AllocationHistoryEntry, Goal, GoalStatus, utcnow
from savingsplan.app.services.allocation_history_service import append_entry
from savingsplan.app.services.derivation_service import allocation_shortfall
from savingsplan.app.services.transaction_service import get_asset, get_balance
from savingsplan.app.utils.dates import to_naive_utc

logger = logging.getLogger(__name__)


def set_allocation(
    db: Session,
    asset_id: str,
    goal_id: str,
    amount: float,
    timestamp: Optional[datetime] = None
) -> Optional[AllocationTarget]:
    """
    Set how much of an asset is earmarked for a goal.

    Every change is also appended to the allocation history, which is what
    monthly progress is derived from. A target of 0 keeps the asset linked to
    the goal, so an empty asset dedicated to one goal still auto-routes its
    first deposit.
    """
    asset = get_asset(db, asset_id)
    goal = db.query(Goal).filter(Goal.id == goal_id).first()
    if not goal:
        raise HTTPException(status_code=404, detail=f"Goal with id {goal_id} not found")
    if amount < 0:
        raise HTTPException(status_code=400, detail="Allocation amount cannot be negative")
    if amount > 0 and goal.status != GoalStatus.ACTIVE.value:
        raise HTTPException(status_code=400, detail=f"Cannot allocate to a {goal.status} goal")

    timestamp = to_naive_utc(timestamp) if timestamp else utcnow()
    target = db.query(AllocationTarget).filter(
        AllocationTarget.asset_id == asset.id,
        AllocationTarget.goal_id == goal.id
    ).first()

    append_entry(db, asset.id, goal.id, amount, timestamp, commit=False)

    if target:
        target.amount = amount
        target.last_modified = utcnow()
    else:
        target = AllocationTarget(asset_id=asset.id, goal_id=goal.id, amount=amount)
        db.add(target)

    db.commit()
    db.refresh(target)
    logger.info("Allocation %s/%s set to %s", asset.id, goal.id, amount)
    return target

def remove_allocation(db: Session, asset_id: str, goal_id: str, timestamp: Optional[datetime] = None):
    """Unlink an asset from a goal, recording a 0 target in the history"""
    target = db.query(AllocationTarget).filter(
        AllocationTarget.asset_id == asset_id,
        AllocationTarget.goal_id == goal_id
    ).first()
    if not target:
        raise HTTPException(status_code=404, detail=f"Asset {asset_id} has no allocation to goal {goal_id}")

    append_entry(db, asset_id, goal_id, 0.0, to_naive_utc(timestamp) if timestamp else utcnow(), commit=False)
    db.delete(target)
    db.commit()
    logger.info("Allocation %s/%s removed", asset_id, goal_id)

def release_goal_allocations(db: Session, goal_id: str, timestamp: Optional[datetime] = None) -> int:
    """Zero every allocation pointing at a goal. Caller commits."""
    timestamp = to_naive_utc(timestamp) if timestamp else utcnow()
    targets = db.query(AllocationTarget).filter(AllocationTarget.goal_id == goal_id).all()
    for target in targets:
        append_entry(db, target.asset_id, goal_id, 0.0, timestamp, commit=False)
        db.delete(target)
    return len(targets)

def get_asset_allocations(db: Session, asset_id: str) -> List[AllocationTarget]:
    get_asset(db, asset_id)
    return db.query(AllocationTarget).filter(AllocationTarget.asset_id == asset_id).all()

def get_asset_allocation_summary(db: Session, asset_id: str):
    asset = get_asset(db, asset_id)
    allocations = db.query(AllocationTarget).filter(AllocationTarget.asset_id == asset.id).all()
    balance = get_balance(db, asset.id)
    total_allocated = sum(target.amount for target in allocations)
    return {
        "asset_id": asset.id,
        "currency": asset.currency,
        "balance": balance,
        "total_allocated": total_allocated,
        "unallocated": balance - total_allocated,
        "shortfall": allocation_shortfall(balance, {t.goal_id: t.amount for t in allocations}),
        "allocations": allocations
    }

def get_allocation_history(db: Session, asset_id: str, goal_id: Optional[str] = None) -> List[AllocationHistoryEntry]:
    get_asset(db, asset_id)
    query = db.query(AllocationHistoryEntry).filter(AllocationHistoryEntry.asset_id == asset_id)
    if goal_id:
        query = query.filter(AllocationHistoryEntry.goal_id == goal_id)
    return query.order_by(AllocationHistoryEntry.timestamp, AllocationHistoryEntry.sequence).all()
