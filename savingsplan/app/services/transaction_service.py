from sqlalchemy.orm import Session
from fastapi import HTTPException
from typing import List, Optional, Tuple
from datetime import datetime
import logging

from savingsplan.app.models.models import Asset, AssetTransaction, AllocationTarget, utcnow
from savingsplan.app.schemas.assets import AssetCreate
from savingsplan.app.services.allocation_history_service import append_entry
from savingsplan.app.utils.dates import to_naive_utc

logger = logging.getLogger(__name__)

FULLY_ALLOCATED_TOLERANCE = 1e-6


def create_asset(db: Session, asset_data: AssetCreate) -> Asset:
    asset = Asset(name=asset_data.name, currency=asset_data.currency.upper())
    db.add(asset)
    db.commit()
    db.refresh(asset)
    return asset

def get_asset(db: Session, asset_id: str) -> Asset:
    asset = db.query(Asset).filter(Asset.id == asset_id).first()
    if not asset:
        raise HTTPException(status_code=404, detail=f"Asset with id {asset_id} not found")
    return asset

def list_assets(db: Session) -> List[Asset]:
    return db.query(Asset).order_by(Asset.created_at).all()

def get_balance(db: Session, asset_id: str, as_of: Optional[datetime] = None) -> float:
    """Asset balance as the sum of its transactions up to `as_of`"""
    query = db.query(AssetTransaction).filter(AssetTransaction.asset_id == asset_id)
    if as_of is not None:
        query = query.filter(AssetTransaction.timestamp <= to_naive_utc(as_of))
    return sum(tx.amount for tx in query.all())

def list_transactions(db: Session, asset_id: str, since: Optional[datetime] = None) -> List[AssetTransaction]:
    get_asset(db, asset_id)
    query = db.query(AssetTransaction).filter(AssetTransaction.asset_id == asset_id)
    if since is not None:
        query = query.filter(AssetTransaction.timestamp >= to_naive_utc(since))
    return query.order_by(AssetTransaction.timestamp).all()

def _sole_full_target(db: Session, asset_id: str, balance_before: float) -> Optional[AllocationTarget]:
    """The asset's only allocation target if it covers the whole balance, else None"""
    targets = db.query(AllocationTarget).filter(AllocationTarget.asset_id == asset_id).all()
    if len(targets) != 1:
        return None
    target = targets[0]
    unallocated = balance_before - target.amount
    if abs(unallocated) > FULLY_ALLOCATED_TOLERANCE * max(1.0, abs(balance_before)):
        return None
    return target

def record_transaction(
    db: Session,
    asset_id: str,
    amount: float,
    timestamp: Optional[datetime] = None,
    note: Optional[str] = None
) -> Tuple[AssetTransaction, Optional[str]]:
    """
    Record a balance change on an asset.

    A deposit into an asset that is fully allocated to a single goal raises
    that goal's target by the deposit, so the new money counts toward the goal
    without a manual allocation. Returns (transaction, auto_routed_goal_id).
    """
    asset = get_asset(db, asset_id)
    timestamp = to_naive_utc(timestamp) if timestamp else utcnow()

    routed_to = None
    target = None
    if amount > 0:
        target = _sole_full_target(db, asset.id, get_balance(db, asset.id, timestamp))

    transaction = AssetTransaction(
        asset_id=asset.id,
        amount=amount,
        timestamp=timestamp,
        note=note
    )
    db.add(transaction)

    if target is not None:
        new_amount = target.amount + amount
        append_entry(db, asset.id, target.goal_id, new_amount, timestamp, commit=False)
        target.amount = new_amount
        routed_to = target.goal_id
        logger.info("Auto-routed deposit of %s %s on asset %s to goal %s", amount, asset.currency, asset.id, routed_to)

    db.commit()
    db.refresh(transaction)
    return transaction, routed_to
