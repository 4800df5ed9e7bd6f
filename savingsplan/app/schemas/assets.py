from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class AssetCreate(BaseModel):
    name: str
    currency: str = Field(min_length=2, max_length=10)

class AssetResponse(BaseModel):
    id: str
    name: str
    currency: str
    created_at: datetime

    class Config:
        from_attributes = True

class AssetTransactionCreate(BaseModel):
    amount: float
    timestamp: Optional[datetime] = None  # defaults to now
    note: Optional[str] = None

class AssetTransactionResponse(BaseModel):
    id: str
    asset_id: str
    amount: float
    timestamp: datetime
    note: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True

class RecordedTransactionResponse(BaseModel):
    transaction: AssetTransactionResponse
    auto_routed_goal_id: Optional[str] = None

class AllocationUpdate(BaseModel):
    amount: float = Field(ge=0)
    timestamp: Optional[datetime] = None

class AllocationTargetResponse(BaseModel):
    id: str
    asset_id: str
    goal_id: str
    amount: float
    last_modified: datetime

    class Config:
        from_attributes = True

class AllocationHistoryEntryResponse(BaseModel):
    id: str
    asset_id: str
    goal_id: str
    amount: float
    timestamp: datetime
    sequence: int

    class Config:
        from_attributes = True

class AssetAllocationSummary(BaseModel):
    asset_id: str
    currency: str
    balance: float
    total_allocated: float
    unallocated: float
    shortfall: float
    allocations: List[AllocationTargetResponse]
