from uuid import uuid4
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Column, String, Integer, DateTime, Float, ForeignKey, JSON, Date, Index, UniqueConstraint, text
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column is stored in"""
    return datetime.now(timezone.utc).replace(tzinfo=None)

# --- ENUMS ---

class GoalStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    FINISHED = "finished"

class FlexState(str, Enum):
    FLEXIBLE = "flexible"
    PROTECTED = "protected"
    SKIPPED = "skipped"

class ExecutionStatus(str, Enum):
    DRAFT = "draft"
    EXECUTING = "executing"
    CLOSED = "closed"

class RequirementStatus(str, Enum):
    COMPLETED = "completed"
    ON_TRACK = "on_track"
    ATTENTION = "attention"
    CRITICAL = "critical"

class RedistributionStrategy(str, Enum):
    BALANCED = "balanced"
    URGENT_FIRST = "urgent_first"
    LARGEST_FIRST = "largest_first"
    MINIMIZE_RISK = "minimize_risk"

class ContributionSource(str, Enum):
    """What kind of value-change event produced a derived contribution"""
    ALLOCATION_CHANGE = "allocation_change"
    BALANCE_CHANGE = "balance_change"

# --- SQLALCHEMY MODELS ---

class Goal(Base):
    __tablename__ = "goals"
    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    name = Column(String, nullable=False)
    target_amount = Column(Float, nullable=False, default=0.0)
    currency = Column(String, nullable=False)
    deadline = Column(Date, nullable=False)
    status = Column(String, default=GoalStatus.ACTIVE.value, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    modified_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    flex_preference = relationship("FlexPreference", back_populates="goal", uselist=False, cascade="all, delete-orphan")

class Asset(Base):
    __tablename__ = "assets"
    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    name = Column(String, nullable=False)
    currency = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    transactions = relationship("AssetTransaction", back_populates="asset", order_by="AssetTransaction.timestamp")
    allocations = relationship("AllocationTarget", back_populates="asset")

class AssetTransaction(Base):
    """Balance change on an asset. Append-only."""
    __tablename__ = "asset_transactions"
    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    asset_id = Column(String, ForeignKey("assets.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True)
    note = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    asset = relationship("Asset", back_populates="transactions")

class AllocationTarget(Base):
    """How much of an asset is currently earmarked for a goal"""
    __tablename__ = "allocation_targets"
    __table_args__ = (UniqueConstraint("asset_id", "goal_id", name="uq_allocation_target_asset_goal"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    asset_id = Column(String, ForeignKey("assets.id"), nullable=False)
    goal_id = Column(String, ForeignKey("goals.id"), nullable=False)
    amount = Column(Float, nullable=False, default=0.0)
    last_modified = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    asset = relationship("Asset", back_populates="allocations")
    goal = relationship("Goal")

class AllocationHistoryEntry(Base):
    """Append-only ledger of allocation targets. Rows are never updated or deleted."""
    __tablename__ = "allocation_history"
    __table_args__ = (
        Index("ix_allocation_history_key_time", "asset_id", "goal_id", "timestamp", "sequence"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    asset_id = Column(String, ForeignKey("assets.id"), nullable=False)
    goal_id = Column(String, ForeignKey("goals.id"), nullable=False)
    amount = Column(Float, nullable=False)
    timestamp = Column(DateTime, nullable=False)
    sequence = Column(Integer, nullable=False)  # insertion order within (asset, goal)
    recorded_at = Column(DateTime, default=utcnow)

class FlexPreference(Base):
    __tablename__ = "flex_preferences"
    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    goal_id = Column(String, ForeignKey("goals.id"), nullable=False, unique=True)
    flex_state = Column(String, default=FlexState.FLEXIBLE.value, nullable=False)
    custom_amount = Column(Float, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    goal = relationship("Goal", back_populates="flex_preference")

class ExecutionRecord(Base):
    """Per-month lifecycle object: draft -> executing -> closed"""
    __tablename__ = "execution_records"
    __table_args__ = (
        # At most one non-closed record per month label
        Index(
            "uq_execution_records_open_month",
            "month_label",
            unique=True,
            sqlite_where=text("status != 'closed'"),
            postgresql_where=text("status != 'closed'"),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    month_label = Column(String, nullable=False, index=True)
    status = Column(String, default=ExecutionStatus.DRAFT.value, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    undo_deadline = Column(DateTime, nullable=True)
    adjustment_factor = Column(Float, default=1.0, nullable=False)
    strategy = Column(String, default=RedistributionStrategy.BALANCED.value, nullable=False)
    recalculated_at = Column(DateTime, nullable=True)

    # Relationships
    snapshot = relationship(
        "ExecutionSnapshot", back_populates="record", uselist=False, cascade="all, delete-orphan"
    )
    completed_execution = relationship(
        "CompletedExecution", back_populates="record", uselist=False, cascade="all, delete-orphan"
    )

class ExecutionSnapshot(Base):
    """Planned amounts captured when a month starts executing. Write-once."""
    __tablename__ = "execution_snapshots"
    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    record_id = Column(String, ForeignKey("execution_records.id"), nullable=False, unique=True)
    captured_at = Column(DateTime, nullable=False)
    total_planned = Column(Float, nullable=False, default=0.0)
    goal_snapshots = Column(JSON, nullable=False)  # [{goal_id, goal_name, planned_amount, currency, flex_state}]

    # Relationships
    record = relationship("ExecutionRecord", back_populates="snapshot")

    def planned_for(self, goal_id: str):
        for entry in self.goal_snapshots or []:
            if entry["goal_id"] == goal_id:
                return entry
        return None

class CompletedExecution(Base):
    """Frozen historical record of a finished month. Write-once."""
    __tablename__ = "completed_executions"
    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    record_id = Column(String, ForeignKey("execution_records.id"), nullable=False, unique=True)
    month_label = Column(String, nullable=False, index=True)
    completed_at = Column(DateTime, nullable=False)
    exchange_rates = Column(JSON, nullable=False)  # {"BTC->USD": 64000.0}
    goal_snapshots = Column(JSON, nullable=False)  # planned vs actual per goal
    contributions = Column(JSON, nullable=False)  # derived value-change events
    shortfalls = Column(JSON, nullable=False, default=list)  # over-allocated assets at completion

    # Relationships
    record = relationship("ExecutionRecord", back_populates="completed_execution")
