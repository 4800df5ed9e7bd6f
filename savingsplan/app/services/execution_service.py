"""
Monthly execution lifecycle.

A month moves draft -> executing -> closed. Starting captures the plan into a
snapshot; completing freezes the derived contributions and the exchange rates
used. Either step can be undone while the record's undo deadline has not
passed. Transitions are serialized per month label, and the database's
partial unique index backs the one-open-record-per-month rule.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Optional
import logging

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from savingsplan.app.config import get_settings
from savingsplan.app.exceptions import (
    DuplicateActiveRecord, GracePeriodExpired, InvalidTransition, MissingSnapshot, PlanningError, RateUnavailable
)
from savingsplan.app.models.models import (
    AllocationHistoryEntry, CompletedExecution, ExecutionRecord, ExecutionSnapshot, ExecutionStatus,
    RedistributionStrategy, utcnow
)
from savingsplan.app.schemas.executions import (
    GoalProgress, ProgressResponse, RecalculationResponse
)
from savingsplan.app.schemas.planning import AdjustedRequirement, MonthlyRequirement, PlanResponse
from savingsplan.app.services.derivation_service import (
    LiveRates, asset_shortfalls, derive_for_record, rate_lookup_for
)
from savingsplan.app.services.exchange_rate_service import ExchangeRateService
from savingsplan.app.services.flex_service import adjusted_plan
from savingsplan.app.services.locks import month_locks
from savingsplan.app.utils.dates import is_last_day_of_month, month_label, to_naive_utc, validate_month_label

logger = logging.getLogger(__name__)

FULFILLMENT_TOLERANCE = 1e-9


def grace_period() -> timedelta:
    return timedelta(hours=get_settings().undo_grace_period_hours)


def _now(now: Optional[datetime]) -> datetime:
    return to_naive_utc(now) if now is not None else utcnow()


# --- Record lookup ---

def find_open_record(db: Session, label: str) -> Optional[ExecutionRecord]:
    return db.query(ExecutionRecord).filter(
        ExecutionRecord.month_label == label,
        ExecutionRecord.status != ExecutionStatus.CLOSED.value
    ).first()


def find_closed_record(db: Session, label: str) -> Optional[ExecutionRecord]:
    return db.query(ExecutionRecord).filter(
        ExecutionRecord.month_label == label,
        ExecutionRecord.status == ExecutionStatus.CLOSED.value
    ).order_by(ExecutionRecord.completed_at.desc()).first()


def _create_draft(db: Session, label: str, now: datetime) -> ExecutionRecord:
    record = ExecutionRecord(
        month_label=label,
        status=ExecutionStatus.DRAFT.value,
        created_at=now,
        adjustment_factor=1.0,
        strategy=RedistributionStrategy.BALANCED.value
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.error("Second open execution record attempted for %s", label)
        raise DuplicateActiveRecord()
    db.refresh(record)
    logger.info("Created draft execution record for %s", label)
    return record


def get_or_create_record(db: Session, label: str, now: Optional[datetime] = None) -> ExecutionRecord:
    """The month's open record, or a new draft if there is none. A closed month gets no new draft."""
    validate_month_label(label)
    with month_locks.hold(label):
        return _open_or_new_draft(db, label, _now(now))


def _open_or_new_draft(db: Session, label: str, now: datetime) -> ExecutionRecord:
    """Caller holds the month lock"""
    record = find_open_record(db, label)
    if record is not None:
        return record
    if find_closed_record(db, label) is not None:
        raise InvalidTransition(f"Month {label} is already closed")
    return _create_draft(db, label, now)


# --- Plan ---

def _frozen_plan(record: ExecutionRecord, live: List[AdjustedRequirement]) -> List[AdjustedRequirement]:
    """
    One row per snapshot goal with the amounts captured when the month started.
    Live requirement figures are attached where the goal is still active; goals
    finished or cancelled since keep the requirement captured at start.
    """
    live_by_goal = {adjusted.requirement.goal_id: adjusted for adjusted in live}
    frozen = []
    for entry in record.snapshot.goal_snapshots:
        current = live_by_goal.get(entry["goal_id"])
        requirement = current.requirement if current else MonthlyRequirement(**entry["requirement"])
        frozen.append(AdjustedRequirement(
            requirement=requirement,
            flex_state=entry["flex_state"],
            original_amount=entry["original_amount"],
            adjusted_amount=entry["planned_amount"],
            delta=entry["planned_amount"] - entry["original_amount"]
        ))
    return frozen


def build_plan(
    db: Session,
    record: ExecutionRecord,
    rate_service: ExchangeRateService,
    now: Optional[datetime] = None
) -> PlanResponse:
    adjusted, stale = adjusted_plan(
        db, rate_service, record.adjustment_factor, RedistributionStrategy(record.strategy), _now(now)
    )
    if record.snapshot is not None:
        adjusted = _frozen_plan(record, adjusted)
        total_planned = record.snapshot.total_planned
    else:
        total_planned = sum(a.adjusted_amount for a in adjusted)

    return PlanResponse(
        record_id=record.id,
        month_label=record.month_label,
        status=record.status,
        adjustment_factor=record.adjustment_factor,
        strategy=record.strategy,
        started_at=record.started_at,
        completed_at=record.completed_at,
        undo_deadline=record.undo_deadline,
        requirements=adjusted,
        total_planned=total_planned,
        rates_stale=stale
    )


def get_current_plan(
    db: Session,
    label: str,
    rate_service: ExchangeRateService,
    now: Optional[datetime] = None
) -> PlanResponse:
    """
    The month's plan: the open record if there is one, otherwise the record
    the month was closed with, otherwise a fresh draft.
    """
    validate_month_label(label)
    now = _now(now)
    with month_locks.hold(label):
        record = find_open_record(db, label) or find_closed_record(db, label)
        if record is None:
            record = _create_draft(db, label, now)
    return build_plan(db, record, rate_service, now)


# --- Transitions ---

def start_executing(
    db: Session,
    label: str,
    rate_service: ExchangeRateService,
    now: Optional[datetime] = None
) -> ExecutionRecord:
    """draft -> executing: capture the current plan into an immutable snapshot"""
    validate_month_label(label)
    now = _now(now)
    with month_locks.hold(label):
        record = _open_or_new_draft(db, label, now)
        if record.status != ExecutionStatus.DRAFT.value:
            raise InvalidTransition(f"Month {label} is already {record.status}")

        plan = build_plan(db, record, rate_service, now)
        goal_snapshots = [
            {
                "goal_id": adjusted.requirement.goal_id,
                "goal_name": adjusted.requirement.goal_name,
                "planned_amount": adjusted.adjusted_amount,
                "original_amount": adjusted.original_amount,
                "currency": adjusted.requirement.currency,
                "flex_state": adjusted.flex_state.value,
                "requirement": adjusted.requirement.model_dump(mode="json")
            }
            for adjusted in plan.requirements
        ]
        record.snapshot = ExecutionSnapshot(
            captured_at=now,
            total_planned=plan.total_planned,
            goal_snapshots=goal_snapshots
        )
        record.status = ExecutionStatus.EXECUTING.value
        record.started_at = now
        record.undo_deadline = now + grace_period()
        db.commit()
        db.refresh(record)

    logger.info("Started executing %s with %d goal(s), %.2f planned", label, len(goal_snapshots), plan.total_planned)
    return record


def _goal_outcomes(record: ExecutionRecord, totals: Dict[str, float]) -> List[Dict]:
    outcomes = []
    for entry in record.snapshot.goal_snapshots:
        planned = entry["planned_amount"]
        actual = totals.get(entry["goal_id"], 0.0)
        outcomes.append({
            "goal_id": entry["goal_id"],
            "goal_name": entry["goal_name"],
            "currency": entry["currency"],
            "planned_amount": planned,
            "actual_amount": actual,
            "percentage": (actual / planned * 100.0) if planned > 0 else 100.0,
            "fulfilled": actual >= planned - FULFILLMENT_TOLERANCE,
            "flex_state": entry["flex_state"]
        })
    return outcomes


def complete(
    db: Session,
    label: str,
    rate_service: ExchangeRateService,
    now: Optional[datetime] = None
) -> ExecutionRecord:
    """executing -> closed: derive one last time with rates fetched now and freeze the result"""
    validate_month_label(label)
    now = _now(now)
    with month_locks.hold(label):
        record = find_open_record(db, label)
        if record is None or record.status != ExecutionStatus.EXECUTING.value:
            raise InvalidTransition(f"Month {label} is not executing")
        if record.snapshot is None:
            raise MissingSnapshot(f"Executing month {label} has no snapshot")

        result = derive_for_record(db, record, now, LiveRates(rate_service, fresh=True))
        if result.missing_rates:
            # A closed month is final, so it is never frozen with unconverted contributions
            missing = ", ".join(sorted(result.missing_rates))
            logger.warning("Cannot complete %s without rates for %s", label, missing)
            raise RateUnavailable(f"Cannot complete {label}: no exchange rate for {missing}")

        goal_ids = [entry["goal_id"] for entry in record.snapshot.goal_snapshots]
        record.completed_execution = CompletedExecution(
            month_label=label,
            completed_at=now,
            exchange_rates=result.rates_used,
            goal_snapshots=_goal_outcomes(record, result.totals),
            contributions=[event.as_dict() for event in result.events],
            shortfalls=asset_shortfalls(db, _asset_ids_for_goals(db, goal_ids), now)
        )
        record.status = ExecutionStatus.CLOSED.value
        record.completed_at = now
        record.undo_deadline = now + grace_period()
        db.commit()
        db.refresh(record)

    logger.info("Completed %s with %d contribution event(s)", label, len(result.events))
    return record


def undo(db: Session, label: str, now: Optional[datetime] = None) -> ExecutionRecord:
    """
    Step back one state while the undo window is open:
    closed -> executing drops the completed record, executing -> draft drops
    the snapshot.
    """
    validate_month_label(label)
    now = _now(now)
    with month_locks.hold(label):
        record = find_open_record(db, label) or find_closed_record(db, label)
        if record is None or record.status == ExecutionStatus.DRAFT.value:
            raise InvalidTransition(f"Month {label} has nothing to undo")
        if record.undo_deadline is None or now >= record.undo_deadline:
            raise GracePeriodExpired()

        if record.status == ExecutionStatus.CLOSED.value:
            record.completed_execution = None
            record.status = ExecutionStatus.EXECUTING.value
            record.completed_at = None
            # The start transition's window again; once it has passed the month stays executing
            record.undo_deadline = record.started_at + grace_period()
        else:
            record.snapshot = None
            record.status = ExecutionStatus.DRAFT.value
            record.started_at = None
            record.undo_deadline = None
        db.commit()
        db.refresh(record)

    logger.info("Undid %s back to %s", label, record.status)
    return record


# --- Progress ---

def _asset_ids_for_goals(db: Session, goal_ids: List[str]) -> List[str]:
    if not goal_ids:
        return []
    rows = db.query(AllocationHistoryEntry.asset_id).filter(
        AllocationHistoryEntry.goal_id.in_(goal_ids)
    ).distinct().all()
    return [row[0] for row in rows]


def progress_for_record(
    db: Session,
    record: ExecutionRecord,
    rate_service: ExchangeRateService,
    now: Optional[datetime] = None
) -> ProgressResponse:
    """
    Live progress for an executing month. A closed month is read back from its
    CompletedExecution and never replayed again.
    """
    if record.status == ExecutionStatus.CLOSED.value:
        return _frozen_progress(record)

    lookup = rate_lookup_for(record, rate_service)
    if record.snapshot is None:
        raise MissingSnapshot(f"Month {record.month_label} has no snapshot")

    end = _now(now)
    result = derive_for_record(db, record, end, lookup)
    goals = _goal_progress(_goal_outcomes(record, result.totals))
    goal_ids = [goal.goal_id for goal in goals]

    return ProgressResponse(
        month_label=record.month_label,
        status=record.status,
        goals=goals,
        total_planned=record.snapshot.total_planned,
        total_contributed=sum(goal.contributed for goal in goals),
        shortfalls=asset_shortfalls(db, _asset_ids_for_goals(db, goal_ids), end),
        contributions=[event.as_dict() for event in result.events],
        rates_stale=result.stale,
        frozen=False
    )


def _goal_progress(outcomes: List[Dict]) -> List[GoalProgress]:
    return [
        GoalProgress(
            goal_id=outcome["goal_id"],
            goal_name=outcome["goal_name"],
            currency=outcome["currency"],
            planned_amount=outcome["planned_amount"],
            contributed=outcome["actual_amount"],
            percentage=outcome["percentage"],
            fulfilled=outcome["fulfilled"]
        )
        for outcome in outcomes
    ]


def _frozen_progress(record: ExecutionRecord) -> ProgressResponse:
    completed = record.completed_execution
    if completed is None or record.snapshot is None:
        raise MissingSnapshot(f"Closed month {record.month_label} has no completed record")

    goals = _goal_progress(completed.goal_snapshots)
    return ProgressResponse(
        month_label=record.month_label,
        status=record.status,
        goals=goals,
        total_planned=record.snapshot.total_planned,
        total_contributed=sum(goal.contributed for goal in goals),
        shortfalls=completed.shortfalls or [],
        contributions=completed.contributions,
        rates_stale=False,
        frozen=True
    )


def get_progress(
    db: Session,
    label: str,
    rate_service: ExchangeRateService,
    now: Optional[datetime] = None
) -> ProgressResponse:
    """Per-goal derived totals for the month: live while executing, frozen once closed"""
    validate_month_label(label)
    record = find_open_record(db, label) or find_closed_record(db, label)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No execution record for {label}")
    return progress_for_record(db, record, rate_service, now)


def recalculate(
    db: Session,
    label: str,
    rate_service: ExchangeRateService,
    now: Optional[datetime] = None
) -> RecalculationResponse:
    """Re-run the plan and, while executing, re-check fulfillment against the snapshot"""
    validate_month_label(label)
    now = _now(now)
    with month_locks.hold(label):
        record = _open_or_new_draft(db, label, now)
        record.recalculated_at = now
        db.commit()
        db.refresh(record)

    plan = build_plan(db, record, rate_service, now)
    progress = None
    unfulfilled = []
    if record.status == ExecutionStatus.EXECUTING.value:
        progress = progress_for_record(db, record, rate_service, now)
        unfulfilled = [goal.goal_id for goal in progress.goals if not goal.fulfilled]
    logger.debug("Recalculated %s: %d unfulfilled goal(s)", label, len(unfulfilled))
    return RecalculationResponse(plan=plan, progress=progress, unfulfilled_goal_ids=unfulfilled)


def get_history(db: Session, page_size: int = 20, offset: int = 0) -> List[CompletedExecution]:
    """Completed months, most recent first"""
    return db.query(CompletedExecution).order_by(
        CompletedExecution.completed_at.desc()
    ).offset(offset).limit(page_size).all()


# --- Automation ---

def run_automation(
    db: Session,
    rate_service: ExchangeRateService,
    now: Optional[datetime] = None
) -> List[Dict[str, str]]:
    """
    Scheduled transitions: start the current month on its first day and
    complete executing months on their last day or once they are over.
    """
    settings = get_settings()
    now = _now(now)
    current = month_label(now)
    actions = []

    if settings.auto_complete_enabled:
        executing = db.query(ExecutionRecord).filter(
            ExecutionRecord.status == ExecutionStatus.EXECUTING.value
        ).all()
        for record in executing:
            label = record.month_label
            if label < current or (label == current and is_last_day_of_month(now)):
                try:
                    complete(db, label, rate_service, now)
                    actions.append({"month_label": label, "action": "completed"})
                except PlanningError as e:
                    logger.warning("Auto-complete of %s failed: %s", label, e.message)

    if settings.auto_start_enabled and now.day == 1:
        record = find_open_record(db, current)
        if (record is None and find_closed_record(db, current) is None) or (
            record is not None and record.status == ExecutionStatus.DRAFT.value
        ):
            try:
                start_executing(db, current, rate_service, now)
                actions.append({"month_label": current, "action": "started"})
            except PlanningError as e:
                logger.warning("Auto-start of %s failed: %s", current, e.message)

    return actions
