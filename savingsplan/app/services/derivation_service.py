"""
Contribution derivation.

Nothing here writes a "contribution". Monthly progress is a pure replay of two
append-only sources, asset transactions and allocation history, over the
window that starts when a month begins executing. Amounts are converted to the
goal currency with live rates while the month is executing and with the rates
frozen at completion once it is closed.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple
import logging

from sqlalchemy.orm import Session

from savingsplan.app.exceptions import InvalidTransition, MissingSnapshot, RateUnavailable
from savingsplan.app.models.models import (
    Asset, AssetTransaction, ContributionSource, ExecutionRecord, ExecutionStatus, Goal
)
from savingsplan.app.services.allocation_history_service import AllocationLedger, get_entries
from savingsplan.app.services.exchange_rate_service import ExchangeRateService, rate_key
from savingsplan.app.utils.dates import to_naive_utc

logger = logging.getLogger(__name__)

EPSILON = 1e-7


@dataclass
class DerivedEvent:
    timestamp: datetime
    source: ContributionSource
    asset_id: str
    asset_currency: str
    goal_id: str
    goal_currency: str
    asset_delta: float


@dataclass
class ConvertedEvent:
    event: DerivedEvent
    amount_in_goal_currency: float
    rate: float

    def as_dict(self):
        return {
            "timestamp": self.event.timestamp.isoformat(),
            "source": self.event.source.value,
            "asset_id": self.event.asset_id,
            "asset_currency": self.event.asset_currency,
            "goal_id": self.event.goal_id,
            "goal_currency": self.event.goal_currency,
            "asset_amount": self.event.asset_delta,
            "amount_in_goal_currency": self.amount_in_goal_currency,
            "exchange_rate_used": self.rate
        }


@dataclass
class DerivationResult:
    totals: Dict[str, float]
    events: List[ConvertedEvent]
    rates_used: Dict[str, float]
    stale: bool = False
    missing_rates: Set[str] = field(default_factory=set)


# --- Over-allocation ---

def funded_amounts(balance: float, targets: Dict[str, float]) -> Dict[str, float]:
    """
    Split an asset's real balance across its allocation targets.

    Targets are a plan, not a guarantee: when they add up to more than the
    balance, each goal gets `target * balance / sum(targets)`.
    """
    if balance <= 0:
        return {goal_id: 0.0 for goal_id in targets}
    total_targets = sum(targets.values())
    if total_targets <= 0:
        return {goal_id: 0.0 for goal_id in targets}
    if balance >= total_targets:
        return dict(targets)
    return {goal_id: target * balance / total_targets for goal_id, target in targets.items()}


def allocation_shortfall(balance: float, targets: Dict[str, float]) -> float:
    return max(0.0, sum(targets.values()) - max(balance, 0.0))


# --- Rate lookups ---

class LiveRates:
    """Current rates from the rate service, used while a month is executing"""

    def __init__(self, rate_service: ExchangeRateService, fresh: bool = False):
        self.rate_service = rate_service
        self.fresh = fresh
        self.used: Dict[str, float] = {}
        self.missing: Set[str] = set()
        self.stale = False

    def __call__(self, from_currency: str, to_currency: str) -> Optional[float]:
        key = rate_key(from_currency, to_currency)
        if key in self.used:
            return self.used[key]
        if key in self.missing:
            return None
        try:
            if self.fresh:
                quote = self.rate_service.rate_at_instant(from_currency, to_currency)
            else:
                quote = self.rate_service.quote(from_currency, to_currency)
        except RateUnavailable:
            self.missing.add(key)
            self.stale = True
            return None
        if quote.stale:
            self.stale = True
        self.used[key] = quote.rate
        return quote.rate


class FrozenRates:
    """Rates captured when a month was completed"""

    def __init__(self, rates: Dict[str, float]):
        self.rates = dict(rates or {})
        self.used: Dict[str, float] = {}
        self.missing: Set[str] = set()
        self.stale = False

    def __call__(self, from_currency: str, to_currency: str) -> Optional[float]:
        if from_currency.upper() == to_currency.upper():
            return 1.0
        key = rate_key(from_currency, to_currency)
        rate = self.rates.get(key)
        if rate is None:
            self.missing.add(key)
            return None
        self.used[key] = rate
        return rate


def rate_lookup_for(record: ExecutionRecord, rate_service: ExchangeRateService):
    """Pick the rate source for a record: live while executing, frozen once closed"""
    status = ExecutionStatus(record.status)
    if status == ExecutionStatus.EXECUTING:
        return LiveRates(rate_service)
    elif status == ExecutionStatus.CLOSED:
        if record.completed_execution is None:
            raise MissingSnapshot(f"Closed month {record.month_label} has no completed record")
        return FrozenRates(record.completed_execution.exchange_rates)
    elif status == ExecutionStatus.DRAFT:
        raise InvalidTransition(f"Month {record.month_label} has not started executing")
    raise ValueError(f"Unknown execution status {record.status}")


# --- Replay ---

def _asset_events(
    asset: Asset,
    transactions: List[AssetTransaction],
    ledger: AllocationLedger,
    goal_currencies: Dict[str, str],
    start: datetime,
    end: datetime
) -> List[DerivedEvent]:
    goal_ids = ledger.goal_ids_for(asset.id)
    if not any(goal_id in goal_currencies for goal_id in goal_ids):
        return []

    balance = sum(tx.amount for tx in transactions if tx.timestamp < start)
    # Targets recorded at the start instant belong to the baseline
    targets = {goal_id: ledger.target_as_of(asset.id, goal_id, start) for goal_id in goal_ids}
    funded = funded_amounts(balance, targets)

    allocation_changes: Dict[datetime, List[Tuple[int, str, float]]] = {}
    for timestamp, sequence, goal_id, amount in ledger.changes_between(asset.id, start, end):
        if timestamp == start:
            continue
        allocation_changes.setdefault(timestamp, []).append((sequence, goal_id, amount))

    balance_changes: Dict[datetime, float] = {}
    for tx in transactions:
        if start <= tx.timestamp <= end:
            balance_changes[tx.timestamp] = balance_changes.get(tx.timestamp, 0.0) + tx.amount

    events = []

    def emit(new_funded: Dict[str, float], timestamp: datetime, source: ContributionSource):
        for goal_id in set(funded) | set(new_funded):
            delta = new_funded.get(goal_id, 0.0) - funded.get(goal_id, 0.0)
            if abs(delta) <= EPSILON or goal_id not in goal_currencies:
                continue
            events.append(DerivedEvent(
                timestamp=timestamp,
                source=source,
                asset_id=asset.id,
                asset_currency=asset.currency,
                goal_id=goal_id,
                goal_currency=goal_currencies[goal_id],
                asset_delta=delta
            ))

    # Allocation edits at a timestamp apply before balance changes at the same timestamp
    for timestamp in sorted(set(allocation_changes) | set(balance_changes)):
        updates = allocation_changes.get(timestamp)
        if updates:
            for _, goal_id, amount in sorted(updates):
                targets[goal_id] = amount
            new_funded = funded_amounts(balance, targets)
            emit(new_funded, timestamp, ContributionSource.ALLOCATION_CHANGE)
            funded = new_funded

        delta = balance_changes.get(timestamp, 0.0)
        if abs(delta) > EPSILON:
            balance += delta
            new_funded = funded_amounts(balance, targets)
            emit(new_funded, timestamp, ContributionSource.BALANCE_CHANGE)
            funded = new_funded

    return events


def derive_events(
    assets: Iterable[Asset],
    transactions_by_asset: Dict[str, List[AssetTransaction]],
    ledger: AllocationLedger,
    goal_currencies: Dict[str, str],
    start: datetime,
    end: datetime
) -> List[DerivedEvent]:
    """Per-goal value changes for tracked goals between start and end (inclusive)"""
    start, end = to_naive_utc(start), to_naive_utc(end)
    if end < start:
        return []
    events = []
    for asset in assets:
        events.extend(_asset_events(
            asset, transactions_by_asset.get(asset.id, []), ledger, goal_currencies, start, end
        ))
    events.sort(key=lambda event: event.timestamp)
    return events


def convert_events(events: List[DerivedEvent], lookup) -> DerivationResult:
    totals: Dict[str, float] = {goal_id: 0.0 for goal_id in {event.goal_id for event in events}}
    converted = []
    for event in events:
        if event.asset_currency.upper() == event.goal_currency.upper():
            rate = 1.0
        else:
            rate = lookup(event.asset_currency, event.goal_currency)
            if rate is None:
                logger.warning(
                    "Skipping %s contribution to goal %s: no rate for %s",
                    event.asset_currency, event.goal_id, rate_key(event.asset_currency, event.goal_currency)
                )
                continue
        amount = event.asset_delta * rate
        totals[event.goal_id] += amount
        converted.append(ConvertedEvent(event=event, amount_in_goal_currency=amount, rate=rate))

    return DerivationResult(
        totals=totals,
        events=converted,
        rates_used=dict(lookup.used),
        stale=bool(lookup.stale or lookup.missing),
        missing_rates=set(lookup.missing)
    )


# --- Database glue ---

def load_inputs(db: Session, goal_ids: Iterable[str], until: datetime):
    """Assets touching the goals, their transactions up to `until`, and the allocation ledger"""
    goal_ids = list(goal_ids)
    relevant_entries = get_entries(db, goal_ids=goal_ids, until=until)
    asset_ids = sorted({entry.asset_id for entry in relevant_entries})
    if not asset_ids:
        return [], {}, AllocationLedger()

    # All goals on those assets matter for the proportional split
    ledger = AllocationLedger(get_entries(db, asset_ids=asset_ids, until=until))
    assets = db.query(Asset).filter(Asset.id.in_(asset_ids)).all()
    transactions = db.query(AssetTransaction).filter(
        AssetTransaction.asset_id.in_(asset_ids),
        AssetTransaction.timestamp <= to_naive_utc(until)
    ).order_by(AssetTransaction.timestamp).all()

    transactions_by_asset: Dict[str, List[AssetTransaction]] = {}
    for tx in transactions:
        transactions_by_asset.setdefault(tx.asset_id, []).append(tx)
    return assets, transactions_by_asset, ledger


def derive_for_record(
    db: Session,
    record: ExecutionRecord,
    end: datetime,
    lookup
) -> DerivationResult:
    """Replay the record's window [started_at, end] for the goals in its snapshot"""
    if record.started_at is None or record.snapshot is None:
        return DerivationResult(totals={}, events=[], rates_used={})

    goal_currencies = {entry["goal_id"]: entry["currency"] for entry in record.snapshot.goal_snapshots}
    assets, transactions_by_asset, ledger = load_inputs(db, goal_currencies.keys(), end)
    events = derive_events(assets, transactions_by_asset, ledger, goal_currencies, record.started_at, end)
    result = convert_events(events, lookup)
    for goal_id in goal_currencies:
        result.totals.setdefault(goal_id, 0.0)
    return result


def current_goal_totals(
    db: Session,
    rate_service: ExchangeRateService,
    goal_ids: Iterable[str],
    now: datetime
) -> Tuple[Dict[str, float], bool]:
    """Funded value of each goal's allocations at `now`, in the goal's currency"""
    goal_ids = list(goal_ids)
    if not goal_ids:
        return {}, False
    goal_currencies = {
        goal.id: goal.currency for goal in db.query(Goal).filter(Goal.id.in_(goal_ids)).all()
    }
    assets, transactions_by_asset, ledger = load_inputs(db, goal_ids, now)
    lookup = LiveRates(rate_service)

    totals = {goal_id: 0.0 for goal_id in goal_ids}
    for asset in assets:
        balance = sum(tx.amount for tx in transactions_by_asset.get(asset.id, []))
        targets = {goal_id: ledger.target_as_of(asset.id, goal_id, now) for goal_id in ledger.goal_ids_for(asset.id)}
        for goal_id, amount in funded_amounts(balance, targets).items():
            if goal_id not in goal_currencies or amount <= EPSILON:
                continue
            rate = lookup(asset.currency, goal_currencies[goal_id])
            if rate is None:
                continue
            totals[goal_id] += amount * rate
    return totals, bool(lookup.stale or lookup.missing)


def asset_shortfalls(db: Session, asset_ids: Iterable[str], now: datetime) -> List[Dict]:
    """Over-allocation per asset at `now`: sum(targets) - balance when positive"""
    asset_ids = list(asset_ids)
    if not asset_ids:
        return []
    ledger = AllocationLedger(get_entries(db, asset_ids=asset_ids, until=now))
    results = []
    for asset in db.query(Asset).filter(Asset.id.in_(asset_ids)).all():
        balance = sum(
            tx.amount for tx in asset.transactions if tx.timestamp <= to_naive_utc(now)
        )
        targets = {goal_id: ledger.target_as_of(asset.id, goal_id, now) for goal_id in ledger.goal_ids_for(asset.id)}
        shortfall = allocation_shortfall(balance, targets)
        if shortfall > EPSILON:
            results.append({
                "asset_id": asset.id,
                "currency": asset.currency,
                "balance": balance,
                "total_targets": sum(targets.values()),
                "shortfall": shortfall
            })
    return results
