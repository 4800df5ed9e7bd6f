from bisect import bisect_right
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from savingsplan.app.models.models import AllocationHistoryEntry
from savingsplan.app.services.locks import allocation_locks
from savingsplan.app.utils.dates import to_naive_utc

logger = logging.getLogger(__name__)


def append_entry(
    db: Session,
    asset_id: str,
    goal_id: str,
    amount: float,
    timestamp: datetime,
    commit: bool = True
) -> AllocationHistoryEntry:
    """
    Append a new allocation target to the ledger.

    Entries are never edited; a correction is a newer entry for the same
    (asset, goal) pair. The sequence number breaks ties between entries that
    share a timestamp.
    """
    with allocation_locks.hold((asset_id, goal_id)):
        last_sequence = db.query(func.max(AllocationHistoryEntry.sequence)).filter(
            AllocationHistoryEntry.asset_id == asset_id,
            AllocationHistoryEntry.goal_id == goal_id
        ).scalar()

        entry = AllocationHistoryEntry(
            asset_id=asset_id,
            goal_id=goal_id,
            amount=max(0.0, amount),
            timestamp=to_naive_utc(timestamp),
            sequence=(last_sequence or 0) + 1
        )
        db.add(entry)
        if commit:
            db.commit()
            db.refresh(entry)
        else:
            db.flush()

    logger.debug("Allocation history %s/%s -> %s at %s", asset_id, goal_id, entry.amount, entry.timestamp)
    return entry


def target_as_of(db: Session, asset_id: str, goal_id: str, timestamp: datetime) -> float:
    """Allocation target for (asset, goal) as of `timestamp`, or 0 if nothing was recorded yet"""
    entry = db.query(AllocationHistoryEntry).filter(
        AllocationHistoryEntry.asset_id == asset_id,
        AllocationHistoryEntry.goal_id == goal_id,
        AllocationHistoryEntry.timestamp <= to_naive_utc(timestamp)
    ).order_by(
        AllocationHistoryEntry.timestamp.desc(),
        AllocationHistoryEntry.sequence.desc()
    ).first()
    return entry.amount if entry else 0.0


def get_entries(
    db: Session,
    asset_ids: Optional[Iterable[str]] = None,
    goal_ids: Optional[Iterable[str]] = None,
    until: Optional[datetime] = None
) -> List[AllocationHistoryEntry]:
    query = db.query(AllocationHistoryEntry)
    if asset_ids is not None:
        query = query.filter(AllocationHistoryEntry.asset_id.in_(list(asset_ids)))
    if goal_ids is not None:
        query = query.filter(AllocationHistoryEntry.goal_id.in_(list(goal_ids)))
    if until is not None:
        query = query.filter(AllocationHistoryEntry.timestamp <= to_naive_utc(until))
    return query.order_by(
        AllocationHistoryEntry.timestamp,
        AllocationHistoryEntry.sequence
    ).all()


class AllocationLedger:
    """
    In-memory, sorted view of allocation history for time-travel queries.

    Entries are kept sorted per (asset, goal) key by (timestamp, sequence), so
    `target_as_of` is a binary search.
    """

    def __init__(self, entries: Iterable[AllocationHistoryEntry] = ()):
        self._keys: Dict[Tuple[str, str], List[Tuple[datetime, int]]] = {}
        self._amounts: Dict[Tuple[str, str], List[float]] = {}
        for entry in sorted(entries, key=lambda e: (e.timestamp, e.sequence)):
            self.append(entry.asset_id, entry.goal_id, entry.amount, entry.timestamp, entry.sequence)

    def append(self, asset_id: str, goal_id: str, amount: float, timestamp: datetime, sequence: Optional[int] = None):
        key = (asset_id, goal_id)
        positions = self._keys.setdefault(key, [])
        amounts = self._amounts.setdefault(key, [])
        if sequence is None:
            sequence = (max(seq for _, seq in positions) + 1) if positions else 1
        sort_key = (to_naive_utc(timestamp), sequence)
        index = bisect_right(positions, sort_key)
        positions.insert(index, sort_key)
        amounts.insert(index, max(0.0, amount))

    def target_as_of(self, asset_id: str, goal_id: str, timestamp: datetime, inclusive: bool = True) -> float:
        positions = self._keys.get((asset_id, goal_id))
        if not positions:
            return 0.0
        timestamp = to_naive_utc(timestamp)
        if inclusive:
            # Any sequence at exactly `timestamp` sorts before (timestamp, inf)
            index = bisect_right(positions, (timestamp, float("inf")))
        else:
            index = bisect_right(positions, (timestamp, float("-inf")))
        if index == 0:
            return 0.0
        return self._amounts[(asset_id, goal_id)][index - 1]

    def changes_between(self, asset_id: str, start: datetime, end: datetime) -> List[Tuple[datetime, int, str, float]]:
        """Entries for an asset with start <= timestamp <= end, ordered by (timestamp, sequence)"""
        start, end = to_naive_utc(start), to_naive_utc(end)
        changes = []
        for (key_asset, goal_id), positions in self._keys.items():
            if key_asset != asset_id:
                continue
            amounts = self._amounts[(key_asset, goal_id)]
            for (timestamp, sequence), amount in zip(positions, amounts):
                if start <= timestamp <= end:
                    changes.append((timestamp, sequence, goal_id, amount))
        changes.sort(key=lambda change: (change[0], change[1]))
        return changes

    def goal_ids_for(self, asset_id: str) -> List[str]:
        return [goal_id for (key_asset, goal_id) in self._keys if key_asset == asset_id]
