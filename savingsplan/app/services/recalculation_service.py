from functools import lru_cache
from typing import Callable, List, Optional, Tuple
import logging
import threading

from savingsplan.app.config import get_settings
from savingsplan.app.exceptions import PlanningError

logger = logging.getLogger(__name__)

GOAL_CHANGED = "goal_changed"
ASSET_CHANGED = "asset_changed"
ALLOCATION_CHANGED = "allocation_changed"


class RecalculationScheduler:
    """
    Debounces change notifications into recalculation runs.

    Rapid triggers for the same month collapse into one run after
    `debounce_seconds` of quiet. The last trigger is never dropped: it either
    fires with its timer or is run by `flush()`.
    """

    def __init__(self, callback: Callable[[str], None], debounce_seconds: float = 0.5):
        self.callback = callback
        self.debounce_seconds = debounce_seconds
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._pending: List[Tuple[str, str]] = []
        self.runs = 0

    def notify(self, event: str, month_label: str):
        with self._lock:
            self._pending.append((event, month_label))
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_seconds, self._fire)
            self._timer.daemon = True
            self._timer.start()
        logger.debug("Recalculation requested for %s (%s)", month_label, event)

    def _take_pending(self) -> List[Tuple[str, str]]:
        with self._lock:
            pending, self._pending = self._pending, []
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        return pending

    def _run(self, pending: List[Tuple[str, str]]):
        if not pending:
            return
        events = sorted({event for event, _ in pending})
        months = list(dict.fromkeys(label for _, label in pending))
        for label in months:
            try:
                self.callback(label)
                self.runs += 1
                logger.info("Recalculated %s after %d trigger(s): %s", label, len(pending), ", ".join(events))
            except PlanningError as e:
                logger.warning("Recalculation of %s skipped: %s", label, e.message)
            except Exception:
                logger.exception("Recalculation of %s failed", label)

    def _fire(self):
        self._run(self._take_pending())

    def flush(self):
        """Run any pending recalculation now instead of waiting for the timer"""
        self._run(self._take_pending())

    def has_pending(self) -> bool:
        with self._lock:
            return bool(self._pending)


def recalculate_open_month(month_label: str):
    """Default callback: recalculate the month if it has an open record"""
    from savingsplan.app.database import SessionLocal
    from savingsplan.app.services.exchange_rate_service import get_rate_service
    from savingsplan.app.services.execution_service import find_open_record, recalculate

    db = SessionLocal()
    try:
        if find_open_record(db, month_label) is None:
            return
        recalculate(db, month_label, get_rate_service())
    finally:
        db.close()


@lru_cache()
def get_recalculation_scheduler() -> RecalculationScheduler:
    return RecalculationScheduler(
        recalculate_open_month,
        debounce_seconds=get_settings().recalculation_debounce_seconds
    )
