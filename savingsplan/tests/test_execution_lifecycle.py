import pytest
import threading
from datetime import date, datetime, timedelta
from sqlalchemy.orm import sessionmaker

from savingsplan.app.exceptions import (
    DuplicateActiveRecord, GracePeriodExpired, InvalidTransition, MissingSnapshot, RateUnavailable
)
from savingsplan.app.models.models import (
    CompletedExecution, ExecutionRecord, ExecutionSnapshot, ExecutionStatus, RedistributionStrategy
)
from savingsplan.app.schemas.planning import FlexAdjustmentRequest, QuickAction
from savingsplan.app.services import execution_service
from savingsplan.app.services.allocation_service import set_allocation
from savingsplan.app.services.execution_service import (
    complete, get_current_plan, get_history, get_or_create_record, get_progress, recalculate,
    run_automation, start_executing, undo
)
from savingsplan.app.services.flex_service import apply_quick_action, commit_flex_adjustment
from savingsplan.app.services.goal_service import finish_goal
from savingsplan.app.services.transaction_service import record_transaction
from savingsplan.tests.helpers import MONTH, MONTH_START, make_asset, make_goal


@pytest.fixture
def dedicated_asset(db_session, test_goal, test_asset):
    """Empty asset linked only to the Emergency Fund goal"""
    set_allocation(db_session, test_asset.id, test_goal.id, 0.0, MONTH_START - timedelta(days=1))
    return test_asset


def test_viewing_a_month_creates_a_draft(db_session, rate_service, test_goal):
    plan = get_current_plan(db_session, MONTH, rate_service, MONTH_START)

    assert plan.status == ExecutionStatus.DRAFT
    assert plan.total_planned == pytest.approx(600.0)
    assert plan.requirements[0].requirement.months_remaining == 1
    assert db_session.query(ExecutionRecord).count() == 1

    again = get_current_plan(db_session, MONTH, rate_service, MONTH_START)
    assert again.record_id == plan.record_id

def test_start_executing_captures_snapshot(db_session, rate_service, test_goal):
    record = start_executing(db_session, MONTH, rate_service, MONTH_START)

    assert record.status == ExecutionStatus.EXECUTING.value
    assert record.started_at == MONTH_START
    assert record.undo_deadline == MONTH_START + timedelta(hours=24)
    assert db_session.query(ExecutionSnapshot).count() == 1
    assert record.snapshot.total_planned == pytest.approx(600.0)
    assert record.snapshot.planned_for(test_goal.id)["planned_amount"] == pytest.approx(600.0)

    with pytest.raises(InvalidTransition):
        start_executing(db_session, MONTH, rate_service, MONTH_START + timedelta(minutes=5))
    assert db_session.query(ExecutionSnapshot).count() == 1

def test_emergency_fund_month(db_session, rate_service, test_goal, dedicated_asset):
    start_executing(db_session, MONTH, rate_service, MONTH_START)

    _, routed_to = record_transaction(db_session, dedicated_asset.id, 600.0, MONTH_START + timedelta(hours=1))
    assert routed_to == test_goal.id

    progress = get_progress(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=2))
    assert progress.goals[0].contributed == pytest.approx(600.0)
    assert progress.goals[0].fulfilled
    assert not progress.frozen

    record = complete(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=3))
    assert record.status == ExecutionStatus.CLOSED.value
    outcome = record.completed_execution.goal_snapshots[0]
    assert outcome["planned_amount"] == pytest.approx(600.0)
    assert outcome["actual_amount"] == pytest.approx(600.0)
    assert outcome["percentage"] == pytest.approx(100.0)
    assert outcome["fulfilled"]
    assert len(record.completed_execution.contributions) == 1
    assert get_history(db_session) == [record.completed_execution]

def test_deposits_before_start_do_not_count(db_session, rate_service, test_goal, dedicated_asset):
    record_transaction(db_session, dedicated_asset.id, 200.0, MONTH_START - timedelta(hours=1))
    start_executing(db_session, MONTH, rate_service, MONTH_START)

    progress = get_progress(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=1))
    assert progress.goals[0].contributed == 0.0
    # The earlier deposit still counts toward the goal's total
    assert progress.goals[0].planned_amount == pytest.approx(400.0)

def test_complete_then_undo_restores_executing(db_session, rate_service, test_goal):
    start_executing(db_session, MONTH, rate_service, MONTH_START)
    complete(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=2))

    record = undo(db_session, MONTH, MONTH_START + timedelta(hours=3))
    assert record.status == ExecutionStatus.EXECUTING.value
    assert record.completed_at is None
    assert record.undo_deadline == MONTH_START + timedelta(hours=24)
    assert db_session.query(CompletedExecution).count() == 0

    # and it can be completed again
    complete(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=4))
    assert db_session.query(CompletedExecution).count() == 1

def test_undo_after_grace_period(db_session, rate_service, test_goal):
    start_executing(db_session, MONTH, rate_service, MONTH_START)
    completed_at = MONTH_START + timedelta(days=10)
    complete(db_session, MONTH, rate_service, completed_at)

    with pytest.raises(GracePeriodExpired) as excinfo:
        undo(db_session, MONTH, completed_at + timedelta(hours=24))
    assert excinfo.value.message == "The 24-hour undo window has passed"
    assert db_session.query(CompletedExecution).count() == 1

def test_undo_start_returns_to_draft(db_session, rate_service, test_goal):
    start_executing(db_session, MONTH, rate_service, MONTH_START)
    record = undo(db_session, MONTH, MONTH_START + timedelta(hours=1))

    assert record.status == ExecutionStatus.DRAFT.value
    assert record.started_at is None
    assert db_session.query(ExecutionSnapshot).count() == 0

    start_executing(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=2))
    assert db_session.query(ExecutionSnapshot).count() == 1

def test_undo_start_after_grace_period(db_session, rate_service, test_goal):
    start_executing(db_session, MONTH, rate_service, MONTH_START)
    with pytest.raises(GracePeriodExpired):
        undo(db_session, MONTH, MONTH_START + timedelta(hours=25))

def test_invalid_transitions(db_session, rate_service, test_goal):
    get_or_create_record(db_session, MONTH, MONTH_START)
    with pytest.raises(InvalidTransition):
        undo(db_session, MONTH, MONTH_START)
    with pytest.raises(InvalidTransition):
        complete(db_session, MONTH, rate_service, MONTH_START)
    with pytest.raises(InvalidTransition):
        get_progress(db_session, MONTH, rate_service, MONTH_START)

def test_closed_month_cannot_start_again(db_session, rate_service, test_goal):
    start_executing(db_session, MONTH, rate_service, MONTH_START)
    complete(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=1))

    with pytest.raises(InvalidTransition):
        start_executing(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=2))
    plan = get_current_plan(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=2))
    assert plan.status == ExecutionStatus.CLOSED
    assert db_session.query(ExecutionRecord).count() == 1

def test_second_open_record_is_rejected(db_session):
    execution_service._create_draft(db_session, MONTH, MONTH_START)
    with pytest.raises(DuplicateActiveRecord) as excinfo:
        execution_service._create_draft(db_session, MONTH, MONTH_START)
    assert excinfo.value.message == "This month is already being tracked"
    assert db_session.query(ExecutionRecord).count() == 1

def test_closed_month_uses_frozen_rates(db_session, rate_service, rate_fetcher):
    goal = make_goal(db_session, "House", 60000.0, (MONTH_START + timedelta(days=20)).date())
    wallet = make_asset(db_session, "Cold wallet", "BTC")
    set_allocation(db_session, wallet.id, goal.id, 0.0, MONTH_START - timedelta(days=1))
    start_executing(db_session, MONTH, rate_service, MONTH_START)
    record_transaction(db_session, wallet.id, 0.5, MONTH_START + timedelta(hours=1))

    live = get_progress(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=2))
    assert live.goals[0].contributed == pytest.approx(25000.0)
    assert not live.goals[0].fulfilled

    record = complete(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=3))
    assert record.completed_execution.exchange_rates == {"BTC->USD": 50000.0}

    rate_fetcher.rates[("BTC", "USD")] = 70000.0
    rate_service.clear_cache()
    frozen = get_progress(db_session, MONTH, rate_service, MONTH_START + timedelta(days=2))
    assert frozen.frozen
    assert frozen.goals[0].contributed == pytest.approx(25000.0)

def test_closed_month_without_completed_record(db_session, rate_service, test_goal):
    start_executing(db_session, MONTH, rate_service, MONTH_START)
    complete(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=1))
    db_session.query(CompletedExecution).delete()
    db_session.commit()
    db_session.expire_all()

    with pytest.raises(MissingSnapshot):
        get_progress(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=2))

def test_recalculate_reports_unfulfilled_goals(db_session, rate_service, test_goal, dedicated_asset):
    start_executing(db_session, MONTH, rate_service, MONTH_START)

    result = recalculate(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=1))
    assert result.unfulfilled_goal_ids == [test_goal.id]

    record_transaction(db_session, dedicated_asset.id, 600.0, MONTH_START + timedelta(hours=2))
    result = recalculate(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=3))
    assert result.unfulfilled_goal_ids == []
    # The snapshot is not touched by recalculation
    assert result.plan.total_planned == pytest.approx(600.0)

def test_recalculate_closed_month(db_session, rate_service, test_goal):
    start_executing(db_session, MONTH, rate_service, MONTH_START)
    complete(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=1))
    with pytest.raises(InvalidTransition):
        recalculate(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=2))

def test_history_is_paginated(db_session, rate_service, test_goal):
    for label, start in [("2025-01", datetime(2025, 1, 1, 9)), ("2025-02", datetime(2025, 2, 1, 9))]:
        start_executing(db_session, label, rate_service, start)
        complete(db_session, label, rate_service, start + timedelta(days=27))

    assert [c.month_label for c in get_history(db_session)] == ["2025-02", "2025-01"]
    assert [c.month_label for c in get_history(db_session, page_size=1, offset=1)] == ["2025-01"]

def test_flex_changes_only_while_draft(db_session, rate_service, test_goal):
    record = get_or_create_record(db_session, MONTH, MONTH_START)
    commit_flex_adjustment(db_session, record, FlexAdjustmentRequest(factor=0.5, strategy=RedistributionStrategy.BALANCED))
    plan = get_current_plan(db_session, MONTH, rate_service, MONTH_START)
    assert plan.total_planned == pytest.approx(300.0)

    record = start_executing(db_session, MONTH, rate_service, MONTH_START)
    assert record.snapshot.total_planned == pytest.approx(300.0)
    with pytest.raises(InvalidTransition):
        apply_quick_action(db_session, record, QuickAction.PAY_EXACT)

def test_skip_month_quick_action(db_session, rate_service, test_goal):
    other = make_goal(db_session, "Vacation", 900.0, date(2025, 5, 30))
    record = get_or_create_record(db_session, MONTH, MONTH_START)

    apply_quick_action(db_session, record, QuickAction.SKIP_MONTH)
    plan = get_current_plan(db_session, MONTH, rate_service, MONTH_START)
    assert plan.total_planned == 0.0

    apply_quick_action(db_session, record, QuickAction.RESET)
    plan = get_current_plan(db_session, MONTH, rate_service, MONTH_START)
    planned = {r.requirement.goal_id: r.adjusted_amount for r in plan.requirements}
    assert planned[test_goal.id] == pytest.approx(600.0)
    assert planned[other.id] == pytest.approx(300.0)

def test_automation_rolls_months_over(db_session, rate_service, test_goal):
    start_executing(db_session, MONTH, rate_service, MONTH_START)

    actions = run_automation(db_session, rate_service, datetime(2025, 3, 15, 8, 0))
    assert actions == []

    actions = run_automation(db_session, rate_service, datetime(2025, 4, 1, 0, 5))
    assert actions == [
        {"month_label": "2025-03", "action": "completed"},
        {"month_label": "2025-04", "action": "started"},
    ]
    assert execution_service.find_closed_record(db_session, "2025-03") is not None
    assert execution_service.find_open_record(db_session, "2025-04").status == ExecutionStatus.EXECUTING.value

def test_automation_completes_on_last_day(db_session, rate_service, test_goal):
    start_executing(db_session, MONTH, rate_service, MONTH_START)
    actions = run_automation(db_session, rate_service, datetime(2025, 3, 31, 20, 0))
    assert actions == [{"month_label": MONTH, "action": "completed"}]

def test_closed_month_ignores_back_dated_deposits(db_session, rate_service, test_goal, dedicated_asset):
    start_executing(db_session, MONTH, rate_service, MONTH_START)
    record_transaction(db_session, dedicated_asset.id, 300.0, MONTH_START + timedelta(hours=1))
    record = complete(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=3))

    # Lands inside the closed month's window after it was frozen
    record_transaction(db_session, dedicated_asset.id, 300.0, MONTH_START + timedelta(hours=2))

    progress = get_progress(db_session, MONTH, rate_service, MONTH_START + timedelta(days=1))
    assert progress.frozen
    assert progress.goals[0].contributed == pytest.approx(300.0)
    assert progress.goals[0].contributed == pytest.approx(record.completed_execution.goal_snapshots[0]["actual_amount"])
    assert progress.total_contributed == pytest.approx(300.0)
    assert len(progress.contributions) == 1

def test_closed_month_gets_no_new_draft(db_session, rate_service, test_goal):
    start_executing(db_session, MONTH, rate_service, MONTH_START)
    complete(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=1))

    with pytest.raises(InvalidTransition):
        get_or_create_record(db_session, MONTH, MONTH_START + timedelta(hours=2))
    assert db_session.query(ExecutionRecord).count() == 1

    record = undo(db_session, MONTH, MONTH_START + timedelta(hours=2))
    assert record.status == ExecutionStatus.EXECUTING.value

def test_plan_keeps_goals_closed_after_start(db_session, rate_service, test_goal):
    other = make_goal(db_session, "Vacation", 900.0, date(2025, 5, 30))
    start_executing(db_session, MONTH, rate_service, MONTH_START)
    finish_goal(db_session, other.id)

    plan = get_current_plan(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=1))
    planned = {r.requirement.goal_id: r.adjusted_amount for r in plan.requirements}
    assert planned == {test_goal.id: pytest.approx(600.0), other.id: pytest.approx(300.0)}
    assert sum(planned.values()) == pytest.approx(plan.total_planned)
    assert plan.total_planned == pytest.approx(900.0)

    finished = next(r for r in plan.requirements if r.requirement.goal_id == other.id)
    assert finished.requirement.goal_name == "Vacation"
    assert finished.original_amount == pytest.approx(300.0)

def test_complete_refused_without_rates(db_session, rate_service, test_goal):
    wallet = make_asset(db_session, "Meme wallet", "DOGE")
    set_allocation(db_session, wallet.id, test_goal.id, 0.0, MONTH_START - timedelta(days=1))
    start_executing(db_session, MONTH, rate_service, MONTH_START)
    record_transaction(db_session, wallet.id, 10.0, MONTH_START + timedelta(hours=1))

    with pytest.raises(RateUnavailable) as excinfo:
        complete(db_session, MONTH, rate_service, MONTH_START + timedelta(hours=2))
    assert "DOGE->USD" in excinfo.value.message

    db_session.expire_all()
    assert execution_service.find_open_record(db_session, MONTH).status == ExecutionStatus.EXECUTING.value
    assert db_session.query(CompletedExecution).count() == 0

def _run_concurrently(db_engine, count, work):
    """Run `work(session)` on `count` threads released together; returns (results, errors)"""
    Session = sessionmaker(bind=db_engine, autocommit=False, autoflush=False)
    barrier = threading.Barrier(count)
    results, errors = [], []
    guard = threading.Lock()

    def worker():
        session = Session()
        try:
            barrier.wait()
            value = work(session)
            with guard:
                results.append(value)
        except Exception as e:
            with guard:
                errors.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results, errors

def test_concurrent_views_share_one_draft(db_engine, db_session, test_goal):
    ids, errors = _run_concurrently(
        db_engine, 8, lambda session: get_or_create_record(session, MONTH, MONTH_START).id
    )

    assert errors == []
    assert len(ids) == 8
    assert len(set(ids)) == 1
    assert db_session.query(ExecutionRecord).count() == 1

def test_concurrent_starts_capture_one_snapshot(db_engine, db_session, rate_service, test_goal):
    started, errors = _run_concurrently(
        db_engine, 6, lambda session: start_executing(session, MONTH, rate_service, MONTH_START).id
    )

    assert len(started) == 1
    assert len(errors) == 5
    assert all(isinstance(e, InvalidTransition) for e in errors)
    assert db_session.query(ExecutionRecord).count() == 1
    assert db_session.query(ExecutionSnapshot).count() == 1
