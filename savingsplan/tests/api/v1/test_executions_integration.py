import pytest
from datetime import timedelta

from savingsplan.app.models.models import utcnow
from savingsplan.app.utils.dates import month_label


@pytest.fixture
def month():
    return month_label()

@pytest.fixture
def funded_goal(client):
    """USD goal with a dedicated asset already holding 100"""
    goal = client.post("/api/v1/goals/", json={
        "name": "Emergency Fund",
        "target_amount": 600,
        "currency": "USD",
        "deadline": (utcnow() + timedelta(days=90)).date().isoformat()
    }).json()
    asset = client.post("/api/v1/assets/", json={"name": "Savings Account", "currency": "USD"}).json()
    client.put(f"/api/v1/assets/{asset['id']}/allocations/{goal['id']}", json={"amount": 0})
    client.post(f"/api/v1/assets/{asset['id']}/transactions", json={"amount": 100})
    return goal, asset


def test_draft_plan_and_flex(client, funded_goal, month):
    goal, _ = funded_goal

    plan = client.get(f"/api/v1/plans/{month}").json()
    assert plan["status"] == "draft"
    requirement = plan["requirements"][0]["requirement"]
    assert requirement["goal_id"] == goal["id"]
    assert requirement["current_total"] == pytest.approx(100)
    full = plan["total_planned"]

    preview = client.post("/api/v1/plans/flex/preview", json={"factor": 0.5}).json()
    assert preview["total_adjusted"] == pytest.approx(full / 2)

    halved = client.post(f"/api/v1/plans/{month}/flex", json={"factor": 0.5}).json()
    assert halved["adjustment_factor"] == 0.5
    assert halved["total_planned"] == pytest.approx(full / 2)

    reset = client.post(f"/api/v1/plans/{month}/quick-actions/reset").json()
    assert reset["adjustment_factor"] == 1.0
    assert reset["total_planned"] == pytest.approx(full)

def test_protected_goal_preference(client, funded_goal, month):
    goal, _ = funded_goal
    response = client.put(f"/api/v1/plans/preferences/{goal['id']}", json={"flex_state": "protected"})
    assert response.status_code == 200
    assert response.json()["flex_state"] == "protected"

    plan = client.post(f"/api/v1/plans/{month}/quick-actions/pay_half").json()
    assert plan["requirements"][0]["flex_state"] == "protected"
    assert plan["requirements"][0]["adjusted_amount"] == pytest.approx(plan["requirements"][0]["original_amount"])

def test_month_lifecycle(client, funded_goal, month):
    goal, asset = funded_goal
    planned = client.get(f"/api/v1/plans/{month}").json()["total_planned"]

    started = client.post(f"/api/v1/executions/{month}/start")
    assert started.status_code == 200
    assert started.json()["status"] == "executing"
    assert started.json()["undo_deadline"] is not None

    # Plan is locked once the month is executing
    locked = client.post(f"/api/v1/plans/{month}/flex", json={"factor": 0.5})
    assert locked.status_code == 409
    assert locked.json()["error"] == "invalid_transition"

    client.post(f"/api/v1/assets/{asset['id']}/transactions", json={"amount": 50})

    progress = client.get(f"/api/v1/executions/{month}/progress").json()
    assert progress["status"] == "executing"
    assert progress["total_planned"] == pytest.approx(planned)
    assert progress["goals"][0]["contributed"] == pytest.approx(50)
    assert not progress["frozen"]

    recalculated = client.post(f"/api/v1/executions/{month}/recalculate").json()
    assert recalculated["unfulfilled_goal_ids"] == [goal["id"]]

    closed = client.post(f"/api/v1/executions/{month}/complete").json()
    assert closed["status"] == "closed"

    progress = client.get(f"/api/v1/executions/{month}/progress").json()
    assert progress["frozen"]
    assert progress["goals"][0]["contributed"] == pytest.approx(50)

    history = client.get("/api/v1/executions/history").json()
    assert len(history) == 1
    assert history[0]["month_label"] == month
    assert history[0]["goal_snapshots"][0]["actual_amount"] == pytest.approx(50)
    assert [event["source"] for event in history[0]["contributions"]] == ["balance_change"]

    again = client.post(f"/api/v1/executions/{month}/start")
    assert again.status_code == 409

    # A closed month takes no plan edits and keeps its single record
    edit = client.post(f"/api/v1/plans/{month}/quick-actions/pay_half")
    assert edit.status_code == 409
    assert edit.json()["error"] == "invalid_transition"
    assert client.get(f"/api/v1/plans/{month}").json()["status"] == "closed"

    assert client.post(f"/api/v1/executions/{month}/undo").json()["status"] == "executing"
    assert client.get("/api/v1/executions/history").json() == []
    assert client.post(f"/api/v1/executions/{month}/undo").json()["status"] == "draft"

    response = client.post(f"/api/v1/executions/{month}/undo")
    assert response.status_code == 409
    assert response.json()["error"] == "invalid_transition"

def test_complete_requires_executing_month(client, funded_goal, month):
    response = client.post(f"/api/v1/executions/{month}/complete")
    assert response.status_code == 409

def test_progress_without_record(client):
    assert client.get("/api/v1/executions/2020-01/progress").status_code == 404

def test_invalid_month_label(client):
    assert client.get("/api/v1/plans/2025-13").status_code == 400
    assert client.post("/api/v1/executions/march/start").status_code == 400
