import json
from datetime import date
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from src.api.main import app
from src.api.persistence_profile import validate_persistence_profile_guardrails
from src.api.routers import automation_config
from src.api.routers.automation import (
    get_automation_scheduler,
    reset_automation_runtime_for_tests,
)
from src.api.routers.automation_config import (
    automation_store_backend_name,
    scheduler_interval_seconds,
)
from src.infrastructure.collaborators import InMemoryOrderSink
from tests.factories import FixedClock

SCHEME_CATALOG = {
    "sch_eq_01": {"name": "Lotus Bluechip Equity Fund", "nav": "25", "category": "Equity"},
    "sch_debt_01": {"name": "Lotus Short Duration Fund", "nav": "10", "category": "Debt"},
    "sch_thematic_01": {
        "name": "Lotus Frontier Themes Fund",
        "nav": "40",
        "category": "Equity",
        "is_whitelisted": False,
    },
}
ACTOR = {"X-Actor-Id": "rm_007"}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("AUTOMATION_SCHEME_CATALOG_JSON", json.dumps(SCHEME_CATALOG))
    reset_automation_runtime_for_tests(clock=FixedClock(date(2025, 2, 5)))
    with TestClient(app) as test_client:
        yield test_client


def _auto_invest_payload(**overrides):
    payload = {
        "client_id": "cl_001",
        "name": "Monthly equity SIP",
        "scheme_id": "sch_eq_01",
        "amount": "5000",
        "frequency": "Monthly",
        "start_date": "2025-02-05",
    }
    payload.update(overrides)
    return payload


def _create_auto_invest(client, **overrides):
    response = client.post(
        "/automation/auto-invest", json=_auto_invest_payload(**overrides), headers=ACTOR
    )
    assert response.status_code == 201
    return response.json()


def test_create_auto_invest_rule_resolves_scheme_and_schedule(client):
    body = _create_auto_invest(client)

    assert body["id"].startswith("AUTO-20250205-")
    assert body["scheme_name"] == "Lotus Bluechip Equity Fund"
    assert body["next_execution_date"] == "2025-02-05"
    assert body["status"] == "Active"
    assert body["created_by"] == "rm_007"

    fetched = client.get(f"/automation/auto-invest/{body['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["id"] == body["id"]

    listed = client.get("/automation/auto-invest", params={"client_id": "cl_001"})
    assert [item["id"] for item in listed.json()["items"]] == [body["id"]]


def test_create_requires_actor_header(client):
    response = client.post("/automation/auto-invest", json=_auto_invest_payload())
    assert response.status_code == 422


def test_create_rejects_invalid_rule(client):
    response = client.post(
        "/automation/auto-invest",
        json=_auto_invest_payload(amount="5000", max_per_execution="1000"),
        headers=ACTOR,
    )
    assert response.status_code == 422
    assert "AMOUNT_EXCEEDS_MAX_PER_EXECUTION" in response.text


def test_unknown_rule_returns_not_found(client):
    assert client.get("/automation/auto-invest/AUTO-UNKNOWN").status_code == 404
    assert client.get("/automation/trigger-orders/TRIGGER-UNKNOWN").status_code == 404


def test_manual_execution_submits_order_and_records_history(client):
    rule = _create_auto_invest(client)

    executed = client.post(f"/automation/scheduler/auto-invest/{rule['id']}/execute")
    assert executed.status_code == 200
    result = executed.json()
    assert result["outcome"] == "Executed"
    assert result["success"] is True
    assert len(result["order_ids"]) == 1

    logs = client.get("/automation/execution-logs", params={"automation_id": rule["id"]})
    assert logs.status_code == 200
    entries = logs.json()["items"]
    assert [entry["status"] for entry in entries] == ["Success"]
    assert entries[0]["order_id"] == result["order_ids"][0]

    history = client.get("/orders/history", params={"client_id": "cl_001"})
    orders = history.json()["items"]
    assert len(orders) == 1
    assert orders[0]["order_id"] == result["order_ids"][0]
    assert Decimal(orders[0]["amount"]) == Decimal("5000.00")
    assert Decimal(orders[0]["units"]) == Decimal("200.0000")

    refreshed = client.get(f"/automation/auto-invest/{rule['id']}").json()
    assert refreshed["next_execution_date"] == "2025-03-05"
    assert refreshed["execution_count"] == 1

    repeated = client.post(f"/automation/scheduler/auto-invest/{rule['id']}/execute")
    assert repeated.json()["outcome"] == "NotDue"


def test_delete_is_blocked_once_rule_has_history(client):
    executed_rule = _create_auto_invest(client)
    idle_rule = _create_auto_invest(client, start_date="2025-03-01")
    client.post(f"/automation/scheduler/auto-invest/{executed_rule['id']}/execute")

    blocked = client.delete(f"/automation/auto-invest/{executed_rule['id']}")
    deleted = client.delete(f"/automation/auto-invest/{idle_rule['id']}")

    assert blocked.status_code == 409
    assert deleted.status_code == 204
    assert client.get(f"/automation/auto-invest/{idle_rule['id']}").status_code == 404


def test_paused_rule_is_not_executed(client):
    rule = _create_auto_invest(client)

    paused = client.put(f"/automation/auto-invest/{rule['id']}", json={"status": "Paused"})
    assert paused.status_code == 200
    assert paused.json()["status"] == "Paused"
    assert paused.json()["version"] == 2

    skipped = client.post(f"/automation/scheduler/auto-invest/{rule['id']}/execute")
    assert skipped.json()["outcome"] == "NotDue"


def test_trigger_order_lifecycle(client):
    created = client.post(
        "/automation/trigger-orders",
        json={
            "client_id": "cl_001",
            "name": "Buy the dip",
            "trigger_type": "NAV",
            "trigger_condition": "Less Than",
            "trigger_value": "30",
            "order_type": "Purchase",
            "scheme_id": "sch_eq_01",
            "amount": "10000",
            "valid_from": "2025-02-01",
            "valid_until": "2025-06-30",
        },
        headers=ACTOR,
    )
    assert created.status_code == 201
    order_id = created.json()["id"]

    checked = client.post("/automation/scheduler/trigger-orders/check")
    assert checked.status_code == 200
    assert checked.json()["executed"] == 1

    refreshed = client.get(f"/automation/trigger-orders/{order_id}").json()
    assert refreshed["status"] == "Executed"
    conflict = client.put(f"/automation/trigger-orders/{order_id}", json={"name": "Again"})
    assert conflict.status_code == 409


def test_switch_calculation_returns_decimal_strings(client):
    response = client.post(
        "/orders/switch/calculate",
        json={
            "source_scheme_id": "sch_eq_01",
            "target_scheme_id": "sch_debt_01",
            "amount": "100000",
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    data = body["data"]
    assert isinstance(data["net_amount"], str)
    assert Decimal(data["source_units"]) == Decimal("4000")
    assert Decimal(data["exit_load_amount"]) == Decimal("1000")
    assert Decimal(data["target_units"]) == Decimal("9900")


def test_switch_calculation_reports_unknown_scheme(client):
    response = client.post(
        "/orders/switch/calculate",
        json={
            "source_scheme_id": "sch_missing",
            "target_scheme_id": "sch_debt_01",
            "units": "10",
        },
    )

    assert response.status_code == 200
    assert response.json()["success"] is False
    assert response.json()["errors"] == ["SCHEME_NOT_FOUND"]


def test_instant_redemption_eligibility(client):
    within = client.post(
        "/orders/redemption/instant-eligibility",
        json={"scheme_id": "sch_eq_01", "amount": "25000"},
    ).json()
    above = client.post(
        "/orders/redemption/instant-eligibility",
        json={"scheme_id": "sch_eq_01", "amount": "60000"},
    ).json()

    assert within["data"]["eligible"] is True
    assert above["success"] is True
    assert above["data"]["eligible"] is False
    assert above["data"]["reason"] == "Amount exceeds instant redemption limit of ₹50,000"


def test_compliance_check_resolves_schemes_from_catalog(client):
    response = client.post(
        "/orders/compliance/check",
        json={
            "order_lines": [{"scheme_id": "sch_thematic_01", "amount": "10000"}],
            "opt_out_of_nomination": True,
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["message"] == "Compliance check failed"
    assert any("Lotus Frontier Themes Fund" in error for error in body["errors"])


def test_scheduler_controls(client):
    status = client.get("/automation/scheduler/status").json()
    assert status["is_running"] is False
    assert status["interval_seconds"] == 3600.0

    started = client.post("/automation/scheduler/start").json()
    assert started["is_running"] is True

    stopped = client.post("/automation/scheduler/stop").json()
    assert stopped["is_running"] is False

    manual_pass = client.post("/automation/scheduler/execute")
    assert manual_pass.status_code == 200
    assert [category["automation_type"] for category in manual_pass.json()["categories"]] == [
        "AutoInvest",
        "Rebalancing",
        "TriggerOrder",
    ]


def test_shutdown_stops_scheduler_and_closes_order_sink(monkeypatch):
    class _ClosingSink(InMemoryOrderSink):
        closed = False

        async def close(self) -> None:
            self.closed = True

    sink = _ClosingSink()
    monkeypatch.setattr(automation_config, "build_order_sink", lambda: sink)
    reset_automation_runtime_for_tests(clock=FixedClock(date(2025, 2, 5)))

    with TestClient(app) as test_client:
        assert test_client.post("/automation/scheduler/start").json()["is_running"] is True
        scheduler = get_automation_scheduler()

    assert sink.closed is True
    assert scheduler.is_running() is False


def test_readiness_reports_backends(client):
    response = client.get("/health/ready")

    assert response.status_code == 200
    assert response.json() == {
        "status": "ready",
        "persistence_profile": "LOCAL",
        "automation_store_backend": "POSTGRES",
    }


def test_scheduler_interval_is_read_in_milliseconds(monkeypatch):
    monkeypatch.setenv("AUTOMATION_CHECK_INTERVAL", "60000")
    assert scheduler_interval_seconds() == 60.0

    monkeypatch.setenv("AUTOMATION_CHECK_INTERVAL", "often")
    assert scheduler_interval_seconds() == 3600.0


@pytest.mark.parametrize(
    ("value", "expected"),
    [("sqlite", "SQL"), ("SQL", "SQL"), ("postgres", "POSTGRES"), ("memory", "IN_MEMORY")],
)
def test_store_backend_names(monkeypatch, value, expected):
    monkeypatch.setenv("AUTOMATION_STORE_BACKEND", value)
    assert automation_store_backend_name() == expected


def test_production_profile_requires_http_order_sink(monkeypatch):
    monkeypatch.setenv("APP_PERSISTENCE_PROFILE", "PRODUCTION")
    with pytest.raises(RuntimeError, match="PERSISTENCE_PROFILE_REQUIRES_HTTP_ORDER_SINK"):
        validate_persistence_profile_guardrails()

    monkeypatch.setenv("AUTOMATION_ORDER_SINK_BACKEND", "HTTP")
    with pytest.raises(RuntimeError, match="PERSISTENCE_PROFILE_REQUIRES_ORDER_SINK_URL"):
        validate_persistence_profile_guardrails()

    monkeypatch.setenv("AUTOMATION_ORDER_SINK_URL", "http://oms.local/orders")
    validate_persistence_profile_guardrails()


def test_production_profile_requires_postgres_store(monkeypatch):
    monkeypatch.setenv("APP_PERSISTENCE_PROFILE", "PRODUCTION")
    monkeypatch.setenv("AUTOMATION_STORE_BACKEND", "IN_MEMORY")
    with pytest.raises(RuntimeError, match="PERSISTENCE_PROFILE_REQUIRES_AUTOMATION_POSTGRES"):
        validate_persistence_profile_guardrails()
