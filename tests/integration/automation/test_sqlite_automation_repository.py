from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from src.core.automation.models import ExecutionLogRecord
from src.core.automation.repository import StorageError
from src.core.orders.models import SubmittedOrderRecord
from src.infrastructure.automation import SqliteAutomationRepository
from tests.factories import CREATED_AT, auto_invest_rule, rebalancing_rule, trigger_order


@pytest.fixture
def repository(tmp_path):
    return SqliteAutomationRepository(database_path=str(tmp_path / "automation" / "rules.db"))


def _log(log_id: str, *, automation_id: str, minutes: int, status: str = "Success"):
    executed_at = CREATED_AT + timedelta(minutes=minutes)
    return ExecutionLogRecord(
        id=log_id,
        automation_type="AutoInvest",
        automation_id=automation_id,
        client_id="cl_001",
        execution_date=executed_at,
        status=status,
        details={"amount": "5000.00"},
        created_at=executed_at,
    )


def _submitted(order_id: str, *, order_type: str = "Purchase", minutes: int = 0):
    return SubmittedOrderRecord(
        order_id=order_id,
        client_id="cl_001",
        order_type=order_type,
        scheme_id="sch_eq_01",
        amount=Decimal("5000.00"),
        units=Decimal("200.0000"),
        nav=Decimal("25"),
        automation_type="AutoInvest",
        automation_id="AUTO-20250105-0000000001",
        submitted_at=datetime(2025, 2, 5, 9, minutes, tzinfo=UTC),
    )


def test_rules_round_trip_per_category(repository):
    repository.create_rule(auto_invest_rule())
    repository.create_rule(rebalancing_rule())
    repository.create_rule(trigger_order())

    stored = repository.get_rule(automation_type="AutoInvest", rule_id="AUTO-20250105-0000000001")
    assert stored == auto_invest_rule()
    assert repository.get_rule(
        automation_type="Rebalancing", rule_id="REBAL-20250105-0000000001"
    ).target_allocation == {"Equity": Decimal("60"), "Debt": Decimal("40")}
    assert (
        repository.get_rule(automation_type="AutoInvest", rule_id="REBAL-20250105-0000000001")
        is None
    )


def test_duplicate_rule_id_is_rejected(repository):
    repository.create_rule(auto_invest_rule())
    with pytest.raises(StorageError, match="AUTOMATION_RULE_ALREADY_EXISTS"):
        repository.create_rule(auto_invest_rule())


def test_list_rules_filters_and_orders_newest_first(repository):
    repository.create_rule(auto_invest_rule())
    repository.create_rule(
        auto_invest_rule(
            id="AUTO-20250106-0000000002",
            created_at=CREATED_AT + timedelta(days=1),
            status="Paused",
        )
    )
    repository.create_rule(auto_invest_rule(id="AUTO-20250105-0000000003", client_id="cl_002"))

    all_rules = repository.list_rules(automation_type="AutoInvest", client_id="cl_001", status=None)
    paused = repository.list_rules(automation_type="AutoInvest", client_id=None, status="Paused")

    assert [rule.id for rule in all_rules] == [
        "AUTO-20250106-0000000002",
        "AUTO-20250105-0000000001",
    ]
    assert [rule.id for rule in paused] == ["AUTO-20250106-0000000002"]


def test_compare_and_set_requires_matching_version(repository):
    rule = auto_invest_rule()
    repository.create_rule(rule)

    claimed = rule.model_copy(update={"version": 2, "execution_count": 1})
    assert repository.compare_and_set_rule(claimed, expected_version=1) is True

    stale = rule.model_copy(update={"version": 2, "execution_count": 5})
    assert repository.compare_and_set_rule(stale, expected_version=1) is False

    stored = repository.get_rule(automation_type="AutoInvest", rule_id=rule.id)
    assert stored.version == 2
    assert stored.execution_count == 1


def test_delete_rule_reports_whether_a_row_was_removed(repository):
    repository.create_rule(trigger_order())

    assert repository.delete_rule(
        automation_type="TriggerOrder", rule_id="TRIGGER-20250105-0000000001"
    ) is True
    assert repository.delete_rule(
        automation_type="TriggerOrder", rule_id="TRIGGER-20250105-0000000001"
    ) is False


def test_execution_logs_are_newest_first_and_limited(repository):
    repository.append_execution_log(_log("LOG-1", automation_id="AUTO-A", minutes=0))
    repository.append_execution_log(
        _log("LOG-2", automation_id="AUTO-A", minutes=5, status="Failed")
    )
    repository.append_execution_log(_log("LOG-3", automation_id="AUTO-B", minutes=10))

    logs = repository.list_execution_logs(
        client_id="cl_001", automation_type=None, automation_id="AUTO-A", limit=100
    )
    latest = repository.list_execution_logs(
        client_id=None, automation_type="AutoInvest", automation_id=None, limit=1
    )

    assert [log.id for log in logs] == ["LOG-2", "LOG-1"]
    assert logs[0].status == "Failed"
    assert logs[0].details == {"amount": "5000.00"}
    assert [log.id for log in latest] == ["LOG-3"]
    assert repository.has_execution_history(automation_id="AUTO-A") is True
    assert repository.has_execution_history(automation_id="AUTO-C") is False


def test_orders_round_trip_with_filters(repository):
    repository.append_order(_submitted("ord_1", minutes=0))
    repository.append_order(_submitted("ord_2", order_type="Redemption", minutes=1))

    orders = repository.list_orders(client_id="cl_001", order_type=None, limit=10)
    redemptions = repository.list_orders(client_id=None, order_type="Redemption", limit=10)

    assert [order.order_id for order in orders] == ["ord_2", "ord_1"]
    assert orders[1].units == Decimal("200.0000")
    assert [order.order_id for order in redemptions] == ["ord_2"]


def test_data_survives_a_new_repository_instance(tmp_path):
    database_path = str(tmp_path / "rules.db")
    SqliteAutomationRepository(database_path=database_path).create_rule(auto_invest_rule())

    reopened = SqliteAutomationRepository(database_path=database_path)

    assert reopened.get_rule(
        automation_type="AutoInvest", rule_id="AUTO-20250105-0000000001"
    ) is not None
