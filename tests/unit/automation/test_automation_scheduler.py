import asyncio
from datetime import date

import pytest

from src.core.automation.repository import StorageError
from src.core.automation.scheduler import AutomationScheduler
from src.infrastructure.automation import InMemoryAutomationRepository
from tests.factories import (
    FixedClock,
    auto_invest_rule,
    build_pipeline,
    trigger_order,
)


class _RebalancingStoreDown(InMemoryAutomationRepository):
    def list_rules(self, *, automation_type, client_id, status):
        if automation_type == "Rebalancing":
            raise StorageError("AUTOMATION_STORE_UNAVAILABLE")
        return super().list_rules(
            automation_type=automation_type, client_id=client_id, status=status
        )


class _StoreDown(InMemoryAutomationRepository):
    def get_rule(self, *, automation_type, rule_id):
        raise StorageError("AUTOMATION_STORE_UNAVAILABLE")


def _scheduler(*, repository=None, interval_seconds: float = 3600.0):
    clock = FixedClock(date(2025, 2, 5))
    pipeline, repository, sink = build_pipeline(clock=clock, repository=repository)
    scheduler = AutomationScheduler(pipeline=pipeline, interval_seconds=interval_seconds)
    return scheduler, repository, sink


async def _wait_for_passes(scheduler: AutomationScheduler, count: int) -> None:
    for _ in range(200):
        if scheduler.status().pass_count >= count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("scheduler pass did not complete")


def test_interval_must_be_positive():
    pipeline, _, _ = build_pipeline(clock=FixedClock(date(2025, 2, 5)))
    with pytest.raises(ValueError, match="SCHEDULER_INTERVAL_MUST_BE_POSITIVE"):
        AutomationScheduler(pipeline=pipeline, interval_seconds=0)


@pytest.mark.asyncio
async def test_start_runs_first_pass_immediately_and_is_idempotent():
    scheduler, repository, sink = _scheduler()
    repository.create_rule(auto_invest_rule())

    await scheduler.start()
    await scheduler.start()
    await _wait_for_passes(scheduler, 1)

    status = scheduler.status()
    assert status.is_running is True
    assert status.pass_count == 1
    assert status.interval_seconds == 3600.0
    assert len(sink.submitted()) == 1

    await scheduler.stop()
    await scheduler.stop()
    assert scheduler.is_running() is False


@pytest.mark.asyncio
async def test_scheduler_can_restart_after_stop():
    scheduler, _, _ = _scheduler(interval_seconds=0.01)

    await scheduler.start()
    await _wait_for_passes(scheduler, 2)
    await scheduler.stop()
    stopped_count = scheduler.status().pass_count

    await scheduler.start()
    await _wait_for_passes(scheduler, stopped_count + 1)
    await scheduler.stop()

    assert scheduler.is_running() is False


@pytest.mark.asyncio
async def test_category_failure_does_not_block_other_categories():
    scheduler, repository, sink = _scheduler(repository=_RebalancingStoreDown())
    repository.create_rule(auto_invest_rule())
    repository.create_rule(trigger_order())

    result = await scheduler.run_pass(trigger="manual")

    by_type = {category.automation_type: category for category in result.categories}
    assert by_type["Rebalancing"].error == "StorageError: AUTOMATION_STORE_UNAVAILABLE"
    assert by_type["AutoInvest"].executed == 1
    assert by_type["TriggerOrder"].executed == 1
    assert len(sink.submitted()) == 2
    assert scheduler.status().last_pass == result


@pytest.mark.asyncio
async def test_manual_entry_points_report_failures_instead_of_raising():
    scheduler, _, _ = _scheduler(repository=_StoreDown())

    auto_invest = await scheduler.manual_execute_auto_invest("AUTO-20250105-0000000001")
    rebalancing = await scheduler.manual_check_rebalancing("REBAL-20250105-0000000001")

    assert auto_invest.outcome == "Failed"
    assert auto_invest.success is False
    assert auto_invest.message == "StorageError: AUTOMATION_STORE_UNAVAILABLE"
    assert rebalancing.outcome == "Failed"


@pytest.mark.asyncio
async def test_manual_execute_for_unknown_rule_is_not_found():
    scheduler, _, _ = _scheduler()
    result = await scheduler.manual_execute_auto_invest("AUTO-UNKNOWN")
    assert result.outcome == "NotFound"


@pytest.mark.asyncio
async def test_manual_trigger_check_filters_by_client():
    scheduler, repository, sink = _scheduler()
    repository.create_rule(trigger_order())
    repository.create_rule(trigger_order(id="TRIGGER-20250105-0000000002", client_id="cl_002"))

    result = await scheduler.manual_check_triggers(client_id="cl_002")

    assert result.evaluated == 1
    assert result.results[0].rule_id == "TRIGGER-20250105-0000000002"
    assert len(sink.submitted()) == 1
