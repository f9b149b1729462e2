from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Path, Query, status

from src.api.routers.automation import get_automation_scheduler
from src.core.automation import (
    AutomationScheduler,
    RuleExecutionResult,
    SchedulerPassResult,
    SchedulerStatusResponse,
)
from src.core.automation.models import CategoryPassResult

router = APIRouter(tags=["Automation Scheduler"])


@router.get(
    "/automation/scheduler/status",
    response_model=SchedulerStatusResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Scheduler Status",
    description="Running flag, interval and the outcome counts of the last pass.",
)
async def get_scheduler_status(
    scheduler: Annotated[AutomationScheduler, Depends(get_automation_scheduler)],
) -> SchedulerStatusResponse:
    return scheduler.status()


@router.post(
    "/automation/scheduler/start",
    response_model=SchedulerStatusResponse,
    status_code=status.HTTP_200_OK,
    summary="Start Scheduler",
    description="Starts periodic passes (first pass runs immediately). No-op when running.",
)
async def start_scheduler(
    scheduler: Annotated[AutomationScheduler, Depends(get_automation_scheduler)],
) -> SchedulerStatusResponse:
    await scheduler.start()
    return scheduler.status()


@router.post(
    "/automation/scheduler/stop",
    response_model=SchedulerStatusResponse,
    status_code=status.HTTP_200_OK,
    summary="Stop Scheduler",
    description="Stops periodic passes after any in-flight pass finishes. No-op when stopped.",
)
async def stop_scheduler(
    scheduler: Annotated[AutomationScheduler, Depends(get_automation_scheduler)],
) -> SchedulerStatusResponse:
    await scheduler.stop()
    return scheduler.status()


@router.post(
    "/automation/scheduler/execute",
    response_model=SchedulerPassResult,
    status_code=status.HTTP_200_OK,
    summary="Run Scheduler Pass",
    description="Runs one full pass over all rule categories immediately.",
)
async def execute_scheduler_pass(
    scheduler: Annotated[AutomationScheduler, Depends(get_automation_scheduler)],
) -> SchedulerPassResult:
    return await scheduler.run_pass(trigger="manual")


@router.post(
    "/automation/scheduler/auto-invest/{rule_id}/execute",
    response_model=RuleExecutionResult,
    status_code=status.HTTP_200_OK,
    summary="Execute Auto-Invest Rule",
    description="Evaluates one auto-invest rule through the scheduled path.",
)
async def execute_auto_invest_rule(
    rule_id: Annotated[
        str,
        Path(description="Auto-invest rule identifier.", examples=["AUTO-20250105-1A2B3C4D5E"]),
    ],
    scheduler: Annotated[AutomationScheduler, Depends(get_automation_scheduler)],
) -> RuleExecutionResult:
    return await scheduler.manual_execute_auto_invest(rule_id)


@router.post(
    "/automation/scheduler/rebalancing/{rule_id}/check",
    response_model=RuleExecutionResult,
    status_code=status.HTTP_200_OK,
    summary="Check Rebalancing Rule",
)
async def check_rebalancing_rule(
    rule_id: Annotated[
        str,
        Path(description="Rebalancing rule identifier.", examples=["REBAL-20250105-1A2B3C4D5E"]),
    ],
    scheduler: Annotated[AutomationScheduler, Depends(get_automation_scheduler)],
) -> RuleExecutionResult:
    return await scheduler.manual_check_rebalancing(rule_id)


@router.post(
    "/automation/scheduler/trigger-orders/check",
    response_model=CategoryPassResult,
    status_code=status.HTTP_200_OK,
    summary="Check Trigger Orders",
    description="Evaluates active trigger orders, optionally for one client.",
)
async def check_trigger_orders(
    scheduler: Annotated[AutomationScheduler, Depends(get_automation_scheduler)],
    client_id: Annotated[
        Optional[str], Query(description="Client filter.", examples=["cl_001"])
    ] = None,
) -> CategoryPassResult:
    return await scheduler.manual_check_triggers(client_id=client_id)
