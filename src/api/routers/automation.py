from typing import Annotated, Literal, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Response, status
from pydantic import BaseModel, Field

from src.api.routers import automation_config as config
from src.api.routers.automation_http_errors import raise_automation_http_exception
from src.core.automation import (
    AutoInvestRule,
    AutoInvestRuleCreateRequest,
    AutoInvestRuleUpdateRequest,
    AutomationPipeline,
    AutomationRuleError,
    AutomationRuleService,
    AutomationScheduler,
    AutomationType,
    RebalancingRule,
    RebalancingRuleCreateRequest,
    RebalancingRuleUpdateRequest,
    RuleExecutionResult,
    StorageError,
    TriggerOrder,
    TriggerOrderCreateRequest,
    TriggerOrderUpdateRequest,
)
from src.core.automation.collaborators import Clock, SystemClock
from src.core.automation.models import AutomationRuleListResponse, ExecutionLogListResponse
from src.core.common.async_calls import CollaboratorTimeoutError
from src.core.compliance import ComplianceEngine
from src.core.orders import OrderCalculator

router = APIRouter(tags=["Automation Rules"])

_CLOCK: Clock = SystemClock()
_REPOSITORY = None
_SCHEME_CATALOG = None
_SERVICE: Optional[AutomationRuleService] = None
_CALCULATOR: Optional[OrderCalculator] = None
_PIPELINE: Optional[AutomationPipeline] = None
_SCHEDULER: Optional[AutomationScheduler] = None

_ActorId = Annotated[
    str,
    Header(
        alias="X-Actor-Id",
        description="Actor recorded as the rule creator.",
        examples=["rm_007"],
    ),
]
_RuleId = Annotated[
    str,
    Path(description="Automation rule identifier.", examples=["AUTO-20250105-1A2B3C4D5E"]),
]
_ClientFilter = Annotated[
    Optional[str], Query(description="Client filter.", examples=["cl_001"])
]


class RebalancingConfirmationRequest(BaseModel):
    confirmed_by: str = Field(
        min_length=1,
        description="Operator confirming the proposed rebalance.",
        examples=["rm_007"],
    )


def get_clock() -> Clock:
    return _CLOCK


def _get_repository():
    global _REPOSITORY
    if _REPOSITORY is None:
        _REPOSITORY = config.build_repository()
    return _REPOSITORY


def _get_scheme_catalog():
    global _SCHEME_CATALOG
    if _SCHEME_CATALOG is None:
        _SCHEME_CATALOG = config.build_scheme_catalog()
    return _SCHEME_CATALOG


def get_order_calculator() -> OrderCalculator:
    global _CALCULATOR
    if _CALCULATOR is None:
        _CALCULATOR = OrderCalculator(
            scheme_lookup=_get_scheme_catalog(),
            timeout_seconds=config.collaborator_timeout_seconds(),
        )
    return _CALCULATOR


def get_automation_rule_service() -> AutomationRuleService:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = AutomationRuleService(
            repository=_get_repository(),
            clock=_CLOCK,
            scheme_lookup=_get_scheme_catalog(),
            goal_lookup=config.build_goal_catalog(),
            timeout_seconds=config.collaborator_timeout_seconds(),
        )
    return _SERVICE


def get_automation_pipeline() -> AutomationPipeline:
    global _PIPELINE
    if _PIPELINE is None:
        scheme_catalog = _get_scheme_catalog()
        _PIPELINE = AutomationPipeline(
            repository=_get_repository(),
            calculator=get_order_calculator(),
            compliance_engine=ComplianceEngine(),
            order_sink=config.build_order_sink(),
            clock=_CLOCK,
            goal_lookup=config.build_goal_catalog(),
            market_data=scheme_catalog,
            portfolio_provider=config.build_portfolio_snapshots(),
            client_profiles=config.build_client_profiles(),
            timeout_seconds=config.collaborator_timeout_seconds(),
        )
    return _PIPELINE


def get_automation_scheduler() -> AutomationScheduler:
    global _SCHEDULER
    if _SCHEDULER is None:
        _SCHEDULER = AutomationScheduler(
            pipeline=get_automation_pipeline(),
            interval_seconds=config.scheduler_interval_seconds(),
            clock=_CLOCK,
        )
    return _SCHEDULER


async def close_automation_runtime() -> None:
    """Stop the scheduler and release the order sink; the next request rebuilds both."""
    global _PIPELINE
    global _SCHEDULER
    scheduler, pipeline = _SCHEDULER, _PIPELINE
    _PIPELINE = None
    _SCHEDULER = None
    if scheduler is not None:
        await scheduler.stop()
    if pipeline is not None:
        await pipeline.close()


def reset_automation_runtime_for_tests(*, clock: Optional[Clock] = None) -> None:
    global _CLOCK
    global _REPOSITORY
    global _SCHEME_CATALOG
    global _SERVICE
    global _CALCULATOR
    global _PIPELINE
    global _SCHEDULER
    _CLOCK = clock or SystemClock()
    _REPOSITORY = config.build_repository()
    _SCHEME_CATALOG = None
    _SERVICE = None
    _CALCULATOR = None
    _PIPELINE = None
    _SCHEDULER = None


@router.post(
    "/automation/auto-invest",
    response_model=AutoInvestRule,
    status_code=status.HTTP_201_CREATED,
    summary="Create Auto-Invest Rule",
    description=(
        "Creates a recurring investment rule. The first execution date is computed from the "
        "frequency and anchor day, counting the start date itself as eligible."
    ),
)
async def create_auto_invest_rule(
    payload: AutoInvestRuleCreateRequest,
    created_by: _ActorId,
    service: Annotated[AutomationRuleService, Depends(get_automation_rule_service)],
) -> AutoInvestRule:
    try:
        return await service.create_auto_invest(payload=payload, created_by=created_by)
    except (AutomationRuleError, StorageError, CollaboratorTimeoutError) as exc:
        raise_automation_http_exception(exc)


@router.get(
    "/automation/auto-invest",
    response_model=AutomationRuleListResponse,
    status_code=status.HTTP_200_OK,
    summary="List Auto-Invest Rules",
    description="Lists auto-invest rules, newest first.",
)
async def list_auto_invest_rules(
    service: Annotated[AutomationRuleService, Depends(get_automation_rule_service)],
    client_id: _ClientFilter = None,
    rule_status: Annotated[
        Optional[str],
        Query(alias="status", description="Rule status filter.", examples=["Active"]),
    ] = None,
) -> AutomationRuleListResponse:
    return await _list_rules(service, "AutoInvest", client_id, rule_status)


@router.get(
    "/automation/auto-invest/{rule_id}",
    response_model=AutoInvestRule,
    status_code=status.HTTP_200_OK,
    summary="Get Auto-Invest Rule",
)
async def get_auto_invest_rule(
    rule_id: _RuleId,
    service: Annotated[AutomationRuleService, Depends(get_automation_rule_service)],
) -> AutoInvestRule:
    return await _get_rule(service, "AutoInvest", rule_id)


@router.put(
    "/automation/auto-invest/{rule_id}",
    response_model=AutoInvestRule,
    status_code=status.HTTP_200_OK,
    summary="Update Auto-Invest Rule",
    description=(
        "Applies a partial update. Changing frequency or trigger config recomputes the next "
        "execution date."
    ),
)
async def update_auto_invest_rule(
    rule_id: _RuleId,
    payload: AutoInvestRuleUpdateRequest,
    service: Annotated[AutomationRuleService, Depends(get_automation_rule_service)],
) -> AutoInvestRule:
    try:
        return await service.update_auto_invest(rule_id=rule_id, payload=payload)
    except (AutomationRuleError, StorageError, CollaboratorTimeoutError) as exc:
        raise_automation_http_exception(exc)


@router.delete(
    "/automation/auto-invest/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete Auto-Invest Rule",
    description="Deletes a rule with no execution history; otherwise returns 409.",
)
async def delete_auto_invest_rule(
    rule_id: _RuleId,
    service: Annotated[AutomationRuleService, Depends(get_automation_rule_service)],
) -> Response:
    return await _delete_rule(service, "AutoInvest", rule_id)


@router.post(
    "/automation/rebalancing",
    response_model=RebalancingRule,
    status_code=status.HTTP_201_CREATED,
    summary="Create Rebalancing Rule",
)
async def create_rebalancing_rule(
    payload: RebalancingRuleCreateRequest,
    created_by: _ActorId,
    service: Annotated[AutomationRuleService, Depends(get_automation_rule_service)],
) -> RebalancingRule:
    try:
        return await service.create_rebalancing(payload=payload, created_by=created_by)
    except (AutomationRuleError, StorageError, CollaboratorTimeoutError) as exc:
        raise_automation_http_exception(exc)


@router.get(
    "/automation/rebalancing",
    response_model=AutomationRuleListResponse,
    status_code=status.HTTP_200_OK,
    summary="List Rebalancing Rules",
)
async def list_rebalancing_rules(
    service: Annotated[AutomationRuleService, Depends(get_automation_rule_service)],
    client_id: _ClientFilter = None,
    rule_status: Annotated[
        Optional[str],
        Query(alias="status", description="Rule status filter.", examples=["Active"]),
    ] = None,
) -> AutomationRuleListResponse:
    return await _list_rules(service, "Rebalancing", client_id, rule_status)


@router.get(
    "/automation/rebalancing/{rule_id}",
    response_model=RebalancingRule,
    status_code=status.HTTP_200_OK,
    summary="Get Rebalancing Rule",
)
async def get_rebalancing_rule(
    rule_id: _RuleId,
    service: Annotated[AutomationRuleService, Depends(get_automation_rule_service)],
) -> RebalancingRule:
    return await _get_rule(service, "Rebalancing", rule_id)


@router.put(
    "/automation/rebalancing/{rule_id}",
    response_model=RebalancingRule,
    status_code=status.HTTP_200_OK,
    summary="Update Rebalancing Rule",
)
async def update_rebalancing_rule(
    rule_id: _RuleId,
    payload: RebalancingRuleUpdateRequest,
    service: Annotated[AutomationRuleService, Depends(get_automation_rule_service)],
) -> RebalancingRule:
    try:
        return await service.update_rebalancing(rule_id=rule_id, payload=payload)
    except (AutomationRuleError, StorageError, CollaboratorTimeoutError) as exc:
        raise_automation_http_exception(exc)


@router.delete(
    "/automation/rebalancing/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete Rebalancing Rule",
)
async def delete_rebalancing_rule(
    rule_id: _RuleId,
    service: Annotated[AutomationRuleService, Depends(get_automation_rule_service)],
) -> Response:
    return await _delete_rule(service, "Rebalancing", rule_id)


@router.post(
    "/automation/rebalancing/{rule_id}/check",
    response_model=RuleExecutionResult,
    status_code=status.HTTP_200_OK,
    summary="Check Rebalancing Rule",
    description=(
        "Evaluates one rebalancing rule through the same path as a scheduled pass. Rules that "
        "require confirmation record the proposed actions without submitting orders."
    ),
)
async def check_rebalancing_rule(
    rule_id: _RuleId,
    pipeline: Annotated[AutomationPipeline, Depends(get_automation_pipeline)],
) -> RuleExecutionResult:
    return await pipeline.check_rebalancing(rule_id)


@router.post(
    "/automation/rebalancing/{rule_id}/execute",
    response_model=RuleExecutionResult,
    status_code=status.HTTP_200_OK,
    summary="Execute Confirmed Rebalance",
    description="Submits the current rebalancing plan on operator confirmation.",
)
async def execute_rebalancing_rule(
    rule_id: _RuleId,
    payload: RebalancingConfirmationRequest,
    pipeline: Annotated[AutomationPipeline, Depends(get_automation_pipeline)],
) -> RuleExecutionResult:
    return await pipeline.execute_rebalancing(rule_id, confirmed_by=payload.confirmed_by)


@router.post(
    "/automation/trigger-orders",
    response_model=TriggerOrder,
    status_code=status.HTTP_201_CREATED,
    summary="Create Trigger Order",
)
async def create_trigger_order(
    payload: TriggerOrderCreateRequest,
    created_by: _ActorId,
    service: Annotated[AutomationRuleService, Depends(get_automation_rule_service)],
) -> TriggerOrder:
    try:
        return await service.create_trigger_order(payload=payload, created_by=created_by)
    except (AutomationRuleError, StorageError, CollaboratorTimeoutError) as exc:
        raise_automation_http_exception(exc)


@router.get(
    "/automation/trigger-orders",
    response_model=AutomationRuleListResponse,
    status_code=status.HTTP_200_OK,
    summary="List Trigger Orders",
)
async def list_trigger_orders(
    service: Annotated[AutomationRuleService, Depends(get_automation_rule_service)],
    client_id: _ClientFilter = None,
    rule_status: Annotated[
        Optional[str],
        Query(alias="status", description="Trigger order status filter.", examples=["Active"]),
    ] = None,
) -> AutomationRuleListResponse:
    return await _list_rules(service, "TriggerOrder", client_id, rule_status)


@router.get(
    "/automation/trigger-orders/{rule_id}",
    response_model=TriggerOrder,
    status_code=status.HTTP_200_OK,
    summary="Get Trigger Order",
)
async def get_trigger_order(
    rule_id: _RuleId,
    service: Annotated[AutomationRuleService, Depends(get_automation_rule_service)],
) -> TriggerOrder:
    return await _get_rule(service, "TriggerOrder", rule_id)


@router.put(
    "/automation/trigger-orders/{rule_id}",
    response_model=TriggerOrder,
    status_code=status.HTTP_200_OK,
    summary="Update Trigger Order",
    description="Updates an Active or Paused trigger order. Terminal orders return 409.",
)
async def update_trigger_order(
    rule_id: _RuleId,
    payload: TriggerOrderUpdateRequest,
    service: Annotated[AutomationRuleService, Depends(get_automation_rule_service)],
) -> TriggerOrder:
    try:
        return await service.update_trigger_order(rule_id=rule_id, payload=payload)
    except (AutomationRuleError, StorageError, CollaboratorTimeoutError) as exc:
        raise_automation_http_exception(exc)


@router.delete(
    "/automation/trigger-orders/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete Trigger Order",
)
async def delete_trigger_order(
    rule_id: _RuleId,
    service: Annotated[AutomationRuleService, Depends(get_automation_rule_service)],
) -> Response:
    return await _delete_rule(service, "TriggerOrder", rule_id)


@router.get(
    "/automation/execution-logs",
    response_model=ExecutionLogListResponse,
    status_code=status.HTTP_200_OK,
    summary="List Execution Logs",
    description="Append-only execution log, newest first.",
)
async def list_execution_logs(
    service: Annotated[AutomationRuleService, Depends(get_automation_rule_service)],
    client_id: _ClientFilter = None,
    automation_type: Annotated[
        Optional[Literal["AutoInvest", "Rebalancing", "TriggerOrder"]],
        Query(description="Automation type filter.", examples=["AutoInvest"]),
    ] = None,
    automation_id: Annotated[
        Optional[str],
        Query(description="Rule identifier filter.", examples=["AUTO-20250105-1A2B3C4D5E"]),
    ] = None,
    limit: Annotated[
        int, Query(description="Maximum entries.", ge=1, le=500, examples=[100])
    ] = 100,
) -> ExecutionLogListResponse:
    try:
        items = await service.list_execution_logs(
            client_id=client_id,
            automation_type=automation_type,
            automation_id=automation_id,
            limit=limit,
        )
    except (StorageError, CollaboratorTimeoutError) as exc:
        raise_automation_http_exception(exc)
    return ExecutionLogListResponse(items=items)


async def _list_rules(
    service: AutomationRuleService,
    automation_type: AutomationType,
    client_id: Optional[str],
    rule_status: Optional[str],
) -> AutomationRuleListResponse:
    try:
        items = await service.list_rules(
            automation_type=automation_type, client_id=client_id, status=rule_status
        )
    except (StorageError, CollaboratorTimeoutError) as exc:
        raise_automation_http_exception(exc)
    return AutomationRuleListResponse(items=items)


async def _get_rule(service: AutomationRuleService, automation_type: AutomationType, rule_id: str):
    try:
        return await service.get_rule(automation_type=automation_type, rule_id=rule_id)
    except (AutomationRuleError, StorageError, CollaboratorTimeoutError) as exc:
        raise_automation_http_exception(exc)


async def _delete_rule(
    service: AutomationRuleService, automation_type: AutomationType, rule_id: str
) -> Response:
    try:
        await service.delete_rule(automation_type=automation_type, rule_id=rule_id)
    except (AutomationRuleError, StorageError, CollaboratorTimeoutError) as exc:
        raise_automation_http_exception(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
