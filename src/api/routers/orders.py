from typing import Annotated, Literal, Optional

from fastapi import APIRouter, Depends, Query, status

from src.api.routers import automation as runtime
from src.api.routers.automation_http_errors import raise_automation_http_exception
from src.core.automation import AutomationRuleService, StorageError
from src.core.common.async_calls import CollaboratorTimeoutError
from src.core.compliance import ComplianceEngine
from src.core.orders import (
    CalculationResult,
    ComplianceCheckRequest,
    ComplianceContext,
    ComplianceOutcome,
    InstantEligibilityRequest,
    InstantRedemptionEligibility,
    OrderCalculator,
    RedemptionCalculation,
    RedemptionCalculationRequest,
    SwitchCalculation,
    SwitchCalculationRequest,
)
from src.core.orders.models import OrderHistoryResponse

router = APIRouter(tags=["Order Calculation"])

_COMPLIANCE_ENGINE = ComplianceEngine()


@router.post(
    "/orders/switch/calculate",
    response_model=CalculationResult[SwitchCalculation],
    status_code=status.HTTP_200_OK,
    summary="Calculate Switch",
    description=(
        "Prices a switch between two schemes: source units, exit load, net amount, target "
        "units and capital-gains tax. Business-rule failures return `success=false`."
    ),
)
async def calculate_switch(
    payload: SwitchCalculationRequest,
    calculator: Annotated[OrderCalculator, Depends(runtime.get_order_calculator)],
) -> CalculationResult[SwitchCalculation]:
    return await calculator.calculate_switch(
        source_scheme_id=payload.source_scheme_id,
        target_scheme_id=payload.target_scheme_id,
        amount=payload.amount,
        units=payload.units,
        purchase_nav=payload.purchase_nav,
        holding_period_months=payload.holding_period_months,
    )


@router.post(
    "/orders/redemption/calculate",
    response_model=CalculationResult[RedemptionCalculation],
    status_code=status.HTTP_200_OK,
    summary="Calculate Redemption",
    description="Prices a Standard, Instant or Full redemption including exit load and TDS.",
)
async def calculate_redemption(
    payload: RedemptionCalculationRequest,
    calculator: Annotated[OrderCalculator, Depends(runtime.get_order_calculator)],
) -> CalculationResult[RedemptionCalculation]:
    return await calculator.calculate_redemption(
        scheme_id=payload.scheme_id,
        as_of=runtime.get_clock().today(),
        amount=payload.amount,
        units=payload.units,
        redemption_type=payload.redemption_type,
    )


@router.post(
    "/orders/redemption/instant-eligibility",
    response_model=CalculationResult[InstantRedemptionEligibility],
    status_code=status.HTTP_200_OK,
    summary="Check Instant Redemption Eligibility",
)
async def check_instant_redemption_eligibility(
    payload: InstantEligibilityRequest,
    calculator: Annotated[OrderCalculator, Depends(runtime.get_order_calculator)],
) -> CalculationResult[InstantRedemptionEligibility]:
    return await calculator.check_instant_redemption_eligibility(
        scheme_id=payload.scheme_id, amount=payload.amount
    )


@router.post(
    "/orders/compliance/check",
    response_model=CalculationResult[ComplianceOutcome],
    status_code=status.HTTP_200_OK,
    summary="Check Order Compliance",
    description=(
        "Runs the base order checks and every compliance policy rule. Schemes not supplied in "
        "the request are resolved from the scheme catalog."
    ),
)
async def check_compliance(
    payload: ComplianceCheckRequest,
    calculator: Annotated[OrderCalculator, Depends(runtime.get_order_calculator)],
) -> CalculationResult[ComplianceOutcome]:
    schemes = {scheme.scheme_id: scheme for scheme in payload.schemes}
    try:
        for line in payload.order_lines:
            if line.scheme_id in schemes:
                continue
            scheme = await calculator.get_scheme(scheme_id=line.scheme_id)
            if scheme is not None:
                schemes[line.scheme_id] = scheme
    except CollaboratorTimeoutError as exc:
        raise_automation_http_exception(exc)
    context = ComplianceContext(
        order_lines=payload.order_lines,
        schemes=schemes,
        nominees=payload.nominees,
        opt_out_of_nomination=payload.opt_out_of_nomination,
        transaction_mode=payload.transaction_mode,
        current_allocation=payload.current_allocation,
        risk_acknowledged=payload.risk_acknowledged,
        as_of=payload.as_of or runtime.get_clock().today(),
    )
    outcome = _COMPLIANCE_ENGINE.check(context)
    return CalculationResult(
        success=outcome.is_valid,
        message="Compliance check passed" if outcome.is_valid else "Compliance check failed",
        data=outcome,
        errors=outcome.errors,
    )


@router.get(
    "/orders/history",
    response_model=OrderHistoryResponse,
    status_code=status.HTTP_200_OK,
    summary="List Submitted Orders",
    description="Orders submitted by the automation pipeline, newest first.",
)
async def list_order_history(
    service: Annotated[AutomationRuleService, Depends(runtime.get_automation_rule_service)],
    client_id: Annotated[
        Optional[str], Query(description="Client filter.", examples=["cl_001"])
    ] = None,
    order_type: Annotated[
        Optional[Literal["Purchase", "Redemption", "Switch"]],
        Query(description="Order type filter.", examples=["Switch"]),
    ] = None,
    limit: Annotated[
        int, Query(description="Maximum entries.", ge=1, le=500, examples=[100])
    ] = 100,
) -> OrderHistoryResponse:
    try:
        items = await service.list_orders(client_id=client_id, order_type=order_type, limit=limit)
    except (StorageError, CollaboratorTimeoutError) as exc:
        raise_automation_http_exception(exc)
    return OrderHistoryResponse(items=items)
