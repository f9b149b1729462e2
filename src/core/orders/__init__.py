from src.core.orders.calculator import (
    OrderCalculationError,
    OrderCalculator,
    finalize_amount,
    finalize_units,
)
from src.core.orders.models import (
    CalculationResult,
    ComplianceCheckRequest,
    ComplianceContext,
    ComplianceOutcome,
    FinalizedOrder,
    InstantEligibilityRequest,
    InstantRedemptionEligibility,
    RedemptionCalculation,
    RedemptionCalculationRequest,
    SchemeInfo,
    SubmittedOrderRecord,
    SwitchCalculation,
    SwitchCalculationRequest,
)

__all__ = [
    "CalculationResult",
    "ComplianceCheckRequest",
    "ComplianceContext",
    "ComplianceOutcome",
    "FinalizedOrder",
    "InstantEligibilityRequest",
    "InstantRedemptionEligibility",
    "OrderCalculationError",
    "OrderCalculator",
    "RedemptionCalculation",
    "RedemptionCalculationRequest",
    "SchemeInfo",
    "SubmittedOrderRecord",
    "SwitchCalculation",
    "SwitchCalculationRequest",
    "finalize_amount",
    "finalize_units",
]
