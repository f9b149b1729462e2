"""
Order pricing for automated switch, redemption and purchase orders.

All arithmetic is Decimal and unrounded; amounts are quantized once, when an
order is finalized for submission (`finalize_amount` / `finalize_units`).
"""

from datetime import date, timedelta
from decimal import ROUND_DOWN, ROUND_HALF_EVEN, Decimal
from typing import Optional

from src.core.common.async_calls import await_with_timeout
from src.core.orders.models import (
    CalculationResult,
    InstantRedemptionEligibility,
    PurchaseCalculation,
    RedemptionCalculation,
    RedemptionType,
    SchemeInfo,
    SwitchCalculation,
    TaxImplications,
)

DEFAULT_EXIT_LOAD_PERCENT = Decimal("1.0")
DEFAULT_STCG_RATE = Decimal("0.15")
DEFAULT_LTCG_RATE = Decimal("0.10")
DEFAULT_LTCG_EXEMPTION = Decimal("100000")
DEFAULT_TDS_RATE = Decimal("0.10")
INSTANT_REDEMPTION_LIMIT = Decimal("50000")
MIN_REDEMPTION_AMOUNT = Decimal("1000")
SHORT_TERM_HOLDING_MONTHS = 12
STANDARD_SETTLEMENT_DAYS = 4

_AMOUNT_QUANTUM = Decimal("0.01")
_UNITS_QUANTUM = Decimal("0.0001")
_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


class OrderCalculationError(ValueError):
    pass


def finalize_amount(amount: Decimal) -> Decimal:
    return amount.quantize(_AMOUNT_QUANTUM, rounding=ROUND_HALF_EVEN)


def finalize_units(units: Decimal) -> Decimal:
    return units.quantize(_UNITS_QUANTUM, rounding=ROUND_DOWN)


def _format_inr(value: Decimal) -> str:
    return f"₹{value:,.0f}"


def compute_capital_gains_tax(
    *,
    gross_amount: Decimal,
    units: Decimal,
    purchase_nav: Optional[Decimal],
    holding_period_months: Optional[int],
    stcg_rate: Decimal = DEFAULT_STCG_RATE,
    ltcg_rate: Decimal = DEFAULT_LTCG_RATE,
    ltcg_exemption: Decimal = DEFAULT_LTCG_EXEMPTION,
) -> TaxImplications:
    if purchase_nav is None or holding_period_months is None:
        return TaxImplications()
    gain = gross_amount - units * purchase_nav
    if holding_period_months < SHORT_TERM_HOLDING_MONTHS:
        tax = gain * stcg_rate if gain > _ZERO else _ZERO
        return TaxImplications(short_term_gain=gain, tax_amount=tax)
    tax = max(gain - ltcg_exemption, _ZERO) * ltcg_rate
    return TaxImplications(long_term_gain=gain, tax_amount=tax)


def compute_switch(
    *,
    source_scheme_id: str,
    target_scheme_id: str,
    source_nav: Decimal,
    target_nav: Decimal,
    amount: Optional[Decimal] = None,
    units: Optional[Decimal] = None,
    exit_load_percent: Decimal = DEFAULT_EXIT_LOAD_PERCENT,
    purchase_nav: Optional[Decimal] = None,
    holding_period_months: Optional[int] = None,
    stcg_rate: Decimal = DEFAULT_STCG_RATE,
    ltcg_rate: Decimal = DEFAULT_LTCG_RATE,
    ltcg_exemption: Decimal = DEFAULT_LTCG_EXEMPTION,
) -> SwitchCalculation:
    if (amount is None) == (units is None):
        raise OrderCalculationError("EXACTLY_ONE_OF_AMOUNT_OR_UNITS_REQUIRED")
    if source_nav <= _ZERO or target_nav <= _ZERO:
        raise OrderCalculationError("NAV_NOT_AVAILABLE")

    if amount is not None:
        if amount <= _ZERO:
            raise OrderCalculationError("INVALID_AMOUNT")
        gross_amount = amount
        source_units = amount / source_nav
    else:
        if units <= _ZERO:
            raise OrderCalculationError("INVALID_UNITS")
        source_units = units
        gross_amount = units * source_nav

    exit_load_amount = gross_amount * exit_load_percent / _HUNDRED
    net_amount = gross_amount - exit_load_amount
    return SwitchCalculation(
        source_scheme_id=source_scheme_id,
        target_scheme_id=target_scheme_id,
        source_units=source_units,
        source_nav=source_nav,
        target_nav=target_nav,
        gross_amount=gross_amount,
        exit_load_percent=exit_load_percent,
        exit_load_amount=exit_load_amount,
        net_amount=net_amount,
        target_units=net_amount / target_nav,
        tax_implications=compute_capital_gains_tax(
            gross_amount=gross_amount,
            units=source_units,
            purchase_nav=purchase_nav,
            holding_period_months=holding_period_months,
            stcg_rate=stcg_rate,
            ltcg_rate=ltcg_rate,
            ltcg_exemption=ltcg_exemption,
        ),
    )


def compute_redemption(
    *,
    scheme_id: str,
    nav: Decimal,
    as_of: date,
    amount: Optional[Decimal] = None,
    units: Optional[Decimal] = None,
    redemption_type: RedemptionType = "Standard",
    exit_load_percent: Decimal = DEFAULT_EXIT_LOAD_PERCENT,
    tds_rate: Decimal = DEFAULT_TDS_RATE,
) -> RedemptionCalculation:
    if nav <= _ZERO:
        raise OrderCalculationError("NAV_NOT_AVAILABLE")
    if (amount is None) == (units is None):
        raise OrderCalculationError("EXACTLY_ONE_OF_AMOUNT_OR_UNITS_REQUIRED")
    if amount is not None:
        if amount <= _ZERO:
            raise OrderCalculationError("INVALID_AMOUNT")
        gross_amount = amount
        units = amount / nav
    else:
        if units <= _ZERO:
            raise OrderCalculationError("INVALID_UNITS")
        gross_amount = units * nav

    load_percent = exit_load_percent if redemption_type == "Standard" else _ZERO
    exit_load_amount = gross_amount * load_percent / _HUNDRED
    net_amount = gross_amount - exit_load_amount
    tds_amount = net_amount * tds_rate if redemption_type in {"Standard", "Instant"} else _ZERO
    settlement_date = (
        as_of if redemption_type == "Instant" else as_of + timedelta(days=STANDARD_SETTLEMENT_DAYS)
    )
    return RedemptionCalculation(
        scheme_id=scheme_id,
        redemption_type=redemption_type,
        units=units,
        nav=nav,
        gross_amount=gross_amount,
        exit_load_percent=load_percent,
        exit_load_amount=exit_load_amount,
        net_amount=net_amount,
        tds_amount=tds_amount,
        final_amount=net_amount - tds_amount,
        settlement_date=settlement_date,
    )


def compute_purchase(*, scheme: SchemeInfo, amount: Decimal) -> PurchaseCalculation:
    if scheme.nav is None or scheme.nav <= _ZERO:
        raise OrderCalculationError("NAV_NOT_AVAILABLE")
    if amount <= _ZERO:
        raise OrderCalculationError("INVALID_AMOUNT")
    if scheme.min_investment is not None and amount < scheme.min_investment:
        raise OrderCalculationError("AMOUNT_BELOW_MIN_INVESTMENT")
    if scheme.max_investment is not None and amount > scheme.max_investment:
        raise OrderCalculationError("AMOUNT_ABOVE_MAX_INVESTMENT")
    return PurchaseCalculation(
        scheme_id=scheme.scheme_id,
        scheme_name=scheme.name,
        amount=amount,
        nav=scheme.nav,
        units=amount / scheme.nav,
    )


def check_instant_redemption_eligibility(
    amount: Decimal,
    *,
    max_amount: Decimal = INSTANT_REDEMPTION_LIMIT,
    min_amount: Decimal = MIN_REDEMPTION_AMOUNT,
) -> InstantRedemptionEligibility:
    if amount > max_amount:
        return InstantRedemptionEligibility(
            eligible=False,
            reason=f"Amount exceeds instant redemption limit of {_format_inr(max_amount)}",
            max_amount=max_amount,
        )
    if amount < min_amount:
        return InstantRedemptionEligibility(
            eligible=False,
            reason=f"Minimum redemption amount is {_format_inr(min_amount)}",
            max_amount=max_amount,
        )
    return InstantRedemptionEligibility(
        eligible=True, max_amount=max_amount, available_amount=max_amount
    )


_ERROR_MESSAGES = {
    "EXACTLY_ONE_OF_AMOUNT_OR_UNITS_REQUIRED": "Either amount or units must be provided",
    "NAV_NOT_AVAILABLE": "NAV not available for this scheme",
    "INVALID_AMOUNT": "Invalid units or amount",
    "INVALID_UNITS": "Invalid units or amount",
    "AMOUNT_BELOW_MIN_INVESTMENT": "Amount is below the scheme minimum investment",
    "AMOUNT_ABOVE_MAX_INVESTMENT": "Amount exceeds the scheme maximum investment",
}


def _failure(code: str) -> CalculationResult:
    return CalculationResult(
        success=False, message=_ERROR_MESSAGES.get(code, code), errors=[code]
    )


class OrderCalculator:
    """Resolves schemes and prices orders; business failures come back as results."""

    def __init__(
        self,
        *,
        scheme_lookup,
        exit_load_percent: Decimal = DEFAULT_EXIT_LOAD_PERCENT,
        stcg_rate: Decimal = DEFAULT_STCG_RATE,
        ltcg_rate: Decimal = DEFAULT_LTCG_RATE,
        ltcg_exemption: Decimal = DEFAULT_LTCG_EXEMPTION,
        tds_rate: Decimal = DEFAULT_TDS_RATE,
        instant_redemption_limit: Decimal = INSTANT_REDEMPTION_LIMIT,
        min_redemption_amount: Decimal = MIN_REDEMPTION_AMOUNT,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._scheme_lookup = scheme_lookup
        self._exit_load_percent = exit_load_percent
        self._stcg_rate = stcg_rate
        self._ltcg_rate = ltcg_rate
        self._ltcg_exemption = ltcg_exemption
        self._tds_rate = tds_rate
        self._instant_redemption_limit = instant_redemption_limit
        self._min_redemption_amount = min_redemption_amount
        self._timeout_seconds = timeout_seconds

    async def get_scheme(self, *, scheme_id: str) -> Optional[SchemeInfo]:
        return await await_with_timeout(
            self._scheme_lookup.get_scheme(scheme_id=scheme_id),
            timeout=self._timeout_seconds,
            operation="scheme_lookup",
        )

    async def calculate_switch(
        self,
        *,
        source_scheme_id: str,
        target_scheme_id: str,
        amount: Optional[Decimal] = None,
        units: Optional[Decimal] = None,
        purchase_nav: Optional[Decimal] = None,
        holding_period_months: Optional[int] = None,
    ) -> CalculationResult[SwitchCalculation]:
        if not source_scheme_id or not target_scheme_id:
            return CalculationResult(
                success=False,
                message="Source and target scheme IDs are required",
                errors=["SCHEME_IDS_REQUIRED"],
            )
        if (amount is None) == (units is None):
            return _failure("EXACTLY_ONE_OF_AMOUNT_OR_UNITS_REQUIRED")
        source = await self.get_scheme(scheme_id=source_scheme_id)
        target = await self.get_scheme(scheme_id=target_scheme_id)
        if source is None or target is None:
            return CalculationResult(
                success=False, message="Scheme not found", errors=["SCHEME_NOT_FOUND"]
            )
        if not source.nav or not target.nav:
            return _failure("NAV_NOT_AVAILABLE")
        try:
            calculation = compute_switch(
                source_scheme_id=source.scheme_id,
                target_scheme_id=target.scheme_id,
                source_nav=source.nav,
                target_nav=target.nav,
                amount=amount,
                units=units,
                exit_load_percent=self._exit_load_percent,
                purchase_nav=purchase_nav,
                holding_period_months=holding_period_months,
                stcg_rate=self._stcg_rate,
                ltcg_rate=self._ltcg_rate,
                ltcg_exemption=self._ltcg_exemption,
            )
        except OrderCalculationError as exc:
            return _failure(str(exc))
        calculation.source_scheme_name = source.name
        calculation.target_scheme_name = target.name
        return CalculationResult(
            success=True, message="Switch calculation completed", data=calculation
        )

    async def calculate_redemption(
        self,
        *,
        scheme_id: str,
        as_of: date,
        amount: Optional[Decimal] = None,
        units: Optional[Decimal] = None,
        redemption_type: RedemptionType = "Standard",
    ) -> CalculationResult[RedemptionCalculation]:
        scheme = await self.get_scheme(scheme_id=scheme_id)
        if scheme is None:
            return CalculationResult(
                success=False, message="Scheme not found", errors=["SCHEME_NOT_FOUND"]
            )
        if not scheme.nav:
            return _failure("NAV_NOT_AVAILABLE")
        try:
            calculation = compute_redemption(
                scheme_id=scheme.scheme_id,
                nav=scheme.nav,
                as_of=as_of,
                amount=amount,
                units=units,
                redemption_type=redemption_type,
                exit_load_percent=self._exit_load_percent,
                tds_rate=self._tds_rate,
            )
        except OrderCalculationError as exc:
            return _failure(str(exc))
        calculation.scheme_name = scheme.name
        return CalculationResult(
            success=True, message="Redemption calculated successfully", data=calculation
        )

    async def calculate_purchase(
        self, *, scheme_id: str, amount: Decimal
    ) -> CalculationResult[PurchaseCalculation]:
        scheme = await self.get_scheme(scheme_id=scheme_id)
        if scheme is None:
            return CalculationResult(
                success=False, message="Scheme not found", errors=["SCHEME_NOT_FOUND"]
            )
        try:
            calculation = compute_purchase(scheme=scheme, amount=amount)
        except OrderCalculationError as exc:
            return _failure(str(exc))
        return CalculationResult(
            success=True, message="Purchase calculated successfully", data=calculation
        )

    async def check_instant_redemption_eligibility(
        self, *, scheme_id: str, amount: Decimal
    ) -> CalculationResult[InstantRedemptionEligibility]:
        eligibility = check_instant_redemption_eligibility(
            amount,
            max_amount=self._instant_redemption_limit,
            min_amount=self._min_redemption_amount,
        )
        if not eligibility.eligible:
            return CalculationResult(success=True, message="Eligibility checked", data=eligibility)
        scheme = await self.get_scheme(scheme_id=scheme_id)
        if scheme is None:
            return CalculationResult(
                success=False, message="Scheme not found", errors=["SCHEME_NOT_FOUND"]
            )
        return CalculationResult(success=True, message="Eligibility checked", data=eligibility)
