"""
FILE: src/core/compliance.py
Pre-trade compliance policy engine for automated and advisor-assisted orders.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Callable, Iterable, List, Optional

from src.core.orders.models import (
    ComplianceContext,
    ComplianceOutcome,
    Nominee,
    PolicyOutcome,
    ValidationResult,
)

RISK_THRESHOLD_AMOUNT = Decimal("500000")
CATEGORY_OVERWEIGHT_THRESHOLD = Decimal("65")
MINOR_AGE_YEARS = 18
TELEPHONIC_MODES_REQUIRING_EUIN = frozenset({"Telephone"})


@dataclass(frozen=True)
class PolicyRule:
    id: str
    description: str
    evaluate: Callable[[ComplianceContext], Optional[PolicyOutcome]]


def _whitelist_enforcement(context: ComplianceContext) -> Optional[PolicyOutcome]:
    flagged = []
    for line in context.order_lines:
        scheme = context.schemes.get(line.scheme_id)
        if scheme is not None and not scheme.is_whitelisted and scheme.name not in flagged:
            flagged.append(scheme.name)
    if not flagged:
        return None
    return PolicyOutcome(
        severity="error",
        message=(
            f"Policy: {', '.join(flagged)} require compliance approval because they are not "
            "on the approved list."
        ),
        note=(
            "The compliance advisor detected non-whitelisted schemes and halted "
            "straight-through processing."
        ),
    )


def _high_risk_acknowledgement(context: ComplianceContext) -> Optional[PolicyOutcome]:
    if context.risk_acknowledged:
        return None
    breaches = []
    for line in context.order_lines:
        scheme = context.schemes.get(line.scheme_id)
        if scheme is None or scheme.risk_level.lower() != "high":
            continue
        if line.amount <= RISK_THRESHOLD_AMOUNT:
            continue
        breaches.append(f"{scheme.name} (₹{line.amount:,.0f})")
    if not breaches:
        return None
    return PolicyOutcome(
        severity="warning",
        message=(
            f"Policy: Capture a risk acknowledgement for {', '.join(breaches)} "
            "before execution."
        ),
        note=(
            "Large high-risk allocations were identified; document client consent "
            "before proceeding."
        ),
    )


def _category_balance(context: ComplianceContext) -> Optional[PolicyOutcome]:
    if context.current_allocation is None:
        return None
    overweight: List[str] = []
    for line in context.order_lines:
        scheme = context.schemes.get(line.scheme_id)
        if scheme is None:
            continue
        share = context.current_allocation.get(scheme.category, Decimal("0"))
        if share >= CATEGORY_OVERWEIGHT_THRESHOLD and scheme.category not in overweight:
            overweight.append(scheme.category)
    if not overweight:
        return None
    return PolicyOutcome(
        severity="warning",
        message=(
            f"Policy: {', '.join(overweight)} allocation already exceeds "
            f"{CATEGORY_OVERWEIGHT_THRESHOLD}% of the portfolio."
        ),
        note="Consider rebalancing or selecting alternate categories to stay within mandate.",
    )


def _telephonic_euin(context: ComplianceContext) -> Optional[PolicyOutcome]:
    mode = context.transaction_mode
    if mode is None or mode.mode not in TELEPHONIC_MODES_REQUIRING_EUIN:
        return None
    if mode.euin:
        return PolicyOutcome(
            severity="note",
            message="EUIN captured for the telephonic instruction.",
            note="Telephone instruction meets EUIN policy.",
        )
    return PolicyOutcome(
        severity="error",
        message=(
            "Policy: EUIN is mandatory for telephone instructions. Please capture the EUIN "
            "before submission."
        ),
        note="Compliance blocked the order until EUIN is recorded for the call-in request.",
    )


def age_on(birth_date: date, as_of: date) -> int:
    years = as_of.year - birth_date.year
    if (as_of.month, as_of.day) < (birth_date.month, birth_date.day):
        years -= 1
    return years


def _guardian_incomplete(nominee: Nominee, as_of: date) -> bool:
    if nominee.date_of_birth is None:
        return False
    if age_on(nominee.date_of_birth, as_of) >= MINOR_AGE_YEARS:
        return False
    return not (
        nominee.guardian_name and nominee.guardian_pan and nominee.guardian_relationship
    )


def _nominee_coverage(context: ComplianceContext) -> Optional[PolicyOutcome]:
    if context.opt_out_of_nomination or not context.nominees:
        return None
    if not any(_guardian_incomplete(nominee, context.as_of) for nominee in context.nominees):
        return None
    return PolicyOutcome(
        severity="error",
        message=(
            "Policy: Guardian details are mandatory for minor nominees. Please complete "
            "guardian information."
        ),
        note="Guardian coverage gaps detected for minor nominees.",
    )


DEFAULT_POLICY_RULES: tuple[PolicyRule, ...] = (
    PolicyRule(
        id="whitelist-enforcement",
        description="Non-whitelisted schemes must be reviewed manually per AMC policy",
        evaluate=_whitelist_enforcement,
    ),
    PolicyRule(
        id="high-risk-acknowledgement",
        description="High risk transactions above ₹500,000 require an explicit acknowledgement",
        evaluate=_high_risk_acknowledgement,
    ),
    PolicyRule(
        id="category-balance",
        description="Prevent category allocation drift beyond 65% of the portfolio",
        evaluate=_category_balance,
    ),
    PolicyRule(
        id="telephonic-euin",
        description="Telephone orders require EUIN capture",
        evaluate=_telephonic_euin,
    ),
    PolicyRule(
        id="nominee-coverage",
        description="Minor nominees must include guardian information",
        evaluate=_nominee_coverage,
    ),
)


def validate_order_lines(context: ComplianceContext) -> ValidationResult:
    """Base order checks that run before the policy rules: scheme presence and limits."""
    errors: List[str] = []
    for line in context.order_lines:
        scheme = context.schemes.get(line.scheme_id)
        if scheme is None:
            errors.append(f"Scheme {line.scheme_id} was not found.")
            continue
        if line.transaction_type != "Purchase":
            continue
        if scheme.min_investment is not None and line.amount < scheme.min_investment:
            errors.append(
                f"Minimum investment for {scheme.name} is ₹{scheme.min_investment:,.0f}."
            )
        if scheme.max_investment is not None and line.amount > scheme.max_investment:
            errors.append(
                f"Maximum investment for {scheme.name} is ₹{scheme.max_investment:,.0f}."
            )
    return ValidationResult(is_valid=not errors, errors=errors)


def generate_compliance_summary(advisor_notes: List[str]) -> str:
    if not advisor_notes:
        return "Compliance advisors found no additional considerations."
    if len(advisor_notes) == 1:
        return advisor_notes[0]
    return "\n".join(f"{index}. {note}" for index, note in enumerate(advisor_notes, start=1))


class ComplianceEngine:
    """
    Runs every policy rule against the same context and merges the findings.
    Rules never short-circuit each other; `is_valid` is false only when an
    error-severity finding exists.
    """

    def __init__(self, rules: Optional[Iterable[PolicyRule]] = None) -> None:
        self._rules = tuple(DEFAULT_POLICY_RULES if rules is None else rules)

    @property
    def rules(self) -> tuple[PolicyRule, ...]:
        return self._rules

    def evaluate(
        self, context: ComplianceContext, base: Optional[ValidationResult] = None
    ) -> ComplianceOutcome:
        base = base if base is not None else ValidationResult()
        errors = list(base.errors)
        warnings = list(base.warnings)
        advisor_notes: List[str] = []

        for rule in self._rules:
            outcome = rule.evaluate(context)
            if outcome is None:
                continue
            if outcome.severity == "error":
                errors.append(outcome.message)
            elif outcome.severity == "warning":
                warnings.append(outcome.message)
            if outcome.note:
                advisor_notes.append(f"{rule.description}: {outcome.note}")

        return ComplianceOutcome(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            advisor_notes=advisor_notes,
            summary=generate_compliance_summary(advisor_notes),
        )

    def check(self, context: ComplianceContext) -> ComplianceOutcome:
        return self.evaluate(context, base=validate_order_lines(context))
