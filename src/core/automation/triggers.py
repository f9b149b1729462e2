"""
Trigger evaluation for automation rules.

`evaluate_trigger` is pure: it never touches the store. The only state-changing
outcome it reports is a trigger order whose validity window has closed, which
comes back as `TriggerDecision(fire=False, transition="Expired")` for the
pipeline to persist.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Mapping, Optional

from src.core.automation.models import (
    AutoInvestRule,
    GoalSnapshot,
    MarketQuote,
    PortfolioSnapshot,
    RebalancingRule,
    TriggerCondition,
    TriggerOrder,
)

_ZERO = Decimal("0")
_QUOTE_FIELDS = frozenset({"nav", "price", "previous_nav"})


@dataclass(frozen=True)
class TriggerContext:
    today: date
    now: datetime
    quotes: Mapping[str, MarketQuote] = field(default_factory=dict)
    portfolio: Optional[PortfolioSnapshot] = None
    goals: Mapping[str, GoalSnapshot] = field(default_factory=dict)


@dataclass(frozen=True)
class TriggerDecision:
    fire: bool
    reason: str
    transition: Optional[str] = None


@dataclass(frozen=True)
class AllocationDrift:
    current_allocation: dict[str, Decimal]
    drift_by_category: dict[str, Decimal]
    max_drift_percent: Decimal


def evaluate_trigger(rule, context: TriggerContext) -> TriggerDecision:
    if isinstance(rule, AutoInvestRule):
        return _evaluate_auto_invest(rule, context)
    if isinstance(rule, RebalancingRule):
        return _evaluate_rebalancing(rule, context)
    if isinstance(rule, TriggerOrder):
        return _evaluate_trigger_order(rule, context)
    raise TypeError(f"UNSUPPORTED_AUTOMATION_RULE:{type(rule).__name__}")


def should_fire(rule, context: TriggerContext) -> bool:
    return evaluate_trigger(rule, context).fire


def compare(
    condition: TriggerCondition,
    observed: Decimal,
    threshold: Decimal,
    previous: Optional[Decimal] = None,
) -> bool:
    if condition == "Greater Than":
        return observed > threshold
    if condition == "Less Than":
        return observed < threshold
    if condition == "Equals":
        return observed == threshold
    if previous is None:
        return False
    if condition == "Crosses Above":
        return previous <= threshold < observed
    if condition == "Crosses Below":
        return previous >= threshold > observed
    raise ValueError(f"UNSUPPORTED_TRIGGER_CONDITION:{condition}")


def compute_allocation_drift(
    *, target_allocation: Mapping[str, Decimal], portfolio: PortfolioSnapshot
) -> AllocationDrift:
    current = portfolio.allocation()
    categories = sorted(set(current) | set(target_allocation))
    drift_by_category = {
        category: current.get(category, _ZERO) - target_allocation.get(category, _ZERO)
        for category in categories
    }
    max_drift = max((abs(value) for value in drift_by_category.values()), default=_ZERO)
    return AllocationDrift(
        current_allocation=current,
        drift_by_category=drift_by_category,
        max_drift_percent=max_drift,
    )


def _evaluate_auto_invest(rule: AutoInvestRule, context: TriggerContext) -> TriggerDecision:
    if rule.status != "Active" or not rule.is_enabled:
        return TriggerDecision(fire=False, reason="RULE_INACTIVE")

    if rule.trigger_type == "Date":
        if rule.next_execution_date == context.today:
            return TriggerDecision(fire=True, reason="EXECUTION_DATE_REACHED")
        return TriggerDecision(fire=False, reason="NOT_DUE")

    if rule.trigger_type == "Goal Progress":
        if rule.next_execution_date > context.today:
            return TriggerDecision(fire=False, reason="NOT_DUE")
        goal = context.goals.get(rule.goal_id) if rule.goal_id else None
        if goal is None:
            return TriggerDecision(fire=False, reason="GOAL_UNRESOLVED")
        threshold = rule.trigger_config.goal_progress_threshold or _ZERO
        direction = rule.trigger_config.goal_progress_direction or "above"
        if direction == "above":
            fired = goal.progress >= threshold
        else:
            fired = goal.progress <= threshold
        if fired:
            return TriggerDecision(fire=True, reason="GOAL_PROGRESS_THRESHOLD_MET")
        return TriggerDecision(fire=False, reason="GOAL_PROGRESS_THRESHOLD_NOT_MET")

    return TriggerDecision(fire=False, reason="TRIGGER_TYPE_NOT_SUPPORTED")


def _evaluate_rebalancing(rule: RebalancingRule, context: TriggerContext) -> TriggerDecision:
    if rule.status != "Active" or not rule.is_enabled:
        return TriggerDecision(fire=False, reason="RULE_INACTIVE")
    if rule.last_rebalanced_date == context.today:
        return TriggerDecision(fire=False, reason="ALREADY_REBALANCED_TODAY")

    if rule.trigger_on_drift and context.portfolio is not None:
        drift = compute_allocation_drift(
            target_allocation=rule.target_allocation, portfolio=context.portfolio
        )
        above_threshold = drift.max_drift_percent > rule.threshold_percent
        above_floor = (
            rule.min_drift_percent is None or drift.max_drift_percent > rule.min_drift_percent
        )
        if above_threshold and above_floor:
            return TriggerDecision(fire=True, reason="DRIFT_THRESHOLD_EXCEEDED")

    if rule.trigger_on_schedule and rule.next_rebalancing_date == context.today:
        return TriggerDecision(fire=True, reason="SCHEDULED_REBALANCE_DUE")

    return TriggerDecision(fire=False, reason="NOT_DUE")


def _evaluate_trigger_order(rule: TriggerOrder, context: TriggerContext) -> TriggerDecision:
    if rule.status != "Active" or not rule.is_enabled:
        return TriggerDecision(fire=False, reason="RULE_INACTIVE")
    if context.today < rule.valid_from:
        return TriggerDecision(fire=False, reason="BEFORE_VALID_FROM")
    if rule.valid_until is not None and context.today > rule.valid_until:
        return TriggerDecision(fire=False, reason="VALID_UNTIL_PASSED", transition="Expired")

    if rule.trigger_type == "Date":
        return TriggerDecision(fire=True, reason="VALIDITY_WINDOW_OPEN")

    observed, previous = _observed_value(rule, context)
    if observed is None:
        return TriggerDecision(fire=False, reason="OBSERVED_VALUE_UNAVAILABLE")
    if compare(rule.trigger_condition, observed, rule.trigger_value, previous):
        return TriggerDecision(fire=True, reason="TRIGGER_CONDITION_MET")
    return TriggerDecision(fire=False, reason="TRIGGER_CONDITION_NOT_MET")


def _observed_value(
    rule: TriggerOrder, context: TriggerContext
) -> tuple[Optional[Decimal], Optional[Decimal]]:
    if rule.trigger_type in {"NAV", "Price"}:
        quote = context.quotes.get(rule.scheme_id)
        if quote is None:
            return None, None
        field_name = rule.trigger_field or ("nav" if rule.trigger_type == "NAV" else "price")
        if field_name not in _QUOTE_FIELDS:
            return None, None
        observed = getattr(quote, field_name)
        if observed is None and field_name == "price":
            observed = quote.nav
        return observed, quote.previous_nav

    if rule.trigger_type == "Portfolio Value":
        if context.portfolio is None:
            return None, None
        return context.portfolio.total_value, None

    if rule.trigger_type == "Goal Progress":
        goal = context.goals.get(rule.goal_id) if rule.goal_id else None
        return (goal.progress if goal is not None else None), None

    if rule.trigger_type == "Custom":
        if context.portfolio is None or not rule.trigger_field:
            return None, None
        return context.portfolio.custom_values.get(rule.trigger_field), None

    return None, None
