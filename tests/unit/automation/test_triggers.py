from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from src.core.automation.models import GoalSnapshot, MarketQuote, TriggerConfig
from src.core.automation.triggers import (
    TriggerContext,
    compare,
    compute_allocation_drift,
    evaluate_trigger,
    should_fire,
)
from tests.factories import auto_invest_rule, portfolio, rebalancing_rule, trigger_order

TODAY = date(2025, 2, 5)


def _context(**kwargs) -> TriggerContext:
    return TriggerContext(today=TODAY, now=datetime(2025, 2, 5, 9, 0, tzinfo=UTC), **kwargs)


def test_date_auto_invest_fires_only_on_next_execution_date():
    due = auto_invest_rule(next_execution_date=TODAY)
    later = auto_invest_rule(next_execution_date=date(2025, 3, 5))

    assert evaluate_trigger(due, _context()).reason == "EXECUTION_DATE_REACHED"
    assert should_fire(due, _context()) is True
    assert evaluate_trigger(later, _context()).reason == "NOT_DUE"


def test_paused_or_disabled_rules_never_fire():
    assert evaluate_trigger(auto_invest_rule(status="Paused"), _context()).reason == "RULE_INACTIVE"
    assert evaluate_trigger(auto_invest_rule(is_enabled=False), _context()).fire is False
    assert evaluate_trigger(trigger_order(status="Paused"), _context()).fire is False


def test_goal_progress_auto_invest_respects_direction():
    above = auto_invest_rule(
        trigger_type="Goal Progress",
        goal_id="goal_retire",
        trigger_config=TriggerConfig(goal_progress_threshold=Decimal("75")),
    )
    below = auto_invest_rule(
        trigger_type="Goal Progress",
        goal_id="goal_retire",
        trigger_config=TriggerConfig(
            goal_progress_threshold=Decimal("75"), goal_progress_direction="below"
        ),
    )
    goals = {"goal_retire": GoalSnapshot(goal_id="goal_retire", progress=Decimal("80"))}

    assert evaluate_trigger(above, _context(goals=goals)).fire is True
    assert evaluate_trigger(below, _context(goals=goals)).fire is False
    assert evaluate_trigger(above, _context()).reason == "GOAL_UNRESOLVED"


def test_unsupported_auto_invest_trigger_type_does_not_fire():
    rule = auto_invest_rule(trigger_type="Market Condition")
    assert evaluate_trigger(rule, _context()).reason == "TRIGGER_TYPE_NOT_SUPPORTED"


def test_nav_trigger_order_compares_observed_nav():
    rule = trigger_order(trigger_condition="Less Than", trigger_value=Decimal("30"))
    cheap = {"sch_eq_01": MarketQuote(scheme_id="sch_eq_01", nav=Decimal("25"))}
    dear = {"sch_eq_01": MarketQuote(scheme_id="sch_eq_01", nav=Decimal("31"))}

    assert evaluate_trigger(rule, _context(quotes=cheap)).reason == "TRIGGER_CONDITION_MET"
    assert evaluate_trigger(rule, _context(quotes=dear)).reason == "TRIGGER_CONDITION_NOT_MET"
    assert evaluate_trigger(rule, _context()).reason == "OBSERVED_VALUE_UNAVAILABLE"


def test_trigger_order_past_valid_until_requests_expiry():
    rule = trigger_order(valid_until=date(2025, 2, 4))
    decision = evaluate_trigger(rule, _context())

    assert decision.fire is False
    assert decision.transition == "Expired"


def test_trigger_order_before_valid_from_waits():
    rule = trigger_order(valid_from=date(2025, 3, 1), valid_until=None)
    assert evaluate_trigger(rule, _context()).reason == "BEFORE_VALID_FROM"


def test_date_trigger_order_fires_inside_window():
    rule = trigger_order(trigger_type="Date")
    assert evaluate_trigger(rule, _context()).reason == "VALIDITY_WINDOW_OPEN"


def test_portfolio_value_and_custom_triggers_read_portfolio_snapshot():
    snapshot = portfolio().model_copy(update={"custom_values": {"cash_ratio": Decimal("12")}})
    value_rule = trigger_order(
        trigger_type="Portfolio Value",
        trigger_condition="Greater Than",
        trigger_value=Decimal("90000"),
    )
    custom_rule = trigger_order(
        trigger_type="Custom",
        trigger_field="cash_ratio",
        trigger_condition="Equals",
        trigger_value=Decimal("12"),
    )

    assert evaluate_trigger(value_rule, _context(portfolio=snapshot)).fire is True
    assert evaluate_trigger(custom_rule, _context(portfolio=snapshot)).fire is True


def test_crossing_conditions_need_previous_value():
    assert compare("Crosses Above", Decimal("11"), Decimal("10"), Decimal("9")) is True
    assert compare("Crosses Above", Decimal("11"), Decimal("10"), Decimal("10.5")) is False
    assert compare("Crosses Below", Decimal("9"), Decimal("10"), Decimal("10")) is True
    assert compare("Crosses Below", Decimal("9"), Decimal("10")) is False


def test_allocation_drift_is_current_minus_target():
    drift = compute_allocation_drift(
        target_allocation={"Equity": Decimal("60"), "Debt": Decimal("40")},
        portfolio=portfolio(equity="68000", debt="32000"),
    )

    assert drift.drift_by_category == {"Debt": Decimal("-8"), "Equity": Decimal("8")}
    assert drift.max_drift_percent == Decimal("8")


def test_rebalancing_fires_on_drift_above_threshold():
    rule = rebalancing_rule(threshold_percent=Decimal("5"))
    decision = evaluate_trigger(rule, _context(portfolio=portfolio()))
    assert decision.reason == "DRIFT_THRESHOLD_EXCEEDED"

    within = rebalancing_rule(threshold_percent=Decimal("10"))
    assert evaluate_trigger(within, _context(portfolio=portfolio())).fire is False


def test_rebalancing_runs_at_most_once_per_day():
    rule = rebalancing_rule(last_rebalanced_date=TODAY)
    decision = evaluate_trigger(rule, _context(portfolio=portfolio()))
    assert decision.reason == "ALREADY_REBALANCED_TODAY"


def test_rebalancing_schedule_trigger_fires_on_due_date():
    rule = rebalancing_rule(
        trigger_on_drift=False,
        trigger_on_schedule=True,
        frequency="Monthly",
        next_rebalancing_date=TODAY,
    )
    assert evaluate_trigger(rule, _context()).reason == "SCHEDULED_REBALANCE_DUE"


def test_unknown_rule_type_is_rejected():
    with pytest.raises(TypeError, match="UNSUPPORTED_AUTOMATION_RULE"):
        evaluate_trigger(object(), _context())
