from decimal import Decimal
from typing import Optional

from src.core.automation.models import (
    PortfolioHolding,
    PortfolioSnapshot,
    RebalancingAction,
    RebalancingPlan,
    RebalancingRule,
)
from src.core.automation.triggers import compute_allocation_drift

_HUNDRED = Decimal("100")
_ZERO = Decimal("0")


def _largest_holding(
    holdings: list[PortfolioHolding], category: str
) -> Optional[PortfolioHolding]:
    candidates = [holding for holding in holdings if holding.category == category]
    if not candidates:
        return None
    return max(candidates, key=lambda item: (item.current_value, item.scheme_id))


def plan_rebalancing(*, rule: RebalancingRule, portfolio: PortfolioSnapshot) -> RebalancingPlan:
    """
    Proposes one action per category whose drift exceeds the rule threshold.

    Overweight categories redeem from their largest holding; underweight
    categories buy into their largest holding. Action amounts are the drift share
    of total portfolio value, capped by `rebalance_amount` and, for redemptions,
    by the holding value. Categories with no holding to act on produce no action.
    """
    drift = compute_allocation_drift(
        target_allocation=rule.target_allocation, portfolio=portfolio
    )
    redemptions: list[RebalancingAction] = []
    purchases: list[RebalancingAction] = []
    for category, category_drift in drift.drift_by_category.items():
        if abs(category_drift) <= rule.threshold_percent:
            continue
        holding = _largest_holding(portfolio.holdings, category)
        if holding is None:
            continue
        amount = abs(category_drift) * portfolio.total_value / _HUNDRED
        if rule.rebalance_amount is not None:
            amount = min(amount, rule.rebalance_amount)
        if category_drift > _ZERO:
            amount = min(amount, holding.current_value)
            if amount <= _ZERO:
                continue
            redemptions.append(
                RebalancingAction(
                    action_type="Redemption",
                    category=category,
                    scheme_id=holding.scheme_id,
                    scheme_name=holding.scheme_name,
                    amount=amount,
                    reason=f"{category} is {category_drift:.2f}% above target",
                )
            )
        else:
            purchases.append(
                RebalancingAction(
                    action_type="Purchase",
                    category=category,
                    scheme_id=holding.scheme_id,
                    scheme_name=holding.scheme_name,
                    amount=amount,
                    reason=f"{category} is {abs(category_drift):.2f}% below target",
                )
            )
    return RebalancingPlan(
        rule_id=rule.id,
        current_allocation=drift.current_allocation,
        target_allocation=dict(rule.target_allocation),
        max_drift_percent=drift.max_drift_percent,
        actions=redemptions + purchases,
    )
