from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from src.core.orders.models import OrderType

AutomationType = Literal["AutoInvest", "Rebalancing", "TriggerOrder"]
Frequency = Literal["Daily", "Weekly", "Monthly", "Quarterly"]
AutoInvestTriggerType = Literal["Date", "Goal Progress", "Portfolio Drift", "Market Condition"]
AutoInvestStatus = Literal["Active", "Paused", "Cancelled", "Completed"]
GoalProgressDirection = Literal["above", "below"]
RebalancingStrategy = Literal["Threshold-Based", "Time-Based", "Drift-Based", "Hybrid"]
RebalancingStatus = Literal["Active", "Paused", "Completed"]
TriggerOrderTriggerType = Literal[
    "Price", "NAV", "Portfolio Value", "Goal Progress", "Date", "Custom"
]
TriggerCondition = Literal["Greater Than", "Less Than", "Equals", "Crosses Above", "Crosses Below"]
TriggerOrderStatus = Literal["Active", "Triggered", "Executed", "Paused", "Cancelled", "Expired"]
ExecutionStatus = Literal["Success", "Failed"]
ExecutionLogStatus = Literal["Success", "Failed", "Skipped"]
RebalancingActionType = Literal["Purchase", "Redemption"]

ALLOCATION_TOLERANCE = Decimal("0.01")
TERMINAL_TRIGGER_ORDER_STATUSES = frozenset({"Executed", "Expired", "Cancelled"})


class TriggerConfig(BaseModel):
    day_of_month: Optional[int] = Field(
        default=None,
        ge=1,
        le=31,
        description="Day of month used by Monthly and Quarterly schedules.",
        examples=[5],
    )
    day_of_week: Optional[int] = Field(
        default=None,
        ge=0,
        le=6,
        description="Day of week used by Weekly schedules (0=Sunday).",
        examples=[1],
    )
    time: Optional[str] = Field(
        default=None, description="Preferred execution time (HH:MM).", examples=["09:30"]
    )
    goal_progress_threshold: Optional[Decimal] = Field(
        default=None,
        ge=0,
        le=100,
        description="Goal progress percentage that fires a Goal Progress trigger.",
        examples=["75"],
    )
    goal_progress_direction: Optional[GoalProgressDirection] = Field(
        default=None,
        description="Whether the trigger fires above or below the progress threshold.",
        examples=["above"],
    )
    drift_threshold: Optional[Decimal] = Field(
        default=None, ge=0, description="Portfolio drift percentage threshold.", examples=["5"]
    )
    nav_change_threshold: Optional[Decimal] = Field(
        default=None, description="NAV change percentage threshold.", examples=["-3"]
    )
    market_condition: Optional[str] = Field(
        default=None, description="Named market condition.", examples=["CORRECTION"]
    )
    custom_conditions: Dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form trigger conditions.",
        examples=[{"index": "NIFTY50"}],
    )


class AutoInvestRule(BaseModel):
    automation_type: Literal["AutoInvest"] = Field(
        default="AutoInvest", description="Rule variant discriminator.", examples=["AutoInvest"]
    )
    id: str = Field(description="Rule identifier.", examples=["AUTO-20250105-00042"])
    client_id: str = Field(description="Client identifier.", examples=["cl_001"])
    name: str = Field(description="Rule display name.", examples=["Monthly equity SIP"])
    description: Optional[str] = Field(default=None, description="Rule description.")
    scheme_id: str = Field(description="Scheme to invest in.", examples=["sch_eq_01"])
    scheme_name: str = Field(default="", description="Resolved scheme name.")
    amount: Decimal = Field(gt=0, description="Amount per execution.", examples=["5000"])
    frequency: Frequency = Field(description="Execution frequency.", examples=["Monthly"])
    trigger_type: AutoInvestTriggerType = Field(description="Trigger type.", examples=["Date"])
    trigger_config: TriggerConfig = Field(default_factory=TriggerConfig)
    goal_id: Optional[str] = Field(default=None, description="Linked goal identifier.")
    goal_name: Optional[str] = Field(default=None, description="Resolved goal name.")
    start_date: date = Field(description="First eligible date.", examples=["2025-01-05"])
    end_date: Optional[date] = Field(default=None, description="Last eligible date.")
    next_execution_date: date = Field(
        description="Next scheduled execution date.", examples=["2025-02-05"]
    )
    status: AutoInvestStatus = Field(default="Active", description="Lifecycle status.")
    is_enabled: bool = Field(default=True, description="Operator enable switch.")
    max_total_amount: Optional[Decimal] = Field(
        default=None, gt=0, description="Lifetime cap across executions."
    )
    max_per_execution: Optional[Decimal] = Field(
        default=None, gt=0, description="Cap for a single execution."
    )
    min_balance_required: Optional[Decimal] = Field(
        default=None, ge=0, description="Minimum available balance required to execute."
    )
    created_by: str = Field(description="Creator actor id.", examples=["rm_007"])
    created_at: datetime = Field(description="Creation timestamp (UTC).")
    updated_at: datetime = Field(description="Last update timestamp (UTC).")
    execution_count: int = Field(default=0, ge=0, description="Successful executions.")
    last_execution_date: Optional[datetime] = Field(default=None)
    last_execution_status: Optional[ExecutionStatus] = Field(default=None)
    last_execution_error: Optional[str] = Field(default=None)
    version: int = Field(default=1, ge=1, description="Optimistic concurrency version.")


class RebalancingRule(BaseModel):
    automation_type: Literal["Rebalancing"] = Field(
        default="Rebalancing", description="Rule variant discriminator.", examples=["Rebalancing"]
    )
    id: str = Field(description="Rule identifier.", examples=["REBAL-20250105-00042"])
    client_id: str = Field(description="Client identifier.", examples=["cl_001"])
    name: str = Field(description="Rule display name.", examples=["Balanced mandate"])
    description: Optional[str] = Field(default=None)
    strategy: RebalancingStrategy = Field(description="Rebalancing strategy.", examples=["Hybrid"])
    target_allocation: Dict[str, Decimal] = Field(
        description="Target allocation by category (percent, sums to 100).",
        examples=[{"Equity": "60", "Debt": "40"}],
    )
    threshold_percent: Decimal = Field(gt=0, description="Drift threshold in percent.")
    rebalance_amount: Optional[Decimal] = Field(
        default=None, gt=0, description="Fixed amount to move per rebalance."
    )
    frequency: Optional[Frequency] = Field(default=None, description="Schedule frequency.")
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    trigger_on_drift: bool = Field(default=True)
    trigger_on_schedule: bool = Field(default=False)
    min_drift_percent: Optional[Decimal] = Field(default=None, ge=0)
    execute_automatically: bool = Field(default=False)
    require_confirmation: bool = Field(default=True)
    status: RebalancingStatus = Field(default="Active")
    is_enabled: bool = Field(default=True)
    created_by: str = Field(description="Creator actor id.", examples=["rm_007"])
    created_at: datetime
    updated_at: datetime
    last_rebalanced_date: Optional[date] = Field(default=None)
    next_rebalancing_date: Optional[date] = Field(default=None)
    execution_count: int = Field(default=0, ge=0)
    last_execution_status: Optional[ExecutionLogStatus] = Field(default=None)
    version: int = Field(default=1, ge=1)


class TriggerOrder(BaseModel):
    automation_type: Literal["TriggerOrder"] = Field(
        default="TriggerOrder",
        description="Rule variant discriminator.",
        examples=["TriggerOrder"],
    )
    id: str = Field(description="Trigger order identifier.", examples=["TRIGGER-20250105-00042"])
    client_id: str = Field(description="Client identifier.", examples=["cl_001"])
    name: str = Field(description="Display name.", examples=["Buy the dip"])
    description: Optional[str] = Field(default=None)
    trigger_type: TriggerOrderTriggerType = Field(description="Trigger type.", examples=["NAV"])
    trigger_condition: TriggerCondition = Field(
        description="Comparison applied to the observed value.", examples=["Less Than"]
    )
    trigger_value: Decimal = Field(ge=0, description="Threshold value.", examples=["24.50"])
    trigger_field: Optional[str] = Field(
        default=None, description="Observed field override.", examples=["nav"]
    )
    order_type: OrderType = Field(description="Order to place when fired.", examples=["Purchase"])
    scheme_id: str = Field(description="Scheme identifier.", examples=["sch_eq_01"])
    scheme_name: str = Field(default="")
    amount: Optional[Decimal] = Field(default=None, gt=0)
    units: Optional[Decimal] = Field(default=None, gt=0)
    target_scheme_id: Optional[str] = Field(default=None, description="Switch target scheme.")
    target_scheme_name: Optional[str] = Field(default=None)
    goal_id: Optional[str] = Field(default=None)
    goal_name: Optional[str] = Field(default=None)
    valid_from: date = Field(description="First date the trigger may fire.")
    valid_until: Optional[date] = Field(default=None, description="Last date the trigger may fire.")
    status: TriggerOrderStatus = Field(default="Active")
    is_enabled: bool = Field(default=True)
    triggered_at: Optional[datetime] = Field(default=None)
    executed_at: Optional[datetime] = Field(default=None)
    executed_order_id: Optional[str] = Field(default=None)
    execution_status: Optional[ExecutionStatus] = Field(default=None)
    execution_error: Optional[str] = Field(default=None)
    created_by: str = Field(description="Creator actor id.", examples=["rm_007"])
    created_at: datetime
    updated_at: datetime
    version: int = Field(default=1, ge=1)


AutomationRule = Annotated[
    Union[AutoInvestRule, RebalancingRule, TriggerOrder],
    Field(discriminator="automation_type"),
]

RULE_MODELS: dict[str, type[BaseModel]] = {
    "AutoInvest": AutoInvestRule,
    "Rebalancing": RebalancingRule,
    "TriggerOrder": TriggerOrder,
}


def _validate_target_allocation(allocation: Optional[Dict[str, Decimal]]) -> None:
    if allocation is None:
        return
    if not allocation:
        raise ValueError("TARGET_ALLOCATION_REQUIRED")
    for category, percent in allocation.items():
        if not category.strip():
            raise ValueError("TARGET_ALLOCATION_CATEGORY_REQUIRED")
        if percent < 0 or percent > 100:
            raise ValueError("TARGET_ALLOCATION_PERCENT_OUT_OF_RANGE")
    if abs(sum(allocation.values(), Decimal("0")) - Decimal("100")) > ALLOCATION_TOLERANCE:
        raise ValueError("TARGET_ALLOCATION_MUST_SUM_TO_100")


class AutoInvestRuleCreateRequest(BaseModel):
    client_id: str = Field(min_length=1, description="Client identifier.", examples=["cl_001"])
    name: str = Field(min_length=1, description="Rule display name.", examples=["Monthly SIP"])
    description: Optional[str] = Field(default=None)
    scheme_id: str = Field(min_length=1, description="Scheme identifier.", examples=["sch_eq_01"])
    amount: Decimal = Field(gt=0, description="Amount per execution.", examples=["5000"])
    frequency: Frequency = Field(examples=["Monthly"])
    trigger_type: AutoInvestTriggerType = Field(default="Date", examples=["Date"])
    trigger_config: TriggerConfig = Field(default_factory=TriggerConfig)
    goal_id: Optional[str] = Field(default=None)
    start_date: date = Field(examples=["2025-01-05"])
    end_date: Optional[date] = Field(default=None)
    max_total_amount: Optional[Decimal] = Field(default=None, gt=0)
    max_per_execution: Optional[Decimal] = Field(default=None, gt=0)
    min_balance_required: Optional[Decimal] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _validate_rule(self) -> "AutoInvestRuleCreateRequest":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("END_DATE_BEFORE_START_DATE")
        if self.max_per_execution is not None and self.amount > self.max_per_execution:
            raise ValueError("AMOUNT_EXCEEDS_MAX_PER_EXECUTION")
        if self.max_total_amount is not None and self.amount > self.max_total_amount:
            raise ValueError("AMOUNT_EXCEEDS_MAX_TOTAL_AMOUNT")
        if self.trigger_type == "Goal Progress" and not self.goal_id:
            raise ValueError("GOAL_ID_REQUIRED_FOR_GOAL_PROGRESS_TRIGGER")
        return self


class AutoInvestRuleUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = Field(default=None)
    amount: Optional[Decimal] = Field(default=None, gt=0)
    frequency: Optional[Frequency] = Field(default=None)
    trigger_config: Optional[TriggerConfig] = Field(default=None)
    end_date: Optional[date] = Field(default=None)
    status: Optional[AutoInvestStatus] = Field(default=None)
    is_enabled: Optional[bool] = Field(default=None)
    max_total_amount: Optional[Decimal] = Field(default=None, gt=0)
    max_per_execution: Optional[Decimal] = Field(default=None, gt=0)
    min_balance_required: Optional[Decimal] = Field(default=None, ge=0)


class RebalancingRuleCreateRequest(BaseModel):
    client_id: str = Field(min_length=1, examples=["cl_001"])
    name: str = Field(min_length=1, examples=["Balanced mandate"])
    description: Optional[str] = Field(default=None)
    strategy: RebalancingStrategy = Field(examples=["Threshold-Based"])
    target_allocation: Dict[str, Decimal] = Field(examples=[{"Equity": "60", "Debt": "40"}])
    threshold_percent: Decimal = Field(gt=0, examples=["5"])
    rebalance_amount: Optional[Decimal] = Field(default=None, gt=0)
    frequency: Optional[Frequency] = Field(default=None)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    trigger_on_drift: bool = Field(default=True)
    trigger_on_schedule: bool = Field(default=False)
    min_drift_percent: Optional[Decimal] = Field(default=None, ge=0)
    execute_automatically: bool = Field(default=False)
    require_confirmation: bool = Field(default=True)

    @model_validator(mode="after")
    def _validate_rule(self) -> "RebalancingRuleCreateRequest":
        _validate_target_allocation(self.target_allocation)
        if self.trigger_on_schedule and self.frequency is None:
            raise ValueError("FREQUENCY_REQUIRED_FOR_SCHEDULE_TRIGGER")
        if not self.trigger_on_drift and not self.trigger_on_schedule:
            raise ValueError("AT_LEAST_ONE_TRIGGER_MODE_REQUIRED")
        return self


class RebalancingRuleUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = Field(default=None)
    target_allocation: Optional[Dict[str, Decimal]] = Field(default=None)
    threshold_percent: Optional[Decimal] = Field(default=None, gt=0)
    rebalance_amount: Optional[Decimal] = Field(default=None, gt=0)
    frequency: Optional[Frequency] = Field(default=None)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    trigger_on_drift: Optional[bool] = Field(default=None)
    trigger_on_schedule: Optional[bool] = Field(default=None)
    min_drift_percent: Optional[Decimal] = Field(default=None, ge=0)
    execute_automatically: Optional[bool] = Field(default=None)
    require_confirmation: Optional[bool] = Field(default=None)
    status: Optional[RebalancingStatus] = Field(default=None)
    is_enabled: Optional[bool] = Field(default=None)

    @model_validator(mode="after")
    def _validate_allocation(self) -> "RebalancingRuleUpdateRequest":
        _validate_target_allocation(self.target_allocation)
        return self


class TriggerOrderCreateRequest(BaseModel):
    client_id: str = Field(min_length=1, examples=["cl_001"])
    name: str = Field(min_length=1, examples=["Buy the dip"])
    description: Optional[str] = Field(default=None)
    trigger_type: TriggerOrderTriggerType = Field(examples=["NAV"])
    trigger_condition: TriggerCondition = Field(examples=["Less Than"])
    trigger_value: Decimal = Field(ge=0, examples=["24.50"])
    trigger_field: Optional[str] = Field(default=None)
    order_type: OrderType = Field(examples=["Purchase"])
    scheme_id: str = Field(min_length=1, examples=["sch_eq_01"])
    amount: Optional[Decimal] = Field(default=None, gt=0, examples=["10000"])
    units: Optional[Decimal] = Field(default=None, gt=0)
    target_scheme_id: Optional[str] = Field(default=None)
    goal_id: Optional[str] = Field(default=None)
    valid_from: date = Field(examples=["2025-01-05"])
    valid_until: Optional[date] = Field(default=None, examples=["2025-06-30"])

    @model_validator(mode="after")
    def _validate_order(self) -> "TriggerOrderCreateRequest":
        if (self.amount is None) == (self.units is None):
            raise ValueError("EXACTLY_ONE_OF_AMOUNT_OR_UNITS_REQUIRED")
        if self.order_type == "Switch" and not self.target_scheme_id:
            raise ValueError("TARGET_SCHEME_REQUIRED_FOR_SWITCH")
        if self.order_type == "Purchase" and self.amount is None:
            raise ValueError("AMOUNT_REQUIRED_FOR_PURCHASE")
        if self.valid_until is not None and self.valid_until < self.valid_from:
            raise ValueError("VALID_UNTIL_BEFORE_VALID_FROM")
        if self.trigger_type == "Goal Progress" and not self.goal_id:
            raise ValueError("GOAL_ID_REQUIRED_FOR_GOAL_PROGRESS_TRIGGER")
        return self


class TriggerOrderUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = Field(default=None)
    trigger_condition: Optional[TriggerCondition] = Field(default=None)
    trigger_value: Optional[Decimal] = Field(default=None, ge=0)
    trigger_field: Optional[str] = Field(default=None)
    amount: Optional[Decimal] = Field(default=None, gt=0)
    units: Optional[Decimal] = Field(default=None, gt=0)
    valid_until: Optional[date] = Field(default=None)
    status: Optional[Literal["Active", "Paused", "Cancelled"]] = Field(default=None)
    is_enabled: Optional[bool] = Field(default=None)

    @model_validator(mode="after")
    def _validate_quantity(self) -> "TriggerOrderUpdateRequest":
        if self.amount is not None and self.units is not None:
            raise ValueError("EXACTLY_ONE_OF_AMOUNT_OR_UNITS_REQUIRED")
        return self


class ExecutionLogRecord(BaseModel):
    id: str = Field(description="Log entry identifier.", examples=["LOG-20250205-00042"])
    automation_type: AutomationType = Field(examples=["AutoInvest"])
    automation_id: str = Field(examples=["AUTO-20250105-00042"])
    client_id: str = Field(examples=["cl_001"])
    execution_date: datetime = Field(description="Attempt timestamp (UTC).")
    status: ExecutionLogStatus = Field(examples=["Success"])
    order_id: Optional[str] = Field(default=None, examples=["ord_3f1a9c2b7d10"])
    error: Optional[str] = Field(default=None)
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class GoalSnapshot(BaseModel):
    goal_id: str = Field(examples=["goal_retire"])
    name: str = Field(default="", examples=["Retirement"])
    progress: Decimal = Field(description="Progress percentage.", examples=["72.5"])


class MarketQuote(BaseModel):
    scheme_id: str = Field(examples=["sch_eq_01"])
    nav: Optional[Decimal] = Field(default=None, examples=["25.50"])
    price: Optional[Decimal] = Field(default=None)
    previous_nav: Optional[Decimal] = Field(default=None, examples=["25.90"])
    as_of: Optional[date] = Field(default=None)


class PortfolioHolding(BaseModel):
    scheme_id: str = Field(examples=["sch_eq_01"])
    scheme_name: str = Field(default="")
    category: str = Field(examples=["Equity"])
    current_value: Decimal = Field(ge=0, examples=["60000"])
    units: Optional[Decimal] = Field(default=None, ge=0)


class PortfolioSnapshot(BaseModel):
    client_id: str = Field(examples=["cl_001"])
    total_value: Decimal = Field(ge=0, examples=["100000"])
    available_balance: Decimal = Field(default=Decimal("0"), ge=0)
    holdings: List[PortfolioHolding] = Field(default_factory=list)
    current_allocation: Dict[str, Decimal] = Field(
        default_factory=dict,
        description="Current allocation percentage by category.",
        examples=[{"Equity": "68", "Debt": "32"}],
    )
    custom_values: Dict[str, Decimal] = Field(default_factory=dict)

    def allocation(self) -> Dict[str, Decimal]:
        if self.current_allocation or self.total_value <= 0:
            return dict(self.current_allocation)
        by_category: Dict[str, Decimal] = {}
        for holding in self.holdings:
            by_category[holding.category] = (
                by_category.get(holding.category, Decimal("0")) + holding.current_value
            )
        return {
            category: value * Decimal("100") / self.total_value
            for category, value in by_category.items()
        }


class RebalancingAction(BaseModel):
    action_type: RebalancingActionType = Field(examples=["Redemption"])
    category: str = Field(examples=["Equity"])
    scheme_id: str = Field(examples=["sch_eq_01"])
    scheme_name: str = Field(default="")
    amount: Decimal = Field(gt=0, examples=["8000"])
    reason: str = Field(examples=["Equity is 8.00% above target"])


class RebalancingPlan(BaseModel):
    rule_id: str
    current_allocation: Dict[str, Decimal]
    target_allocation: Dict[str, Decimal]
    max_drift_percent: Decimal
    actions: List[RebalancingAction] = Field(default_factory=list)


RuleExecutionOutcome = Literal[
    "Executed",
    "Failed",
    "Skipped",
    "Expired",
    "Completed",
    "NotDue",
    "ClaimLost",
    "NotFound",
]


class RuleExecutionResult(BaseModel):
    success: bool = Field(description="True when an order was submitted.", examples=[True])
    automation_type: AutomationType = Field(examples=["AutoInvest"])
    rule_id: str = Field(examples=["AUTO-20250105-00042"])
    outcome: RuleExecutionOutcome = Field(examples=["Executed"])
    message: str = Field(examples=["EXECUTION_DATE_REACHED"])
    order_ids: List[str] = Field(default_factory=list)
    log_id: Optional[str] = Field(default=None)


class CategoryPassResult(BaseModel):
    automation_type: AutomationType = Field(examples=["AutoInvest"])
    evaluated: int = 0
    executed: int = 0
    failed: int = 0
    skipped: int = 0
    error: Optional[str] = Field(
        default=None, description="Category-level failure that aborted this category."
    )
    results: List[RuleExecutionResult] = Field(default_factory=list)

    def record(self, result: RuleExecutionResult) -> None:
        self.evaluated += 1
        if result.outcome == "Executed":
            self.executed += 1
        elif result.outcome in {"Failed", "Expired", "Completed"}:
            self.failed += 1
        elif result.outcome == "Skipped":
            self.skipped += 1
        if result.outcome not in {"NotDue", "ClaimLost"}:
            self.results.append(result)


class SchedulerPassResult(BaseModel):
    started_at: datetime
    finished_at: datetime
    categories: List[CategoryPassResult] = Field(default_factory=list)


class SchedulerStatusResponse(BaseModel):
    is_running: bool = Field(examples=[True])
    interval_seconds: float = Field(examples=[3600.0])
    last_pass_started_at: Optional[datetime] = None
    last_pass_finished_at: Optional[datetime] = None
    pass_count: int = 0
    last_pass: Optional[SchedulerPassResult] = None


class AutomationRuleListResponse(BaseModel):
    items: List[AutomationRule] = Field(default_factory=list)


class ExecutionLogListResponse(BaseModel):
    items: List[ExecutionLogRecord] = Field(default_factory=list)
