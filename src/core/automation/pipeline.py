"""
Automation execution pipeline.

Each fired rule goes through: claim (compare-and-set on the rule version) ->
order calculation -> compliance -> submission -> rule commit + execution log.
A rule is claimed before any order is computed, so a concurrent pass that read
the same version loses the claim and skips the rule without logging.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from src.core.automation.collaborators import (
    ClientProfileProvider,
    Clock,
    GoalLookup,
    MarketDataProvider,
    OrderSubmissionSink,
    PortfolioProvider,
)
from src.core.automation.ids import EXECUTION_LOG_PREFIX, new_automation_id
from src.core.automation.metrics import AUTOMATION_EXECUTIONS
from src.core.automation.models import (
    AutoInvestRule,
    AutomationRule,
    AutomationType,
    CategoryPassResult,
    ExecutionLogRecord,
    ExecutionLogStatus,
    MarketQuote,
    PortfolioSnapshot,
    RebalancingAction,
    RebalancingPlan,
    RebalancingRule,
    RuleExecutionOutcome,
    RuleExecutionResult,
    TriggerOrder,
)
from src.core.automation.rebalancing import plan_rebalancing
from src.core.automation.repository import AutomationRepository, StorageError
from src.core.automation.schedule import next_execution_date
from src.core.automation.triggers import TriggerContext, evaluate_trigger
from src.core.common.async_calls import await_with_timeout, run_blocking
from src.core.compliance import ComplianceEngine
from src.core.orders.calculator import OrderCalculator, finalize_amount, finalize_units
from src.core.orders.models import (
    ClientProfile,
    ComplianceContext,
    ComplianceOutcome,
    FinalizedOrder,
    OrderLine,
    SubmittedOrderRecord,
    TransactionMode,
)

logger = logging.getLogger(__name__)

_MAX_UPDATE_ATTEMPTS = 3


class OrderRejectedError(Exception):
    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.details = details or {}


class AutomationPipeline:
    def __init__(
        self,
        *,
        repository: AutomationRepository,
        calculator: OrderCalculator,
        compliance_engine: ComplianceEngine,
        order_sink: OrderSubmissionSink,
        clock: Clock,
        goal_lookup: Optional[GoalLookup] = None,
        market_data: Optional[MarketDataProvider] = None,
        portfolio_provider: Optional[PortfolioProvider] = None,
        client_profiles: Optional[ClientProfileProvider] = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._repository = repository
        self._calculator = calculator
        self._compliance_engine = compliance_engine
        self._order_sink = order_sink
        self._clock = clock
        self._goal_lookup = goal_lookup
        self._market_data = market_data
        self._portfolio_provider = portfolio_provider
        self._client_profiles = client_profiles
        self._timeout_seconds = timeout_seconds

    @property
    def clock(self) -> Clock:
        return self._clock

    async def close(self) -> None:
        await self._order_sink.close()

    async def run_auto_invest_pass(self) -> CategoryPassResult:
        return await self._run_category("AutoInvest", self.process_auto_invest)

    async def run_rebalancing_pass(self) -> CategoryPassResult:
        return await self._run_category("Rebalancing", self.process_rebalancing)

    async def run_trigger_order_pass(self, client_id: Optional[str] = None) -> CategoryPassResult:
        return await self._run_category(
            "TriggerOrder", self.process_trigger_order, client_id=client_id
        )

    async def execute_auto_invest(self, rule_id: str) -> RuleExecutionResult:
        rule = await self._get_rule("AutoInvest", rule_id)
        if rule is None:
            return _not_found("AutoInvest", rule_id)
        return await self.process_auto_invest(rule)

    async def check_rebalancing(self, rule_id: str) -> RuleExecutionResult:
        rule = await self._get_rule("Rebalancing", rule_id)
        if rule is None:
            return _not_found("Rebalancing", rule_id)
        return await self.process_rebalancing(rule)

    async def execute_rebalancing(self, rule_id: str, *, confirmed_by: str) -> RuleExecutionResult:
        """Operator confirmation of a rebalance that was proposed but not submitted."""
        rule = await self._get_rule("Rebalancing", rule_id)
        if rule is None:
            return _not_found("Rebalancing", rule_id)
        if rule.status != "Active" or not rule.is_enabled:
            return _result(rule, "NotDue", "RULE_INACTIVE")
        portfolio = await self._portfolio(rule.client_id)
        if portfolio is None:
            return _result(rule, "Failed", "PORTFOLIO_UNAVAILABLE")
        claimed = await self._claim(rule, last_rebalanced_date=self._clock.today())
        if claimed is None:
            return _result(rule, "ClaimLost", "RULE_ALREADY_CLAIMED")
        plan = plan_rebalancing(rule=claimed, portfolio=portfolio)
        if not plan.actions:
            return await self._skip_rebalancing(
                claimed, "No rebalancing actions required", plan=plan
            )
        return await self._submit_rebalancing(
            claimed, plan=plan, portfolio=portfolio, confirmed_by=confirmed_by
        )

    async def process_auto_invest(self, rule: AutoInvestRule) -> RuleExecutionResult:
        if rule.status != "Active" or not rule.is_enabled:
            return _result(rule, "NotDue", "RULE_INACTIVE")
        today = self._clock.today()
        context = await self._trigger_context(rule)
        decision = evaluate_trigger(rule, context)
        reason = decision.reason
        missed_date = None
        if not decision.fire:
            if rule.trigger_type != "Date" or rule.next_execution_date >= today:
                return _result(rule, "NotDue", decision.reason)
            if self._next_auto_invest_date(rule, inclusive=True) > today:
                return await self._skip_missed_auto_invest(rule)
            # missed window, but today is itself a scheduled date
            missed_date = rule.next_execution_date
            reason = "EXECUTION_DATE_REACHED"

        claimed = await self._claim_auto_invest(rule)
        if claimed is None:
            return _result(rule, "ClaimLost", "RULE_ALREADY_CLAIMED")

        if claimed.end_date is not None and today > claimed.end_date:
            return await self._complete_auto_invest(claimed, "Rule expired")
        if claimed.max_total_amount is not None and (
            (claimed.execution_count + 1) * claimed.amount > claimed.max_total_amount
        ):
            return await self._complete_auto_invest(claimed, "Maximum total amount reached")

        try:
            order, compliance = await self._build_auto_invest_order(claimed)
            submitted = await self._submit(order)
        except OrderRejectedError as exc:
            return await self._fail_auto_invest(claimed, str(exc), details=exc.details)
        except Exception as exc:
            logger.exception(
                "automation.auto_invest.execution_failed",
                extra={"extra_fields": {"automation_id": claimed.id}},
            )
            return await self._fail_auto_invest(claimed, _describe(exc))

        details: dict[str, Any] = {
            "trigger_reason": reason,
            "amount": str(submitted.amount),
            "units": str(submitted.units) if submitted.units is not None else None,
            "warnings": compliance.warnings,
            "advisor_notes": compliance.advisor_notes,
        }
        if missed_date is not None:
            details["missed_execution_date"] = missed_date.isoformat()

        async def commit() -> RuleExecutionResult:
            now = self._clock.now()
            await self._update_rule(
                claimed,
                lambda current: {
                    "execution_count": current.execution_count + 1,
                    "last_execution_date": now,
                    "last_execution_status": "Success",
                    "last_execution_error": None,
                },
            )
            log = await self._append_log(
                claimed, "Success", order_id=submitted.order_id, details=details
            )
            return _result(claimed, "Executed", reason, order_ids=[submitted.order_id], log=log)

        return await self._commit_submission(claimed, [submitted], commit)

    async def process_rebalancing(self, rule: RebalancingRule) -> RuleExecutionResult:
        if rule.status != "Active" or not rule.is_enabled:
            return _result(rule, "NotDue", "RULE_INACTIVE")
        today = self._clock.today()
        portfolio = await self._portfolio(rule.client_id) if rule.trigger_on_drift else None
        context = TriggerContext(today=today, now=self._clock.now(), portfolio=portfolio)
        decision = evaluate_trigger(rule, context)
        if not decision.fire:
            return _result(rule, "NotDue", decision.reason)

        claimed = await self._claim(
            rule,
            last_rebalanced_date=today,
            next_rebalancing_date=self._next_rebalancing_date(rule),
        )
        if claimed is None:
            return _result(rule, "ClaimLost", "RULE_ALREADY_CLAIMED")

        if portfolio is None:
            portfolio = await self._portfolio(rule.client_id)
        if portfolio is None:
            return await self._fail_rebalancing(claimed, "Portfolio snapshot unavailable")
        plan = plan_rebalancing(rule=claimed, portfolio=portfolio)
        if not plan.actions:
            return await self._skip_rebalancing(
                claimed, "No rebalancing actions required", plan=plan
            )
        if claimed.require_confirmation or not claimed.execute_automatically:
            return await self._skip_rebalancing(claimed, "Awaiting confirmation", plan=plan)
        return await self._submit_rebalancing(claimed, plan=plan, portfolio=portfolio)

    async def process_trigger_order(self, rule: TriggerOrder) -> RuleExecutionResult:
        if rule.status != "Active" or not rule.is_enabled:
            return _result(rule, "NotDue", "RULE_INACTIVE")
        context = await self._trigger_context(rule)
        decision = evaluate_trigger(rule, context)
        if decision.transition == "Expired":
            return await self._expire_trigger_order(rule)
        if not decision.fire:
            return _result(rule, "NotDue", decision.reason)

        claimed = await self._claim(rule, status="Triggered", triggered_at=self._clock.now())
        if claimed is None:
            return _result(rule, "ClaimLost", "RULE_ALREADY_CLAIMED")

        try:
            order, compliance = await self._build_trigger_order(
                claimed, portfolio=context.portfolio
            )
            submitted = await self._submit(order)
        except OrderRejectedError as exc:
            return await self._fail_trigger_order(claimed, str(exc), details=exc.details)
        except Exception as exc:
            logger.exception(
                "automation.trigger_order.execution_failed",
                extra={"extra_fields": {"automation_id": claimed.id}},
            )
            return await self._fail_trigger_order(claimed, _describe(exc))

        async def commit() -> RuleExecutionResult:
            now = self._clock.now()
            await self._update_rule(
                claimed,
                lambda _current: {
                    "status": "Executed",
                    "executed_at": now,
                    "executed_order_id": submitted.order_id,
                    "execution_status": "Success",
                    "execution_error": None,
                },
            )
            log = await self._append_log(
                claimed,
                "Success",
                order_id=submitted.order_id,
                details={
                    "trigger_reason": decision.reason,
                    "order_type": claimed.order_type,
                    "order": order.model_dump(mode="json"),
                    "warnings": compliance.warnings,
                },
            )
            return _result(
                claimed, "Executed", decision.reason, order_ids=[submitted.order_id], log=log
            )

        return await self._commit_submission(claimed, [submitted], commit)

    async def _run_category(
        self,
        automation_type: AutomationType,
        processor: Callable,
        *,
        client_id: Optional[str] = None,
    ) -> CategoryPassResult:
        result = CategoryPassResult(automation_type=automation_type)
        rules = await self._store(
            self._repository.list_rules,
            automation_type=automation_type,
            client_id=client_id,
            status="Active",
            operation="list_rules",
        )
        for rule in rules:
            try:
                outcome = await processor(rule)
            except Exception as exc:
                logger.exception(
                    "automation.rule.evaluation_failed",
                    extra={
                        "extra_fields": {
                            "automation_type": automation_type,
                            "automation_id": rule.id,
                        }
                    },
                )
                outcome = _result(rule, "Failed", _describe(exc))
            result.record(outcome)
        return result

    def _next_auto_invest_date(self, rule: AutoInvestRule, *, inclusive: bool = False) -> date:
        return next_execution_date(
            frequency=rule.frequency,
            reference=self._clock.today(),
            anchor=rule.start_date,
            day_of_month=rule.trigger_config.day_of_month,
            day_of_week=rule.trigger_config.day_of_week,
            inclusive=inclusive,
        )

    async def _claim_auto_invest(self, rule: AutoInvestRule) -> Optional[AutoInvestRule]:
        if rule.next_execution_date > self._clock.today():
            return None
        return await self._claim(rule, next_execution_date=self._next_auto_invest_date(rule))

    async def _claim(self, rule: AutomationRule, **changes) -> Optional[AutomationRule]:
        claimed = rule.model_copy(
            update={**changes, "version": rule.version + 1, "updated_at": self._clock.now()}
        )
        won = await self._store(
            self._repository.compare_and_set_rule,
            claimed,
            expected_version=rule.version,
            operation="claim_rule",
        )
        return claimed if won else None

    async def _update_rule(
        self, rule: AutomationRule, changes: Callable[[Any], dict[str, Any]]
    ) -> AutomationRule:
        for _ in range(_MAX_UPDATE_ATTEMPTS):
            current = await self._get_rule(rule.automation_type, rule.id)
            if current is None:
                raise StorageError("AUTOMATION_RULE_NOT_FOUND")
            updated = current.model_copy(
                update={
                    **changes(current),
                    "version": current.version + 1,
                    "updated_at": self._clock.now(),
                }
            )
            if await self._store(
                self._repository.compare_and_set_rule,
                updated,
                expected_version=current.version,
                operation="update_rule",
            ):
                return updated
        raise StorageError("AUTOMATION_RULE_UPDATE_CONFLICT")

    async def _skip_missed_auto_invest(self, rule: AutoInvestRule) -> RuleExecutionResult:
        missed_date = rule.next_execution_date
        claimed = await self._claim_auto_invest(rule)
        if claimed is None:
            return _result(rule, "ClaimLost", "RULE_ALREADY_CLAIMED")
        if claimed.end_date is not None and self._clock.today() > claimed.end_date:
            return await self._complete_auto_invest(claimed, "Rule expired")
        log = await self._append_log(
            claimed,
            "Skipped",
            error=f"Missed execution window {missed_date.isoformat()}",
            details={
                "missed_execution_date": missed_date.isoformat(),
                "next_execution_date": claimed.next_execution_date.isoformat(),
            },
        )
        return _result(claimed, "Skipped", "MISSED_EXECUTION_WINDOW", log=log)

    async def _complete_auto_invest(
        self, rule: AutoInvestRule, reason: str
    ) -> RuleExecutionResult:
        now = self._clock.now()
        await self._update_rule(
            rule,
            lambda _current: {
                "status": "Completed",
                "last_execution_date": now,
                "last_execution_status": "Failed",
                "last_execution_error": reason,
            },
        )
        log = await self._append_log(rule, "Failed", error=reason)
        return _result(rule, "Completed", reason, log=log)

    async def _fail_auto_invest(
        self, rule: AutoInvestRule, error: str, *, details: Optional[dict] = None
    ) -> RuleExecutionResult:
        now = self._clock.now()
        await self._update_rule(
            rule,
            lambda _current: {
                "last_execution_date": now,
                "last_execution_status": "Failed",
                "last_execution_error": error,
            },
        )
        log = await self._append_log(rule, "Failed", error=error, details=details)
        return _result(rule, "Failed", error, log=log)

    async def _expire_trigger_order(self, rule: TriggerOrder) -> RuleExecutionResult:
        expired = await self._claim(rule, status="Expired")
        if expired is None:
            return _result(rule, "ClaimLost", "RULE_ALREADY_CLAIMED")
        log = await self._append_log(
            expired,
            "Failed",
            error="Trigger order expired",
            details={"valid_until": rule.valid_until.isoformat() if rule.valid_until else None},
        )
        return _result(expired, "Expired", "VALID_UNTIL_PASSED", log=log)

    async def _fail_trigger_order(
        self, rule: TriggerOrder, error: str, *, details: Optional[dict] = None
    ) -> RuleExecutionResult:
        await self._update_rule(
            rule,
            lambda _current: {
                "status": "Paused",
                "execution_status": "Failed",
                "execution_error": error,
            },
        )
        log = await self._append_log(rule, "Failed", error=error, details=details)
        return _result(rule, "Failed", error, log=log)

    async def _skip_rebalancing(
        self, rule: RebalancingRule, reason: str, *, plan: RebalancingPlan
    ) -> RuleExecutionResult:
        await self._update_rule(rule, lambda _current: {"last_execution_status": "Skipped"})
        log = await self._append_log(
            rule, "Skipped", error=reason, details={"plan": plan.model_dump(mode="json")}
        )
        return _result(rule, "Skipped", reason, log=log)

    async def _fail_rebalancing(
        self,
        rule: RebalancingRule,
        error: str,
        *,
        details: Optional[dict] = None,
        order_ids: Optional[list[str]] = None,
    ) -> RuleExecutionResult:
        await self._update_rule(rule, lambda _current: {"last_execution_status": "Failed"})
        log = await self._append_log(rule, "Failed", error=error, details=details)
        return _result(rule, "Failed", error, order_ids=order_ids, log=log)

    async def _submit_rebalancing(
        self,
        rule: RebalancingRule,
        *,
        plan: RebalancingPlan,
        portfolio: PortfolioSnapshot,
        confirmed_by: Optional[str] = None,
    ) -> RuleExecutionResult:
        details: dict[str, Any] = {"plan": plan.model_dump(mode="json")}
        if confirmed_by is not None:
            details["confirmed_by"] = confirmed_by
        submitted: list[SubmittedOrderRecord] = []
        try:
            orders = [await self._build_rebalancing_order(rule, action) for action in plan.actions]
            compliance = await self._check_compliance(
                client_id=rule.client_id,
                lines=[
                    OrderLine(
                        scheme_id=action.scheme_id,
                        amount=action.amount,
                        transaction_type=action.action_type,
                    )
                    for action in plan.actions
                ],
                portfolio=portfolio,
            )
            for order in orders:
                submitted.append(await self._submit(order))
        except Exception as exc:
            if isinstance(exc, OrderRejectedError):
                error = str(exc)
                details.update(exc.details)
            else:
                logger.exception(
                    "automation.rebalancing.execution_failed",
                    extra={"extra_fields": {"automation_id": rule.id}},
                )
                error = _describe(exc)
            details["order_ids"] = [order.order_id for order in submitted]
            return await self._commit_submission(
                rule,
                submitted,
                lambda: self._fail_rebalancing(
                    rule, error, details=details, order_ids=details["order_ids"]
                ),
            )

        order_ids = [order.order_id for order in submitted]
        details["order_ids"] = order_ids
        details["warnings"] = compliance.warnings

        async def commit() -> RuleExecutionResult:
            await self._update_rule(
                rule,
                lambda current: {
                    "execution_count": current.execution_count + 1,
                    "last_execution_status": "Success",
                },
            )
            log = await self._append_log(rule, "Success", order_id=order_ids[0], details=details)
            return _result(rule, "Executed", "REBALANCE_SUBMITTED", order_ids=order_ids, log=log)

        return await self._commit_submission(rule, submitted, commit)

    async def _build_auto_invest_order(
        self, rule: AutoInvestRule
    ) -> tuple[FinalizedOrder, ComplianceOutcome]:
        if rule.max_per_execution is not None and rule.amount > rule.max_per_execution:
            raise OrderRejectedError("Amount exceeds maximum per execution")
        portfolio = await self._portfolio(rule.client_id)
        if rule.min_balance_required is not None:
            available = portfolio.available_balance if portfolio is not None else Decimal("0")
            if available < rule.min_balance_required:
                raise OrderRejectedError("Insufficient balance for minimum balance requirement")
        calculation = await self._calculator.calculate_purchase(
            scheme_id=rule.scheme_id, amount=rule.amount
        )
        if not calculation.success:
            raise OrderRejectedError(calculation.message, details={"errors": calculation.errors})
        purchase = calculation.data
        compliance = await self._check_compliance(
            client_id=rule.client_id,
            lines=[OrderLine(scheme_id=rule.scheme_id, amount=rule.amount)],
            portfolio=portfolio,
        )
        order = FinalizedOrder(
            client_id=rule.client_id,
            order_type="Purchase",
            scheme_id=rule.scheme_id,
            scheme_name=purchase.scheme_name,
            amount=finalize_amount(purchase.amount),
            units=finalize_units(purchase.units),
            nav=purchase.nav,
            automation_type="AutoInvest",
            automation_id=rule.id,
        )
        return order, compliance

    async def _build_trigger_order(
        self, rule: TriggerOrder, *, portfolio: Optional[PortfolioSnapshot]
    ) -> tuple[FinalizedOrder, ComplianceOutcome]:
        if portfolio is None:
            portfolio = await self._portfolio(rule.client_id)
        today = self._clock.today()
        base = {
            "client_id": rule.client_id,
            "order_type": rule.order_type,
            "scheme_id": rule.scheme_id,
            "automation_type": "TriggerOrder",
            "automation_id": rule.id,
        }
        if rule.order_type == "Purchase":
            result = await self._calculator.calculate_purchase(
                scheme_id=rule.scheme_id, amount=rule.amount
            )
            _raise_on_failure(result)
            purchase = result.data
            lines = [OrderLine(scheme_id=rule.scheme_id, amount=purchase.amount)]
            order = FinalizedOrder(
                **base,
                scheme_name=purchase.scheme_name,
                amount=finalize_amount(purchase.amount),
                units=finalize_units(purchase.units),
                nav=purchase.nav,
            )
        elif rule.order_type == "Redemption":
            result = await self._calculator.calculate_redemption(
                scheme_id=rule.scheme_id, as_of=today, amount=rule.amount, units=rule.units
            )
            _raise_on_failure(result)
            redemption = result.data
            lines = [
                OrderLine(
                    scheme_id=rule.scheme_id,
                    amount=redemption.gross_amount,
                    transaction_type="Redemption",
                )
            ]
            order = FinalizedOrder(
                **base,
                scheme_name=redemption.scheme_name,
                amount=finalize_amount(redemption.gross_amount),
                units=finalize_units(redemption.units),
                nav=redemption.nav,
                details={"calculation": redemption.model_dump(mode="json")},
            )
        else:
            result = await self._calculator.calculate_switch(
                source_scheme_id=rule.scheme_id,
                target_scheme_id=rule.target_scheme_id or "",
                amount=rule.amount,
                units=rule.units,
            )
            _raise_on_failure(result)
            switch = result.data
            lines = [
                OrderLine(
                    scheme_id=switch.source_scheme_id,
                    amount=switch.gross_amount,
                    transaction_type="Switch",
                ),
                OrderLine(scheme_id=switch.target_scheme_id, amount=switch.net_amount),
            ]
            order = FinalizedOrder(
                **base,
                scheme_name=switch.source_scheme_name,
                target_scheme_id=switch.target_scheme_id,
                amount=finalize_amount(switch.gross_amount),
                units=finalize_units(switch.source_units),
                nav=switch.source_nav,
                details={"calculation": switch.model_dump(mode="json")},
            )
        compliance = await self._check_compliance(
            client_id=rule.client_id, lines=lines, portfolio=portfolio
        )
        return order, compliance

    async def _build_rebalancing_order(
        self, rule: RebalancingRule, action: RebalancingAction
    ) -> FinalizedOrder:
        base = {
            "client_id": rule.client_id,
            "order_type": action.action_type,
            "scheme_id": action.scheme_id,
            "automation_type": "Rebalancing",
            "automation_id": rule.id,
        }
        if action.action_type == "Purchase":
            result = await self._calculator.calculate_purchase(
                scheme_id=action.scheme_id, amount=action.amount
            )
            _raise_on_failure(result)
            return FinalizedOrder(
                **base,
                scheme_name=result.data.scheme_name,
                amount=finalize_amount(result.data.amount),
                units=finalize_units(result.data.units),
                nav=result.data.nav,
                details={"reason": action.reason},
            )
        result = await self._calculator.calculate_redemption(
            scheme_id=action.scheme_id, as_of=self._clock.today(), amount=action.amount
        )
        _raise_on_failure(result)
        return FinalizedOrder(
            **base,
            scheme_name=result.data.scheme_name,
            amount=finalize_amount(result.data.gross_amount),
            units=finalize_units(result.data.units),
            nav=result.data.nav,
            details={"reason": action.reason, "calculation": result.data.model_dump(mode="json")},
        )

    async def _check_compliance(
        self,
        *,
        client_id: str,
        lines: list[OrderLine],
        portfolio: Optional[PortfolioSnapshot],
    ) -> ComplianceOutcome:
        schemes = {}
        for scheme_id in sorted({line.scheme_id for line in lines}):
            scheme = await self._calculator.get_scheme(scheme_id=scheme_id)
            if scheme is not None:
                schemes[scheme_id] = scheme
        profile = await self._client_profile(client_id)
        context = ComplianceContext(
            order_lines=lines,
            schemes=schemes,
            nominees=profile.nominees if profile is not None else [],
            opt_out_of_nomination=profile.opt_out_of_nomination if profile is not None else False,
            transaction_mode=TransactionMode(mode="Automated"),
            current_allocation=portfolio.allocation() if portfolio is not None else None,
            risk_acknowledged=profile.risk_acknowledged if profile is not None else False,
            as_of=self._clock.today(),
        )
        outcome = self._compliance_engine.check(context)
        if not outcome.is_valid:
            raise OrderRejectedError(
                "; ".join(outcome.errors),
                details={"compliance": outcome.model_dump(mode="json")},
            )
        return outcome

    async def _submit(self, order: FinalizedOrder) -> SubmittedOrderRecord:
        order_id = await await_with_timeout(
            self._order_sink.submit(order),
            timeout=self._timeout_seconds,
            operation="order_submission",
        )
        return SubmittedOrderRecord(
            **order.model_dump(), order_id=order_id, submitted_at=self._clock.now()
        )

    async def _commit_submission(
        self,
        rule: AutomationRule,
        submitted: list[SubmittedOrderRecord],
        commit: Callable[[], Awaitable[RuleExecutionResult]],
    ) -> RuleExecutionResult:
        """
        Record orders already accepted by the sink, then run `commit`.

        A store failure here leaves a Failed log naming the submitted order ids.
        """
        if not submitted:
            return await commit()
        order_ids = [record.order_id for record in submitted]
        try:
            for record in submitted:
                await self._store(self._repository.append_order, record, operation="append_order")
            return await commit()
        except Exception as exc:
            logger.exception(
                "automation.execution.commit_failed",
                extra={"extra_fields": {"automation_id": rule.id, "order_ids": order_ids}},
            )
            error = f"Orders submitted but not recorded: {_describe(exc)}"
            log = await self._append_log(
                rule,
                "Failed",
                order_id=order_ids[0],
                error=error,
                details={"order_ids": order_ids, "reconciliation_required": True},
            )
            return _result(rule, "Failed", error, order_ids=order_ids, log=log)

    async def _append_log(
        self,
        rule: AutomationRule,
        status: ExecutionLogStatus,
        *,
        order_id: Optional[str] = None,
        error: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> ExecutionLogRecord:
        now = self._clock.now()
        record = ExecutionLogRecord(
            id=new_automation_id(EXECUTION_LOG_PREFIX, now),
            automation_type=rule.automation_type,
            automation_id=rule.id,
            client_id=rule.client_id,
            execution_date=now,
            status=status,
            order_id=order_id,
            error=error,
            details=details or {},
            created_at=now,
        )
        await self._store(
            self._repository.append_execution_log, record, operation="append_execution_log"
        )
        AUTOMATION_EXECUTIONS.labels(automation_type=rule.automation_type, status=status).inc()
        logger.info(
            "automation.execution.recorded",
            extra={
                "extra_fields": {
                    "automation_type": rule.automation_type,
                    "automation_id": rule.id,
                    "client_id": rule.client_id,
                    "status": status,
                    "order_id": order_id,
                    "error": error,
                }
            },
        )
        return record

    async def _trigger_context(self, rule: AutomationRule) -> TriggerContext:
        quotes: dict[str, MarketQuote] = {}
        goals = {}
        portfolio = None
        if isinstance(rule, TriggerOrder):
            if rule.trigger_type in {"NAV", "Price"}:
                quote = await self._quote(rule.scheme_id)
                if quote is not None:
                    quotes[rule.scheme_id] = quote
            if rule.trigger_type in {"Portfolio Value", "Custom"}:
                portfolio = await self._portfolio(rule.client_id)
        if rule.trigger_type == "Goal Progress" and rule.goal_id and self._goal_lookup:
            goal = await await_with_timeout(
                self._goal_lookup.get_goal(goal_id=rule.goal_id),
                timeout=self._timeout_seconds,
                operation="goal_lookup",
            )
            if goal is not None:
                goals[rule.goal_id] = goal
        return TriggerContext(
            today=self._clock.today(),
            now=self._clock.now(),
            quotes=quotes,
            portfolio=portfolio,
            goals=goals,
        )

    async def _quote(self, scheme_id: str) -> Optional[MarketQuote]:
        if self._market_data is not None:
            return await await_with_timeout(
                self._market_data.get_quote(scheme_id=scheme_id),
                timeout=self._timeout_seconds,
                operation="market_data",
            )
        scheme = await self._calculator.get_scheme(scheme_id=scheme_id)
        if scheme is None:
            return None
        return MarketQuote(
            scheme_id=scheme.scheme_id,
            nav=scheme.nav,
            price=scheme.nav,
            previous_nav=scheme.previous_nav,
        )

    async def _portfolio(self, client_id: str) -> Optional[PortfolioSnapshot]:
        if self._portfolio_provider is None:
            return None
        return await await_with_timeout(
            self._portfolio_provider.get_portfolio(client_id=client_id),
            timeout=self._timeout_seconds,
            operation="portfolio_lookup",
        )

    async def _client_profile(self, client_id: str) -> Optional[ClientProfile]:
        if self._client_profiles is None:
            return None
        return await await_with_timeout(
            self._client_profiles.get_client_profile(client_id=client_id),
            timeout=self._timeout_seconds,
            operation="client_profile_lookup",
        )

    async def _get_rule(self, automation_type: AutomationType, rule_id: str):
        return await self._store(
            self._repository.get_rule,
            automation_type=automation_type,
            rule_id=rule_id,
            operation="get_rule",
        )

    async def _store(self, method: Callable, *args, operation: str, **kwargs):
        return await run_blocking(
            method, *args, timeout=self._timeout_seconds, operation=operation, **kwargs
        )

    def _next_rebalancing_date(self, rule: RebalancingRule):
        if rule.frequency is None:
            return None
        return next_execution_date(
            frequency=rule.frequency,
            reference=self._clock.today(),
            anchor=rule.created_at.date(),
            day_of_month=rule.day_of_month,
            day_of_week=rule.day_of_week,
        )


def _raise_on_failure(result) -> None:
    if not result.success:
        raise OrderRejectedError(result.message, details={"errors": result.errors})


def _describe(exc: Exception) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


def _result(
    rule: AutomationRule,
    outcome: RuleExecutionOutcome,
    message: str,
    *,
    order_ids: Optional[list[str]] = None,
    log: Optional[ExecutionLogRecord] = None,
) -> RuleExecutionResult:
    return RuleExecutionResult(
        success=outcome == "Executed",
        automation_type=rule.automation_type,
        rule_id=rule.id,
        outcome=outcome,
        message=message,
        order_ids=order_ids or [],
        log_id=log.id if log is not None else None,
    )


def _not_found(automation_type: AutomationType, rule_id: str) -> RuleExecutionResult:
    return RuleExecutionResult(
        success=False,
        automation_type=automation_type,
        rule_id=rule_id,
        outcome="NotFound",
        message="AUTOMATION_RULE_NOT_FOUND",
    )
