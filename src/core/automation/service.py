import logging
from datetime import date
from typing import Any, Optional

from pydantic import ValidationError

from src.core.automation.collaborators import Clock, GoalLookup, SchemeLookup
from src.core.automation.ids import (
    AUTO_INVEST_PREFIX,
    REBALANCING_PREFIX,
    TRIGGER_ORDER_PREFIX,
    new_automation_id,
)
from src.core.automation.models import (
    TERMINAL_TRIGGER_ORDER_STATUSES,
    AutoInvestRule,
    AutoInvestRuleCreateRequest,
    AutoInvestRuleUpdateRequest,
    AutomationRule,
    AutomationType,
    ExecutionLogRecord,
    RebalancingRule,
    RebalancingRuleCreateRequest,
    RebalancingRuleUpdateRequest,
    TriggerOrder,
    TriggerOrderCreateRequest,
    TriggerOrderUpdateRequest,
)
from src.core.automation.repository import AutomationRepository
from src.core.automation.schedule import initial_execution_date
from src.core.common.async_calls import await_with_timeout, run_blocking
from src.core.orders.models import SubmittedOrderRecord

logger = logging.getLogger(__name__)

DEFAULT_LOG_LIMIT = 100
_AUTO_INVEST_SCHEDULE_FIELDS = {"frequency", "trigger_config"}
_REBALANCING_SCHEDULE_FIELDS = {"frequency", "day_of_month", "day_of_week", "trigger_on_schedule"}


class AutomationRuleError(Exception):
    pass


class AutomationRuleNotFoundError(AutomationRuleError):
    pass


class AutomationValidationError(AutomationRuleError):
    pass


class AutomationConcurrencyError(AutomationRuleError):
    pass


class AutomationStateConflictError(AutomationRuleError):
    pass


class RuleDeletionNotAllowedError(AutomationRuleError):
    pass


class AutomationRuleService:
    def __init__(
        self,
        *,
        repository: AutomationRepository,
        clock: Clock,
        scheme_lookup: Optional[SchemeLookup] = None,
        goal_lookup: Optional[GoalLookup] = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._scheme_lookup = scheme_lookup
        self._goal_lookup = goal_lookup
        self._timeout_seconds = timeout_seconds

    async def create_auto_invest(
        self, *, payload: AutoInvestRuleCreateRequest, created_by: str
    ) -> AutoInvestRule:
        now = self._clock.now()
        rule = AutoInvestRule(
            **payload.model_dump(),
            id=new_automation_id(AUTO_INVEST_PREFIX, now),
            scheme_name=await self._scheme_name(payload.scheme_id),
            goal_name=await self._goal_name(payload.goal_id),
            next_execution_date=initial_execution_date(
                frequency=payload.frequency,
                start_date=payload.start_date,
                today=self._clock.today(),
                day_of_month=payload.trigger_config.day_of_month,
                day_of_week=payload.trigger_config.day_of_week,
            ),
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        return await self._create(rule)

    async def create_rebalancing(
        self, *, payload: RebalancingRuleCreateRequest, created_by: str
    ) -> RebalancingRule:
        now = self._clock.now()
        rule = RebalancingRule(
            **payload.model_dump(),
            id=new_automation_id(REBALANCING_PREFIX, now),
            next_rebalancing_date=self._initial_rebalancing_date(
                frequency=payload.frequency,
                anchor=now.date(),
                day_of_month=payload.day_of_month,
                day_of_week=payload.day_of_week,
            ),
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        return await self._create(rule)

    async def create_trigger_order(
        self, *, payload: TriggerOrderCreateRequest, created_by: str
    ) -> TriggerOrder:
        now = self._clock.now()
        rule = TriggerOrder(
            **payload.model_dump(),
            id=new_automation_id(TRIGGER_ORDER_PREFIX, now),
            scheme_name=await self._scheme_name(payload.scheme_id),
            target_scheme_name=(
                await self._scheme_name(payload.target_scheme_id)
                if payload.target_scheme_id
                else None
            ),
            goal_name=await self._goal_name(payload.goal_id),
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        return await self._create(rule)

    async def get_rule(self, *, automation_type: AutomationType, rule_id: str) -> AutomationRule:
        rule = await self._store(
            self._repository.get_rule, automation_type=automation_type, rule_id=rule_id
        )
        if rule is None:
            raise AutomationRuleNotFoundError("AUTOMATION_RULE_NOT_FOUND")
        return rule

    async def list_rules(
        self,
        *,
        automation_type: AutomationType,
        client_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[AutomationRule]:
        return await self._store(
            self._repository.list_rules,
            automation_type=automation_type,
            client_id=client_id,
            status=status,
        )

    async def update_auto_invest(
        self, *, rule_id: str, payload: AutoInvestRuleUpdateRequest
    ) -> AutoInvestRule:
        current = await self.get_rule(automation_type="AutoInvest", rule_id=rule_id)
        changes = payload.model_dump(exclude_none=True)
        merged = self._merge(AutoInvestRule, current, changes)
        if merged.end_date is not None and merged.end_date < merged.start_date:
            raise AutomationValidationError("END_DATE_BEFORE_START_DATE")
        if merged.max_per_execution is not None and merged.amount > merged.max_per_execution:
            raise AutomationValidationError("AMOUNT_EXCEEDS_MAX_PER_EXECUTION")
        if merged.max_total_amount is not None and merged.amount > merged.max_total_amount:
            raise AutomationValidationError("AMOUNT_EXCEEDS_MAX_TOTAL_AMOUNT")
        if current.status == "Completed" and changes.get("status", "Completed") != "Completed":
            raise AutomationStateConflictError("AUTO_INVEST_RULE_COMPLETED")
        if _AUTO_INVEST_SCHEDULE_FIELDS & changes.keys():
            merged.next_execution_date = initial_execution_date(
                frequency=merged.frequency,
                start_date=merged.start_date,
                today=self._clock.today(),
                day_of_month=merged.trigger_config.day_of_month,
                day_of_week=merged.trigger_config.day_of_week,
            )
        return await self._save(current, merged)

    async def update_rebalancing(
        self, *, rule_id: str, payload: RebalancingRuleUpdateRequest
    ) -> RebalancingRule:
        current = await self.get_rule(automation_type="Rebalancing", rule_id=rule_id)
        changes = payload.model_dump(exclude_none=True)
        merged = self._merge(RebalancingRule, current, changes)
        if merged.trigger_on_schedule and merged.frequency is None:
            raise AutomationValidationError("FREQUENCY_REQUIRED_FOR_SCHEDULE_TRIGGER")
        if not merged.trigger_on_drift and not merged.trigger_on_schedule:
            raise AutomationValidationError("AT_LEAST_ONE_TRIGGER_MODE_REQUIRED")
        if _REBALANCING_SCHEDULE_FIELDS & changes.keys():
            merged.next_rebalancing_date = self._initial_rebalancing_date(
                frequency=merged.frequency,
                anchor=merged.created_at.date(),
                day_of_month=merged.day_of_month,
                day_of_week=merged.day_of_week,
            )
        return await self._save(current, merged)

    async def update_trigger_order(
        self, *, rule_id: str, payload: TriggerOrderUpdateRequest
    ) -> TriggerOrder:
        current = await self.get_rule(automation_type="TriggerOrder", rule_id=rule_id)
        if current.status in TERMINAL_TRIGGER_ORDER_STATUSES or current.status == "Triggered":
            raise AutomationStateConflictError("TRIGGER_ORDER_NOT_MODIFIABLE")
        changes = payload.model_dump(exclude_none=True)
        if "amount" in changes:
            changes["units"] = None
        elif "units" in changes:
            if current.order_type == "Purchase":
                raise AutomationValidationError("AMOUNT_REQUIRED_FOR_PURCHASE")
            changes["amount"] = None
        merged = self._merge(TriggerOrder, current, changes)
        if merged.valid_until is not None and merged.valid_until < merged.valid_from:
            raise AutomationValidationError("VALID_UNTIL_BEFORE_VALID_FROM")
        return await self._save(current, merged)

    async def delete_rule(self, *, automation_type: AutomationType, rule_id: str) -> None:
        await self.get_rule(automation_type=automation_type, rule_id=rule_id)
        if await self._store(self._repository.has_execution_history, automation_id=rule_id):
            raise RuleDeletionNotAllowedError("AUTOMATION_RULE_HAS_EXECUTION_HISTORY")
        deleted = await self._store(
            self._repository.delete_rule, automation_type=automation_type, rule_id=rule_id
        )
        if not deleted:
            raise AutomationRuleNotFoundError("AUTOMATION_RULE_NOT_FOUND")
        logger.info(
            "automation.rule.deleted",
            extra={"extra_fields": {"automation_type": automation_type, "automation_id": rule_id}},
        )

    async def list_execution_logs(
        self,
        *,
        client_id: Optional[str] = None,
        automation_type: Optional[AutomationType] = None,
        automation_id: Optional[str] = None,
        limit: int = DEFAULT_LOG_LIMIT,
    ) -> list[ExecutionLogRecord]:
        return await self._store(
            self._repository.list_execution_logs,
            client_id=client_id,
            automation_type=automation_type,
            automation_id=automation_id,
            limit=limit,
        )

    async def list_orders(
        self,
        *,
        client_id: Optional[str] = None,
        order_type: Optional[str] = None,
        limit: int = DEFAULT_LOG_LIMIT,
    ) -> list[SubmittedOrderRecord]:
        return await self._store(
            self._repository.list_orders, client_id=client_id, order_type=order_type, limit=limit
        )

    async def _create(self, rule):
        await self._store(self._repository.create_rule, rule)
        logger.info(
            "automation.rule.created",
            extra={
                "extra_fields": {
                    "automation_type": rule.automation_type,
                    "automation_id": rule.id,
                    "client_id": rule.client_id,
                }
            },
        )
        return rule

    async def _save(self, current, merged):
        merged.version = current.version + 1
        merged.updated_at = self._clock.now()
        saved = await self._store(
            self._repository.compare_and_set_rule, merged, expected_version=current.version
        )
        if not saved:
            raise AutomationConcurrencyError("AUTOMATION_RULE_VERSION_CONFLICT")
        return merged

    def _merge(self, model: type, current, changes: dict[str, Any]):
        try:
            return model.model_validate({**current.model_dump(), **changes})
        except ValidationError as exc:
            raise AutomationValidationError("AUTOMATION_RULE_INVALID") from exc

    def _initial_rebalancing_date(
        self,
        *,
        frequency,
        anchor: date,
        day_of_month: Optional[int],
        day_of_week: Optional[int],
    ) -> Optional[date]:
        if frequency is None:
            return None
        return initial_execution_date(
            frequency=frequency,
            start_date=anchor,
            today=self._clock.today(),
            day_of_month=day_of_month,
            day_of_week=day_of_week,
        )

    async def _scheme_name(self, scheme_id: Optional[str]) -> str:
        if not scheme_id or self._scheme_lookup is None:
            return ""
        try:
            scheme = await await_with_timeout(
                self._scheme_lookup.get_scheme(scheme_id=scheme_id),
                timeout=self._timeout_seconds,
                operation="scheme_lookup",
            )
        except Exception:
            logger.warning(
                "automation.scheme_lookup.failed",
                exc_info=True,
                extra={"extra_fields": {"scheme_id": scheme_id}},
            )
            return ""
        return scheme.name if scheme is not None else ""

    async def _goal_name(self, goal_id: Optional[str]) -> Optional[str]:
        if not goal_id or self._goal_lookup is None:
            return None
        try:
            goal = await await_with_timeout(
                self._goal_lookup.get_goal(goal_id=goal_id),
                timeout=self._timeout_seconds,
                operation="goal_lookup",
            )
        except Exception:
            logger.warning(
                "automation.goal_lookup.failed",
                exc_info=True,
                extra={"extra_fields": {"goal_id": goal_id}},
            )
            return None
        return goal.name if goal is not None else None

    async def _store(self, method, *args, **kwargs):
        return await run_blocking(
            method,
            *args,
            timeout=self._timeout_seconds,
            operation=method.__name__,
            **kwargs,
        )
