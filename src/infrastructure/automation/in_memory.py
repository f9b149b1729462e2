from copy import deepcopy
from threading import Lock
from typing import Optional

from src.core.automation.models import AutomationRule, AutomationType, ExecutionLogRecord
from src.core.automation.repository import AutomationRepository, StorageError
from src.core.orders.models import SubmittedOrderRecord


class InMemoryAutomationRepository(AutomationRepository):
    def __init__(self) -> None:
        self._lock = Lock()
        self._rules: dict[AutomationType, dict[str, AutomationRule]] = {
            "AutoInvest": {},
            "Rebalancing": {},
            "TriggerOrder": {},
        }
        self._logs: list[ExecutionLogRecord] = []
        self._orders: list[SubmittedOrderRecord] = []

    def create_rule(self, rule: AutomationRule) -> None:
        with self._lock:
            rules = self._rules[rule.automation_type]
            if rule.id in rules:
                raise StorageError("AUTOMATION_RULE_ALREADY_EXISTS")
            rules[rule.id] = deepcopy(rule)

    def get_rule(
        self, *, automation_type: AutomationType, rule_id: str
    ) -> Optional[AutomationRule]:
        with self._lock:
            rule = self._rules[automation_type].get(rule_id)
            return deepcopy(rule) if rule is not None else None

    def list_rules(
        self,
        *,
        automation_type: AutomationType,
        client_id: Optional[str],
        status: Optional[str],
    ) -> list[AutomationRule]:
        with self._lock:
            rules = [
                rule
                for rule in self._rules[automation_type].values()
                if (client_id is None or rule.client_id == client_id)
                and (status is None or rule.status == status)
            ]
            rules.sort(key=lambda item: (item.created_at, item.id), reverse=True)
            return deepcopy(rules)

    def compare_and_set_rule(self, rule: AutomationRule, *, expected_version: int) -> bool:
        with self._lock:
            rules = self._rules[rule.automation_type]
            current = rules.get(rule.id)
            if current is None or current.version != expected_version:
                return False
            rules[rule.id] = deepcopy(rule)
            return True

    def delete_rule(self, *, automation_type: AutomationType, rule_id: str) -> bool:
        with self._lock:
            return self._rules[automation_type].pop(rule_id, None) is not None

    def append_execution_log(self, record: ExecutionLogRecord) -> None:
        with self._lock:
            self._logs.append(deepcopy(record))

    def list_execution_logs(
        self,
        *,
        client_id: Optional[str],
        automation_type: Optional[AutomationType],
        automation_id: Optional[str],
        limit: int,
    ) -> list[ExecutionLogRecord]:
        with self._lock:
            logs = [
                log
                for log in self._logs
                if (client_id is None or log.client_id == client_id)
                and (automation_type is None or log.automation_type == automation_type)
                and (automation_id is None or log.automation_id == automation_id)
            ]
            logs.sort(key=lambda item: (item.execution_date, item.id), reverse=True)
            return deepcopy(logs[:limit])

    def has_execution_history(self, *, automation_id: str) -> bool:
        with self._lock:
            return any(log.automation_id == automation_id for log in self._logs)

    def append_order(self, order: SubmittedOrderRecord) -> None:
        with self._lock:
            self._orders.append(deepcopy(order))

    def list_orders(
        self, *, client_id: Optional[str], order_type: Optional[str], limit: int
    ) -> list[SubmittedOrderRecord]:
        with self._lock:
            orders = [
                order
                for order in self._orders
                if (client_id is None or order.client_id == client_id)
                and (order_type is None or order.order_type == order_type)
            ]
            orders.sort(key=lambda item: (item.submitted_at, item.order_id), reverse=True)
            return deepcopy(orders[:limit])
