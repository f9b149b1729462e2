from typing import Optional, Protocol

from src.core.automation.models import AutomationRule, AutomationType, ExecutionLogRecord
from src.core.orders.models import SubmittedOrderRecord


class StorageError(Exception):
    pass


class AutomationRepository(Protocol):
    def create_rule(self, rule: AutomationRule) -> None: ...

    def get_rule(
        self, *, automation_type: AutomationType, rule_id: str
    ) -> Optional[AutomationRule]: ...

    def list_rules(
        self,
        *,
        automation_type: AutomationType,
        client_id: Optional[str],
        status: Optional[str],
    ) -> list[AutomationRule]: ...

    def compare_and_set_rule(self, rule: AutomationRule, *, expected_version: int) -> bool: ...

    def delete_rule(self, *, automation_type: AutomationType, rule_id: str) -> bool: ...

    def append_execution_log(self, record: ExecutionLogRecord) -> None: ...

    def list_execution_logs(
        self,
        *,
        client_id: Optional[str],
        automation_type: Optional[AutomationType],
        automation_id: Optional[str],
        limit: int,
    ) -> list[ExecutionLogRecord]: ...

    def has_execution_history(self, *, automation_id: str) -> bool: ...

    def append_order(self, order: SubmittedOrderRecord) -> None: ...

    def list_orders(
        self, *, client_id: Optional[str], order_type: Optional[str], limit: int
    ) -> list[SubmittedOrderRecord]: ...
