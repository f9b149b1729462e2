import json
from contextlib import closing, contextmanager
from datetime import datetime
from importlib.util import find_spec
from typing import Any, Iterator, Optional

from src.core.automation.models import (
    RULE_MODELS,
    AutomationRule,
    AutomationType,
    ExecutionLogRecord,
)
from src.core.automation.repository import StorageError
from src.core.orders.models import SubmittedOrderRecord
from src.infrastructure.postgres_migrations import AUTOMATION_NAMESPACE, apply_postgres_migrations

RULE_TABLES: dict[str, str] = {
    "AutoInvest": "auto_invest_rules",
    "Rebalancing": "rebalancing_rules",
    "TriggerOrder": "trigger_orders",
}


class PostgresAutomationRepository:
    def __init__(self, *, dsn: str) -> None:
        if not dsn:
            raise RuntimeError("AUTOMATION_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("AUTOMATION_POSTGRES_DRIVER_MISSING")
        self._dsn = dsn
        self._init_db()

    def create_rule(self, rule: AutomationRule) -> None:
        psycopg, _ = _import_psycopg()
        query = f"""
            INSERT INTO {RULE_TABLES[rule.automation_type]} (
                id,
                client_id,
                status,
                version,
                created_at,
                updated_at,
                rule_json
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
        """
        with self._connection() as connection:
            try:
                connection.execute(
                    query,
                    (
                        rule.id,
                        rule.client_id,
                        rule.status,
                        rule.version,
                        rule.created_at.isoformat(),
                        rule.updated_at.isoformat(),
                        _json_dump(rule.model_dump(mode="json")),
                    ),
                )
            except psycopg.errors.UniqueViolation as exc:
                connection.rollback()
                raise StorageError("AUTOMATION_RULE_ALREADY_EXISTS") from exc
            connection.commit()

    def get_rule(
        self, *, automation_type: AutomationType, rule_id: str
    ) -> Optional[AutomationRule]:
        query = f"""
            SELECT rule_json
            FROM {RULE_TABLES[automation_type]}
            WHERE id = %s
        """
        with self._connection() as connection:
            row = connection.execute(query, (rule_id,)).fetchone()
        if row is None:
            return None
        return RULE_MODELS[automation_type].model_validate(json.loads(row["rule_json"]))

    def list_rules(
        self,
        *,
        automation_type: AutomationType,
        client_id: Optional[str],
        status: Optional[str],
    ) -> list[AutomationRule]:
        query = f"SELECT rule_json FROM {RULE_TABLES[automation_type]} WHERE 1=1"
        params: list[Any] = []
        if client_id is not None:
            query += " AND client_id = %s"
            params.append(client_id)
        if status is not None:
            query += " AND status = %s"
            params.append(status)
        query += " ORDER BY created_at DESC, id DESC"
        with self._connection() as connection:
            rows = connection.execute(query, tuple(params)).fetchall()
        model = RULE_MODELS[automation_type]
        return [model.model_validate(json.loads(row["rule_json"])) for row in rows]

    def compare_and_set_rule(self, rule: AutomationRule, *, expected_version: int) -> bool:
        query = f"""
            UPDATE {RULE_TABLES[rule.automation_type]}
            SET
                client_id = %s,
                status = %s,
                version = %s,
                updated_at = %s,
                rule_json = %s
            WHERE id = %s AND version = %s
        """
        with self._connection() as connection:
            cursor = connection.execute(
                query,
                (
                    rule.client_id,
                    rule.status,
                    rule.version,
                    rule.updated_at.isoformat(),
                    _json_dump(rule.model_dump(mode="json")),
                    rule.id,
                    expected_version,
                ),
            )
            connection.commit()
            return cursor.rowcount == 1

    def delete_rule(self, *, automation_type: AutomationType, rule_id: str) -> bool:
        query = f"DELETE FROM {RULE_TABLES[automation_type]} WHERE id = %s"
        with self._connection() as connection:
            cursor = connection.execute(query, (rule_id,))
            connection.commit()
            return cursor.rowcount > 0

    def append_execution_log(self, record: ExecutionLogRecord) -> None:
        query = """
            INSERT INTO automation_execution_logs (
                id,
                automation_type,
                automation_id,
                client_id,
                execution_date,
                status,
                order_id,
                error,
                details_json,
                created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        with self._connection() as connection:
            connection.execute(
                query,
                (
                    record.id,
                    record.automation_type,
                    record.automation_id,
                    record.client_id,
                    record.execution_date.isoformat(),
                    record.status,
                    record.order_id,
                    record.error,
                    _json_dump(record.model_dump(mode="json")["details"]),
                    record.created_at.isoformat(),
                ),
            )
            connection.commit()

    def list_execution_logs(
        self,
        *,
        client_id: Optional[str],
        automation_type: Optional[AutomationType],
        automation_id: Optional[str],
        limit: int,
    ) -> list[ExecutionLogRecord]:
        query = """
            SELECT
                id,
                automation_type,
                automation_id,
                client_id,
                execution_date,
                status,
                order_id,
                error,
                details_json,
                created_at
            FROM automation_execution_logs
            WHERE 1=1
        """
        params: list[Any] = []
        if client_id is not None:
            query += " AND client_id = %s"
            params.append(client_id)
        if automation_type is not None:
            query += " AND automation_type = %s"
            params.append(automation_type)
        if automation_id is not None:
            query += " AND automation_id = %s"
            params.append(automation_id)
        query += " ORDER BY execution_date DESC, id DESC LIMIT %s"
        params.append(limit)
        with self._connection() as connection:
            rows = connection.execute(query, tuple(params)).fetchall()
        return [
            ExecutionLogRecord(
                id=row["id"],
                automation_type=row["automation_type"],
                automation_id=row["automation_id"],
                client_id=row["client_id"],
                execution_date=datetime.fromisoformat(row["execution_date"]),
                status=row["status"],
                order_id=row["order_id"],
                error=row["error"],
                details=json.loads(row["details_json"]),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    def has_execution_history(self, *, automation_id: str) -> bool:
        query = """
            SELECT 1
            FROM automation_execution_logs
            WHERE automation_id = %s
            LIMIT 1
        """
        with self._connection() as connection:
            row = connection.execute(query, (automation_id,)).fetchone()
        return row is not None

    def append_order(self, order: SubmittedOrderRecord) -> None:
        query = """
            INSERT INTO automation_orders (
                order_id,
                client_id,
                order_type,
                automation_type,
                automation_id,
                submitted_at,
                order_json
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
        """
        with self._connection() as connection:
            connection.execute(
                query,
                (
                    order.order_id,
                    order.client_id,
                    order.order_type,
                    order.automation_type,
                    order.automation_id,
                    order.submitted_at.isoformat(),
                    _json_dump(order.model_dump(mode="json")),
                ),
            )
            connection.commit()

    def list_orders(
        self, *, client_id: Optional[str], order_type: Optional[str], limit: int
    ) -> list[SubmittedOrderRecord]:
        query = "SELECT order_json FROM automation_orders WHERE 1=1"
        params: list[Any] = []
        if client_id is not None:
            query += " AND client_id = %s"
            params.append(client_id)
        if order_type is not None:
            query += " AND order_type = %s"
            params.append(order_type)
        query += " ORDER BY submitted_at DESC, order_id DESC LIMIT %s"
        params.append(limit)
        with self._connection() as connection:
            rows = connection.execute(query, tuple(params)).fetchall()
        return [SubmittedOrderRecord.model_validate(json.loads(row["order_json"])) for row in rows]

    @contextmanager
    def _connection(self) -> Iterator[Any]:
        psycopg, _ = _import_psycopg()
        try:
            with closing(self._connect()) as connection:
                yield connection
        except psycopg.Error as exc:
            raise StorageError("AUTOMATION_STORE_UNAVAILABLE") from exc

    def _connect(self):
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            apply_postgres_migrations(connection=connection, namespace=AUTOMATION_NAMESPACE)


def _import_psycopg():
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row


def _json_dump(value: dict) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)
