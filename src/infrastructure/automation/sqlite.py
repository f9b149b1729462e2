import json
import sqlite3
from contextlib import closing, contextmanager
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Iterator, Optional

from src.core.automation.models import (
    RULE_MODELS,
    AutomationRule,
    AutomationType,
    ExecutionLogRecord,
)
from src.core.automation.repository import AutomationRepository, StorageError
from src.core.orders.models import SubmittedOrderRecord

RULE_TABLES: dict[str, str] = {
    "AutoInvest": "auto_invest_rules",
    "Rebalancing": "rebalancing_rules",
    "TriggerOrder": "trigger_orders",
}


class SqliteAutomationRepository(AutomationRepository):
    def __init__(self, *, database_path: str) -> None:
        self._lock = Lock()
        self._database_path = database_path
        self._init_db()

    def create_rule(self, rule: AutomationRule) -> None:
        query = f"""
            INSERT INTO {RULE_TABLES[rule.automation_type]} (
                id,
                client_id,
                status,
                version,
                created_at,
                updated_at,
                rule_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """
        with self._lock, self._connection() as connection:
            try:
                connection.execute(query, _rule_params(rule))
            except sqlite3.IntegrityError as exc:
                raise StorageError("AUTOMATION_RULE_ALREADY_EXISTS") from exc
            connection.commit()

    def get_rule(
        self, *, automation_type: AutomationType, rule_id: str
    ) -> Optional[AutomationRule]:
        query = f"""
            SELECT rule_json
            FROM {RULE_TABLES[automation_type]}
            WHERE id = ?
        """
        with self._connection() as connection:
            row = connection.execute(query, (rule_id,)).fetchone()
        if row is None:
            return None
        return _to_rule(automation_type, row["rule_json"])

    def list_rules(
        self,
        *,
        automation_type: AutomationType,
        client_id: Optional[str],
        status: Optional[str],
    ) -> list[AutomationRule]:
        query = f"SELECT rule_json FROM {RULE_TABLES[automation_type]} WHERE 1=1"
        params: list[str] = []
        if client_id is not None:
            query += " AND client_id = ?"
            params.append(client_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, id DESC"
        with self._connection() as connection:
            rows = connection.execute(query, tuple(params)).fetchall()
        return [_to_rule(automation_type, row["rule_json"]) for row in rows]

    def compare_and_set_rule(self, rule: AutomationRule, *, expected_version: int) -> bool:
        query = f"""
            UPDATE {RULE_TABLES[rule.automation_type]}
            SET
                client_id = ?,
                status = ?,
                version = ?,
                updated_at = ?,
                rule_json = ?
            WHERE id = ? AND version = ?
        """
        with self._lock, self._connection() as connection:
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
        query = f"DELETE FROM {RULE_TABLES[automation_type]} WHERE id = ?"
        with self._lock, self._connection() as connection:
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
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        with self._lock, self._connection() as connection:
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
        params: list[object] = []
        if client_id is not None:
            query += " AND client_id = ?"
            params.append(client_id)
        if automation_type is not None:
            query += " AND automation_type = ?"
            params.append(automation_type)
        if automation_id is not None:
            query += " AND automation_id = ?"
            params.append(automation_id)
        query += " ORDER BY execution_date DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._connection() as connection:
            rows = connection.execute(query, tuple(params)).fetchall()
        return [_to_execution_log(row) for row in rows]

    def has_execution_history(self, *, automation_id: str) -> bool:
        query = """
            SELECT 1
            FROM automation_execution_logs
            WHERE automation_id = ?
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
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """
        with self._lock, self._connection() as connection:
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
        params: list[object] = []
        if client_id is not None:
            query += " AND client_id = ?"
            params.append(client_id)
        if order_type is not None:
            query += " AND order_type = ?"
            params.append(order_type)
        query += " ORDER BY submitted_at DESC, order_id DESC LIMIT ?"
        params.append(limit)
        with self._connection() as connection:
            rows = connection.execute(query, tuple(params)).fetchall()
        return [SubmittedOrderRecord.model_validate(json.loads(row["order_json"])) for row in rows]

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            with closing(self._connect()) as connection:
                yield connection
        except sqlite3.Error as exc:
            raise StorageError("AUTOMATION_STORE_UNAVAILABLE") from exc

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._database_path)
        connection.row_factory = sqlite3.Row
        return connection

    def _init_db(self) -> None:
        Path(self._database_path).parent.mkdir(parents=True, exist_ok=True)
        rule_tables = "\n".join(
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                client_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                rule_json TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_{table}_client ON {table} (client_id);
            """
            for table in RULE_TABLES.values()
        )
        with self._lock, self._connection() as connection:
            connection.executescript(
                rule_tables
                + """
                CREATE TABLE IF NOT EXISTS automation_execution_logs (
                    id TEXT PRIMARY KEY,
                    automation_type TEXT NOT NULL,
                    automation_id TEXT NOT NULL,
                    client_id TEXT NOT NULL,
                    execution_date TEXT NOT NULL,
                    status TEXT NOT NULL,
                    order_id TEXT NULL,
                    error TEXT NULL,
                    details_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_automation_execution_logs_automation
                    ON automation_execution_logs (automation_id);
                CREATE TABLE IF NOT EXISTS automation_orders (
                    order_id TEXT PRIMARY KEY,
                    client_id TEXT NOT NULL,
                    order_type TEXT NOT NULL,
                    automation_type TEXT NOT NULL,
                    automation_id TEXT NOT NULL,
                    submitted_at TEXT NOT NULL,
                    order_json TEXT NOT NULL
                );
                """
            )
            connection.commit()


def _rule_params(rule: AutomationRule) -> tuple:
    return (
        rule.id,
        rule.client_id,
        rule.status,
        rule.version,
        rule.created_at.isoformat(),
        rule.updated_at.isoformat(),
        _json_dump(rule.model_dump(mode="json")),
    )


def _to_rule(automation_type: AutomationType, rule_json: str) -> AutomationRule:
    return RULE_MODELS[automation_type].model_validate(json.loads(rule_json))


def _to_execution_log(row: sqlite3.Row) -> ExecutionLogRecord:
    return ExecutionLogRecord(
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


def _json_dump(value: dict) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)
