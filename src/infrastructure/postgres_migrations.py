from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

AUTOMATION_NAMESPACE = "automation"
MIGRATIONS_ROOT = Path(__file__).with_name("postgres_migrations")


@dataclass(frozen=True)
class PostgresMigration:
    version: str
    sql_path: Path
    checksum: str

    def statements(self) -> list[str]:
        return split_sql_statements(self.sql_path.read_text(encoding="utf-8"))


def apply_postgres_migrations(
    *, connection: Any, namespace: str = AUTOMATION_NAMESPACE
) -> list[str]:
    """Applies pending migrations under an advisory lock and returns the versions applied.

    Applied migrations are recorded as `<namespace>:<version>` rows in `schema_migrations`;
    a recorded checksum that no longer matches its file aborts the run.
    """
    lock_key = migration_lock_key(namespace=namespace)
    connection.execute("SELECT pg_advisory_lock(%s::bigint)", (lock_key,))
    try:
        applied = _apply_pending(connection=connection, namespace=namespace)
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.execute("SELECT pg_advisory_unlock(%s::bigint)", (lock_key,))
    return applied


def pending_postgres_migrations(
    *, connection: Any, namespace: str = AUTOMATION_NAMESPACE
) -> list[str]:
    _ensure_migrations_table(connection)
    recorded = _recorded_checksums(connection=connection, namespace=namespace)
    return [
        migration.version
        for migration in _verified(load_migrations(namespace=namespace), recorded, namespace)
        if migration.version not in recorded
    ]


def load_migrations(*, namespace: str) -> list[PostgresMigration]:
    namespace_path = MIGRATIONS_ROOT / namespace
    if not namespace_path.is_dir():
        raise RuntimeError(f"POSTGRES_MIGRATIONS_NAMESPACE_NOT_FOUND:{namespace}")
    migrations = []
    for sql_path in sorted(namespace_path.glob("*.sql")):
        content = sql_path.read_bytes()
        migrations.append(
            PostgresMigration(
                version=sql_path.stem.split("_", maxsplit=1)[0],
                sql_path=sql_path,
                checksum=hashlib.sha256(content).hexdigest(),
            )
        )
    return migrations


def split_sql_statements(sql: str) -> list[str]:
    lines = [line for line in sql.splitlines() if not line.strip().startswith("--")]
    return [statement.strip() for statement in "\n".join(lines).split(";") if statement.strip()]


def migration_lock_key(*, namespace: str) -> int:
    digest = hashlib.sha256(f"lotus-automate:{namespace}".encode("utf-8")).digest()[:8]
    return int.from_bytes(digest, byteorder="big", signed=True)


def _apply_pending(*, connection: Any, namespace: str) -> list[str]:
    _ensure_migrations_table(connection)
    recorded = _recorded_checksums(connection=connection, namespace=namespace)
    applied = []
    for migration in _verified(load_migrations(namespace=namespace), recorded, namespace):
        if migration.version in recorded:
            continue
        for statement in migration.statements():
            connection.execute(statement)
        connection.execute(
            """
            INSERT INTO schema_migrations (version, namespace, checksum, applied_at)
            VALUES (%s, %s, %s, %s)
            """,
            (
                f"{namespace}:{migration.version}",
                namespace,
                migration.checksum,
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        applied.append(migration.version)
    connection.commit()
    return applied


def _ensure_migrations_table(connection: Any) -> None:
    connection.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            namespace TEXT NOT NULL,
            checksum TEXT NOT NULL,
            applied_at TEXT NOT NULL
        )
        """
    )


def _recorded_checksums(*, connection: Any, namespace: str) -> dict[str, str]:
    rows = connection.execute(
        """
        SELECT version, checksum
        FROM schema_migrations
        WHERE namespace = %s
        ORDER BY version ASC
        """,
        (namespace,),
    ).fetchall()
    prefix = f"{namespace}:"
    return {str(row["version"]).removeprefix(prefix): str(row["checksum"]) for row in rows}


def _verified(
    migrations: list[PostgresMigration], recorded: dict[str, str], namespace: str
) -> list[PostgresMigration]:
    for migration in migrations:
        checksum = recorded.get(migration.version)
        if checksum is not None and checksum != migration.checksum:
            raise RuntimeError(
                f"POSTGRES_MIGRATION_CHECKSUM_MISMATCH:{namespace}:{migration.version}"
            )
    return migrations
