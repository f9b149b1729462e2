import os
from decimal import Decimal, InvalidOperation

from src.core.automation.collaborators import OrderSubmissionSink
from src.core.automation.repository import AutomationRepository
from src.core.automation.scheduler import DEFAULT_INTERVAL_SECONDS
from src.infrastructure.automation import (
    InMemoryAutomationRepository,
    PostgresAutomationRepository,
    SqliteAutomationRepository,
)
from src.infrastructure.collaborators import (
    EnvJsonClientProfiles,
    EnvJsonGoalCatalog,
    EnvJsonPortfolioSnapshots,
    EnvJsonSchemeCatalog,
    HttpOrderSink,
    InMemoryOrderSink,
)

DEFAULT_CHECK_INTERVAL_MS = int(DEFAULT_INTERVAL_SECONDS * 1000)
DEFAULT_COLLABORATOR_TIMEOUT_SECONDS = 10.0


def env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed >= 1 else default


def env_positive_decimal(name: str, default: Decimal) -> Decimal:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = Decimal(value.strip())
    except InvalidOperation:
        return default
    return parsed if parsed > 0 else default


def scheduler_enabled() -> bool:
    return env_flag("AUTOMATION_SCHEDULER_ENABLED", False)


def scheduler_interval_seconds() -> float:
    return env_int("AUTOMATION_CHECK_INTERVAL", DEFAULT_CHECK_INTERVAL_MS) / 1000


def collaborator_timeout_seconds() -> float:
    return float(
        env_positive_decimal(
            "AUTOMATION_COLLABORATOR_TIMEOUT_SECONDS",
            Decimal(str(DEFAULT_COLLABORATOR_TIMEOUT_SECONDS)),
        )
    )


def automation_store_backend_name() -> str:
    backend = os.getenv("AUTOMATION_STORE_BACKEND", "IN_MEMORY").strip().upper()
    if backend == "POSTGRES":
        return "POSTGRES"
    return "SQL" if backend in {"SQL", "SQLITE"} else "IN_MEMORY"


def automation_sql_path() -> str:
    return os.getenv("AUTOMATION_SQL_PATH", ".data/automation.db")


def automation_postgres_dsn() -> str:
    return os.getenv("AUTOMATION_POSTGRES_DSN", "").strip()


def order_sink_backend_name() -> str:
    backend = os.getenv("AUTOMATION_ORDER_SINK_BACKEND", "IN_MEMORY").strip().upper()
    return "HTTP" if backend == "HTTP" else "IN_MEMORY"


def build_repository() -> AutomationRepository:
    backend = automation_store_backend_name()
    if backend == "SQL":
        return SqliteAutomationRepository(database_path=automation_sql_path())
    if backend == "POSTGRES":
        dsn = automation_postgres_dsn()
        if not dsn:
            raise RuntimeError("AUTOMATION_POSTGRES_DSN_REQUIRED")
        try:
            return PostgresAutomationRepository(dsn=dsn)
        except RuntimeError:
            raise
        except Exception as exc:
            raise RuntimeError("AUTOMATION_POSTGRES_CONNECTION_FAILED") from exc
    return InMemoryAutomationRepository()


def build_order_sink() -> OrderSubmissionSink:
    if order_sink_backend_name() == "HTTP":
        return HttpOrderSink(
            url=os.getenv("AUTOMATION_ORDER_SINK_URL", ""),
            timeout_seconds=collaborator_timeout_seconds(),
        )
    return InMemoryOrderSink()


def build_scheme_catalog() -> EnvJsonSchemeCatalog:
    return EnvJsonSchemeCatalog(catalog_json=os.getenv("AUTOMATION_SCHEME_CATALOG_JSON"))


def build_goal_catalog() -> EnvJsonGoalCatalog:
    return EnvJsonGoalCatalog(catalog_json=os.getenv("AUTOMATION_GOAL_CATALOG_JSON"))


def build_portfolio_snapshots() -> EnvJsonPortfolioSnapshots:
    return EnvJsonPortfolioSnapshots(
        catalog_json=os.getenv("AUTOMATION_PORTFOLIO_SNAPSHOTS_JSON")
    )


def build_client_profiles() -> EnvJsonClientProfiles:
    return EnvJsonClientProfiles(catalog_json=os.getenv("AUTOMATION_CLIENT_PROFILES_JSON"))
