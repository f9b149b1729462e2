import argparse
import os
import sys
from importlib.util import find_spec
from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Apply forward-only PostgreSQL migrations for the automation store."
    )
    parser.add_argument(
        "--dsn",
        default=os.getenv("AUTOMATION_POSTGRES_DSN", "").strip(),
        help="PostgreSQL DSN for automation store migrations.",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="List pending migrations without applying them; exits 1 when any are pending.",
    )
    args = parser.parse_args()

    if find_spec("psycopg") is None:
        raise RuntimeError("POSTGRES_MIGRATION_DRIVER_MISSING")
    import psycopg
    from psycopg.rows import dict_row

    from src.infrastructure.postgres_migrations import (
        AUTOMATION_NAMESPACE,
        apply_postgres_migrations,
        pending_postgres_migrations,
    )

    if not args.dsn:
        raise RuntimeError(f"POSTGRES_MIGRATION_DSN_REQUIRED:{AUTOMATION_NAMESPACE}")
    with psycopg.connect(args.dsn, row_factory=dict_row) as connection:
        if args.check:
            pending = pending_postgres_migrations(connection=connection)
            print(f"Pending migrations for namespace={AUTOMATION_NAMESPACE}: {pending or 'none'}")
            return 1 if pending else 0
        applied = apply_postgres_migrations(connection=connection)
    print(f"Applied migrations for namespace={AUTOMATION_NAMESPACE}: {applied or 'none'}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
