import argparse
import asyncio
import signal
import sys
from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


async def _run(*, once: bool) -> int:
    from src.api.persistence_profile import validate_persistence_profile_guardrails
    from src.api.routers.automation import close_automation_runtime, get_automation_scheduler

    validate_persistence_profile_guardrails()
    scheduler = get_automation_scheduler()
    try:
        if once:
            result = await scheduler.run_pass(trigger="cli")
            print(result.model_dump_json(indent=2))
            return 0

        stop_requested = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_requested.set)

        await scheduler.start()
        try:
            await stop_requested.wait()
        finally:
            await scheduler.stop()
        return 0
    finally:
        await close_automation_runtime()


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Run the automation scheduler outside the API process."
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single pass over all rule categories and exit.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Overrides LOG_LEVEL for this process.",
    )
    args = parser.parse_args()
    from src.api.observability import configure_logging

    configure_logging(args.log_level)
    return asyncio.run(_run(once=args.once))


if __name__ == "__main__":
    raise SystemExit(main())
