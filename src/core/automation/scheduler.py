"""
Periodic driver for the automation pipeline.

One pass evaluates the three rule categories concurrently. A category that
fails on infrastructure (store or collaborator outage while listing rules) is
recorded on its `CategoryPassResult.error`; the other categories still finish.
"""

import asyncio
import contextlib
import logging
from typing import Optional

from src.core.automation.collaborators import Clock
from src.core.automation.metrics import SCHEDULER_CATEGORY_FAILURES, SCHEDULER_PASSES
from src.core.automation.models import (
    AutomationType,
    CategoryPassResult,
    RuleExecutionResult,
    SchedulerPassResult,
    SchedulerStatusResponse,
)
from src.core.automation.pipeline import AutomationPipeline

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 3600.0


class AutomationScheduler:
    def __init__(
        self,
        *,
        pipeline: AutomationPipeline,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        clock: Optional[Clock] = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("SCHEDULER_INTERVAL_MUST_BE_POSITIVE")
        self._pipeline = pipeline
        self._interval_seconds = interval_seconds
        self._clock = clock or pipeline.clock
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._pass_lock = asyncio.Lock()
        self._pass_count = 0
        self._last_pass: Optional[SchedulerPassResult] = None

    @property
    def interval_seconds(self) -> float:
        return self._interval_seconds

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name="automation-scheduler")
        logger.info(
            "automation.scheduler.started",
            extra={"extra_fields": {"interval_seconds": self._interval_seconds}},
        )

    async def stop(self) -> None:
        """Stops the timer; an in-flight pass is allowed to finish."""
        task = self._task
        if task is None:
            return
        self._stop_event.set()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self._task = None
        logger.info("automation.scheduler.stopped")

    async def run_pass(self, *, trigger: str = "scheduled") -> SchedulerPassResult:
        async with self._pass_lock:
            started_at = self._clock.now()
            categories = await asyncio.gather(
                self._run_category("AutoInvest", self._pipeline.run_auto_invest_pass()),
                self._run_category("Rebalancing", self._pipeline.run_rebalancing_pass()),
                self._run_category("TriggerOrder", self._pipeline.run_trigger_order_pass()),
            )
            result = SchedulerPassResult(
                started_at=started_at,
                finished_at=self._clock.now(),
                categories=list(categories),
            )
            self._pass_count += 1
            self._last_pass = result
        SCHEDULER_PASSES.labels(trigger=trigger).inc()
        logger.info(
            "automation.scheduler.pass_completed",
            extra={
                "extra_fields": {
                    "trigger": trigger,
                    "categories": {
                        category.automation_type: {
                            "evaluated": category.evaluated,
                            "executed": category.executed,
                            "failed": category.failed,
                            "skipped": category.skipped,
                            "error": category.error,
                        }
                        for category in result.categories
                    },
                }
            },
        )
        return result

    async def manual_execute_auto_invest(self, rule_id: str) -> RuleExecutionResult:
        return await self._run_manual(
            "AutoInvest", rule_id, self._pipeline.execute_auto_invest(rule_id)
        )

    async def manual_check_rebalancing(self, rule_id: str) -> RuleExecutionResult:
        return await self._run_manual(
            "Rebalancing", rule_id, self._pipeline.check_rebalancing(rule_id)
        )

    async def manual_check_triggers(self, client_id: Optional[str] = None) -> CategoryPassResult:
        return await self._run_category(
            "TriggerOrder", self._pipeline.run_trigger_order_pass(client_id=client_id)
        )

    def status(self) -> SchedulerStatusResponse:
        return SchedulerStatusResponse(
            is_running=self.is_running(),
            interval_seconds=self._interval_seconds,
            last_pass_started_at=self._last_pass.started_at if self._last_pass else None,
            last_pass_finished_at=self._last_pass.finished_at if self._last_pass else None,
            pass_count=self._pass_count,
            last_pass=self._last_pass,
        )

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_pass()
            except Exception:
                logger.exception("automation.scheduler.pass_failed")
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval_seconds)

    async def _run_manual(
        self, automation_type: AutomationType, rule_id: str, execution
    ) -> RuleExecutionResult:
        try:
            return await execution
        except Exception as exc:
            logger.exception(
                "automation.scheduler.manual_execution_failed",
                extra={
                    "extra_fields": {"automation_type": automation_type, "automation_id": rule_id}
                },
            )
            return RuleExecutionResult(
                success=False,
                automation_type=automation_type,
                rule_id=rule_id,
                outcome="Failed",
                message=f"{type(exc).__name__}: {exc}",
            )

    async def _run_category(self, automation_type: AutomationType, category) -> CategoryPassResult:
        try:
            return await category
        except Exception as exc:
            SCHEDULER_CATEGORY_FAILURES.labels(automation_type=automation_type).inc()
            logger.exception(
                "automation.scheduler.category_failed",
                extra={"extra_fields": {"automation_type": automation_type}},
            )
            return CategoryPassResult(
                automation_type=automation_type, error=f"{type(exc).__name__}: {exc}"
            )
