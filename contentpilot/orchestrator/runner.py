"""Interval loop that drives the billing and publish sweeps."""

from __future__ import annotations

from dataclasses import dataclass
import threading
import time
from typing import Callable, Optional, TypeVar

from contentpilot.billing.cycle import BillingCycleManager, BillingSweepResult, UsageRefreshResult
from contentpilot.core.logger import get_logger
from contentpilot.core.observability import capture_exception
from contentpilot.publishing.scheduler import PublishScheduler, PublishSweepResult


logger = get_logger("contentpilot.orchestrator.runner")

T = TypeVar("T")


@dataclass(frozen=True)
class TickResult:
    publish: Optional[PublishSweepResult] = None
    billing: Optional[BillingSweepResult] = None
    usage_refresh: Optional[UsageRefreshResult] = None


class SweepRunner:
    """Runs each sweep when its interval has elapsed; a failing sweep never stops the loop."""

    def __init__(
        self,
        *,
        billing_manager: BillingCycleManager,
        publish_scheduler: PublishScheduler,
        billing_interval_seconds: int,
        publish_interval_seconds: int,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if billing_interval_seconds <= 0 or publish_interval_seconds <= 0:
            raise ValueError("Sweep intervals must be positive")
        self._billing_manager = billing_manager
        self._publish_scheduler = publish_scheduler
        self._billing_interval = float(billing_interval_seconds)
        self._publish_interval = float(publish_interval_seconds)
        self._monotonic = monotonic
        started = monotonic()
        self._next_publish_at = started
        self._next_billing_at = started

    def seconds_until_next(self) -> float:
        upcoming = min(self._next_publish_at, self._next_billing_at)
        return max(upcoming - self._monotonic(), 0.0)

    def tick(self) -> TickResult:
        current = self._monotonic()
        publish = None
        billing = None
        usage_refresh = None

        if current >= self._next_publish_at:
            publish = self._run("publish", self._publish_scheduler.run_once)
            self._next_publish_at = current + self._publish_interval

        if current >= self._next_billing_at:
            billing = self._run("billing_renewal", self._billing_manager.run_renewal_sweep)
            usage_refresh = self._run("usage_refresh", self._billing_manager.refresh_usage_cycles)
            self._next_billing_at = current + self._billing_interval

        return TickResult(publish=publish, billing=billing, usage_refresh=usage_refresh)

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info(
            "sweep_runner_started",
            publish_interval_seconds=self._publish_interval,
            billing_interval_seconds=self._billing_interval,
        )
        while not stop_event.is_set():
            self.tick()
            stop_event.wait(self.seconds_until_next())
        logger.info("sweep_runner_stopped")

    def _run(self, sweep: str, func: Callable[[], T]) -> Optional[T]:
        try:
            return func()
        except Exception as exc:
            capture_exception(exc)
            logger.error("sweep_failed", sweep=sweep, error=str(exc))
            return None
