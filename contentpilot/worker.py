"""CLI entrypoint for the sweep worker."""

from __future__ import annotations

from dataclasses import asdict
import argparse
import json
import signal
import threading
from typing import Any, Dict

from contentpilot.core.config import get_settings
from contentpilot.core.logger import configure_logging
from contentpilot.core.observability import init_sentry
from contentpilot.orchestrator.manager import build_billing_manager, build_publish_scheduler
from contentpilot.orchestrator.runner import SweepRunner, TickResult


def build_runner() -> SweepRunner:
    settings = get_settings()
    return SweepRunner(
        billing_manager=build_billing_manager(),
        publish_scheduler=build_publish_scheduler(),
        billing_interval_seconds=settings.billing_sweep_interval_seconds,
        publish_interval_seconds=settings.publish_sweep_interval_seconds,
    )


def _tick_to_dict(result: TickResult) -> Dict[str, Any]:
    return {key: value for key, value in asdict(result).items() if value is not None}


def main() -> None:
    parser = argparse.ArgumentParser(description="Run contentpilot billing and publish sweeps.")
    parser.add_argument("--once", action="store_true", help="Run every sweep once and exit.")
    args = parser.parse_args()

    configure_logging()
    init_sentry()
    runner = build_runner()

    if args.once:
        result = runner.tick()
        print(json.dumps(_tick_to_dict(result), ensure_ascii=True, separators=(",", ":"), sort_keys=True, default=str))
        return

    stop_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop_event.set())
    signal.signal(signal.SIGINT, lambda signum, frame: stop_event.set())
    runner.run_forever(stop_event)


if __name__ == "__main__":
    main()
