"""
Process entry point.

    scheduler-service run [--max-cycles N]
    scheduler-service healthcheck
"""

import argparse
import asyncio
import json
import signal
import sys

from pydantic import ValidationError

from scheduler_service.client import SchedulerClient
from scheduler_service.config import WorkerSettings, get_settings
from scheduler_service.email import create_email_dispatcher
from scheduler_service.errors import ConfigurationError, SchedulerServiceError
from scheduler_service.jobs.dedupe import create_dedupe_store
from scheduler_service.jobs.handlers import build_default_registry
from scheduler_service.jobs.processor import JobProcessor
from scheduler_service.jobs.retry import RetryPolicy
from scheduler_service.queue import create_queue_client
from scheduler_service.shared.logging import get_logger, setup_logging
from scheduler_service.worker import WorkerLoop

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scheduler-service",
        description="Background worker delivering queued email jobs.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Poll the queues and process jobs until stopped")
    run.add_argument(
        "--max-cycles",
        type=int,
        default=None,
        help="Exit after this many polling cycles (default: run until SIGINT/SIGTERM)",
    )

    subparsers.add_parser("healthcheck", help="Check queue and email provider reachability")
    return parser


async def run_worker(settings: WorkerSettings, max_cycles: int | None = None) -> None:
    """Wire components from settings and run the worker loop."""
    queue = create_queue_client(settings)
    dispatcher = create_email_dispatcher(settings)
    dedupe = create_dedupe_store(settings)
    registry = build_default_registry(dispatcher, dedupe, settings.email_reply_to)
    processor = JobProcessor(registry, RetryPolicy.from_settings(settings))
    worker = WorkerLoop(queue, processor, settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.request_stop)
        except NotImplementedError:
            # Windows event loops lack add_signal_handler
            break

    logger.info(
        "Worker configured",
        extra={
            "email_provider": dispatcher.name,
            "job_types": [t.value for t in registry.job_types],
        },
    )
    await queue.connect()
    try:
        await worker.run(max_cycles=max_cycles)
    finally:
        await dispatcher.close()
        await dedupe.close()
        await queue.close()


async def run_healthcheck(settings: WorkerSettings) -> int:
    """Print a JSON health report; exit code 0 only when everything is reachable."""
    queue = create_queue_client(settings)
    dispatcher = create_email_dispatcher(settings)
    try:
        await queue.connect()
        report = await SchedulerClient(queue).healthcheck()
        provider_ok = await dispatcher.health_check()
        report["email_provider"] = {
            "name": dispatcher.name,
            "status": "ok" if provider_ok else "error",
        }
    finally:
        await dispatcher.close()
        await queue.close()

    print(json.dumps(report, indent=2, default=str))
    healthy = report["status"] == "ok" and provider_ok
    return 0 if healthy else 1


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    setup_logging(settings)

    try:
        if args.command == "healthcheck":
            return asyncio.run(run_healthcheck(settings))
        asyncio.run(run_worker(settings, max_cycles=args.max_cycles))
    except ConfigurationError as e:
        logger.error("Startup failed", extra={"error": str(e)})
        return 2
    except SchedulerServiceError as e:
        logger.exception("Worker failed", extra={"error": str(e)})
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
