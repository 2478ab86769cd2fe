"""Scheduler CLI for cron-style triggers.

    tenanthub-scheduler health
    tenanthub-scheduler all --json
"""

import argparse
import asyncio
import logging
import sys

from tenanthub.app.config import RuntimeMode, get_settings
from tenanthub.app.container import build_fleet
from tenanthub.app.logging import setup_logging
from tenanthub.control.scheduler import TaskReport
from tenanthub.core.domain import TaskKind
from tenanthub.core.errors import ConfigurationError, TenantHubError
from tenanthub.infra import close_db, close_storage, get_session_factory, init_db, init_storage

logger = logging.getLogger(__name__)


async def run_task(task: TaskKind) -> TaskReport:
    """Run one scheduler task against a freshly built fleet.

    Raises:
        ConfigurationError: In local mode. The tenant processes are children
            of the API server, so only its own scheduler may touch them
            (``POST /api/v1/scheduler/{task}``).
    """
    settings = get_settings()
    if settings.runtime.mode == RuntimeMode.LOCAL:
        raise ConfigurationError(
            "Local runtime: trigger the scheduler through the API server"
            " (POST /api/v1/scheduler/{task})"
        )
    settings.validate_runtime()

    await init_db()
    await init_storage()
    fleet = build_fleet(settings, get_session_factory())
    try:
        return await fleet.driver.run(task)
    finally:
        # Remote runners own their instances
        await fleet.close(stop_instances=False)
        await close_storage()
        await close_db()


def _print_report(report: TaskReport, indent: str = "") -> None:
    print(
        f"{indent}{report.task.value:<8} processed={report.processed} failed={report.failed}"
        f" alerts_created={report.alerts_created} alerts_resolved={report.alerts_resolved}"
        f" duration_ms={report.duration_ms}"
    )
    for key, value in sorted(report.counts.items()):
        print(f"{indent}  {key}={value}")
    for sub in report.subtasks:
        _print_report(sub, indent + "  ")


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="tenanthub scheduled fleet tasks",
        prog="tenanthub-scheduler",
    )
    parser.add_argument("task", choices=[t.value for t in TaskKind], help="Task to run")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    args = parser.parse_args()

    setup_logging()
    try:
        report = asyncio.run(run_task(TaskKind(args.task)))
    except TenantHubError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(report.model_dump_json(indent=2))
    else:
        _print_report(report)

    if report.failed:
        sys.exit(2)


if __name__ == "__main__":
    main()
