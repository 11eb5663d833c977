"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and runs it against a freshly built service container.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from support_agent.config import get_settings
from support_agent.infrastructure.observability.logging import get_logger, setup_logging
from support_agent.services.container import SupportServices

logger = get_logger(__name__)

JobCoroutine = Callable[[SupportServices], Awaitable[None]]


async def process_inbox(services: SupportServices) -> None:
    """One intake pass over the unread candidates."""
    summary = await services.intake.process_pending()
    logger.info("process_inbox finished", **{k: v for k, v in summary.to_dict().items() if k != "results"})


async def daily_report(services: SupportServices) -> None:
    """Email yesterday's (UTC) activity report to the admin address."""
    day = (datetime.now(UTC) - timedelta(days=1)).date()
    await services.reports.send_daily_report(day)


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "process_inbox": process_inbox,
    "daily_report": daily_report,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "process_inbox").strip().lower()


async def run_worker(
    job_name: str | None = None,
    services_factory: Callable[[], Awaitable[SupportServices]] | None = None,
) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    factory = services_factory or (lambda: SupportServices.create(get_settings()))
    services = await factory()
    try:
        await JOB_REGISTRY[name](services)
    finally:
        await services.aclose()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=get_settings().LOG_LEVEL)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
