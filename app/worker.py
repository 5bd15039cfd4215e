"""Worker CLI -- run generation jobs outside the API process.

    python -m app.worker JOB_ID [JOB_ID ...]

Each job is executed to a terminal state in turn.  The exit status is 0
when every job ends ``completed``, 1 when any ends ``failed`` and 2 when
a job id is unknown.
"""

import argparse
import asyncio
import logging
import sys

from app.clients import deploy_client, llm_client, notify_client, template_client
from app.errors import JobNotFoundError
from app.logging_setup import configure_logging
from app.models import JobStatus
from app.repos.store import close_store, get_store
from app.services.job_controller import JobController

logger = logging.getLogger("app.worker")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m app.worker",
        description="Run Shipwright generation jobs to completion.",
    )
    parser.add_argument("job_ids", nargs="+", metavar="JOB_ID", help="Job(s) to execute")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    return parser.parse_args(argv)


async def run_jobs(job_ids: list[str]) -> int:
    store = get_store()
    controller = JobController(store)
    exit_code = 0
    try:
        for job_id in job_ids:
            try:
                await controller.execute(job_id)
            except JobNotFoundError as exc:
                logger.error("%s", exc.message)
                exit_code = max(exit_code, 2)
                continue
            job = await store.get_job(job_id)
            status = job.status if job else None
            logger.info("Job %s finished: %s", job_id, status.value if status else "unknown")
            if status is not JobStatus.COMPLETED:
                exit_code = max(exit_code, 1)
    finally:
        await llm_client.close_client()
        await deploy_client.close_client()
        await template_client.close_client()
        await notify_client.close_client()
        await close_store()
    return exit_code


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging(args.log_level)
    return asyncio.run(run_jobs(args.job_ids))


if __name__ == "__main__":
    sys.exit(main())
