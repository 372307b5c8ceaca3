"""
Worker entry point.
Run with: python -m smart_upload.worker.runner [--kind extract_text ...]

Without --kind, starts one RQ worker process per unit of concurrency for
every job kind (ingest runs a single worker).
"""

import argparse
import multiprocessing
import os
from typing import Optional, Sequence

import structlog
from redis import Redis
from rq import Worker

from smart_upload.config import settings
from smart_upload.observability.logging import setup_logging
from smart_upload.worker.definitions import JOB_POLICIES, JobKind, kinds_by_priority, queue_name

logger = structlog.get_logger(__name__)


def run_worker(kinds: Sequence[str], name: str) -> None:
    """Start one RQ worker listening on the given kinds' queues, in order."""
    setup_logging()

    conn = Redis.from_url(settings.REDIS_URL)
    queues = [queue_name(JobKind(kind)) for kind in kinds]
    worker = Worker(queues=queues, connection=conn, name=name)

    logger.info("worker_starting", name=name, queues=queues)
    # The scheduler moves delayed retries onto their queues
    worker.work(with_scheduler=True)


def worker_plan() -> list[tuple[JobKind, int]]:
    """(kind, index) for every worker process the pool should run."""
    return [
        (kind, index)
        for kind in kinds_by_priority()
        for index in range(JOB_POLICIES[kind].concurrency)
    ]


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Smart Upload pipeline workers")
    parser.add_argument(
        "--kind",
        action="append",
        choices=[k.value for k in JobKind],
        help="Run a single worker for these job kinds (repeatable)",
    )
    args = parser.parse_args(argv)

    if args.kind:
        run_worker(args.kind, name=f"smart-upload-{'-'.join(args.kind)}-{os.getpid()}")
        return

    setup_logging()
    processes = []
    for kind, index in worker_plan():
        process = multiprocessing.Process(
            target=run_worker,
            args=([kind.value], f"smart-upload-{kind.value}-{index}-{os.getpid()}"),
            name=f"{kind.value}-{index}",
        )
        process.start()
        processes.append(process)

    logger.info("worker_pool_started", workers=len(processes), version=settings.APP_VERSION)
    for process in processes:
        process.join()


if __name__ == "__main__":
    main()
