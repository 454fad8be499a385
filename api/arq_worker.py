"""
Caseflow — arq Worker Entry Point

Background maintenance for the lifecycle engine:
  escalation_sweep    — check_and_escalate every N minutes (escalation.sweep_interval_minutes)
  reap_reservations   — drop expired footprint reservations every 5 minutes

Both jobs run the synchronous lifecycle code in a thread pool so the
event loop stays free.

Usage:
    python -m api.arq_worker

    # Or via arq CLI:
    arq api.arq_worker.WorkerSettings
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor

from infra.logging import configure_logging
from lifecycle.config import load_lifecycle_config

logger = logging.getLogger("caseflow.arq_worker")

REAP_INTERVAL_MINUTES = 5


async def _run(ctx: dict, fn, *args):
    import asyncio

    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(ctx.get("pool"), fn, *args)


async def escalation_sweep(ctx: dict, tenant_id: str | None = None):
    """arq task: one escalation sweep over overdue tasks."""
    created = await _run(ctx, ctx["lifecycle"].check_and_escalate, tenant_id)
    logger.info("Escalation sweep created %d event(s)", created)
    return created


async def reap_reservations(ctx: dict):
    """arq task: remove footprint reservations past their TTL."""
    removed = await _run(ctx, ctx["lifecycle"].reap_expired_reservations)
    logger.info("Reaped %d expired reservation(s)", removed)
    return removed


async def startup(ctx: dict):
    """arq startup hook: thread pool and a shared lifecycle runtime."""
    from infra.db import create_backend
    from lifecycle.runtime import CaseLifecycle

    config = load_lifecycle_config()
    configure_logging(level=config.log_level)
    max_workers = int(os.environ.get("CF_MAX_WORKERS", "2"))
    ctx["pool"] = ThreadPoolExecutor(
        max_workers=max_workers,
        thread_name_prefix="cf_worker",
    )
    ctx["lifecycle"] = CaseLifecycle(config=config, db=create_backend())
    logger.info("arq worker started: max_workers=%d", max_workers)


async def shutdown(ctx: dict):
    """arq shutdown hook: clean up thread pool and database."""
    pool = ctx.get("pool")
    if pool:
        pool.shutdown(wait=True)
    lifecycle = ctx.get("lifecycle")
    if lifecycle:
        lifecycle.close()
    logger.info("arq worker shutdown complete")


def _every(minutes: int) -> set[int]:
    minutes = max(1, min(int(minutes), 60))
    return set(range(0, 60, minutes))


class WorkerSettings:
    """arq worker configuration."""
    functions = [escalation_sweep, reap_reservations]
    cron_jobs: list = []
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = int(os.environ.get("CF_MAX_WORKERS", "2"))
    job_timeout = int(os.environ.get("CF_JOB_TIMEOUT", "300"))
    redis_settings = None  # Set from CF_REDIS_URL at import time

    @classmethod
    def _init_arq(cls):
        redis_url = os.environ.get("CF_REDIS_URL", "redis://localhost:6379")
        try:
            from arq import cron
            from arq.connections import RedisSettings
        except ImportError:
            logger.warning("arq not installed, worker cannot start")
            return
        cls.redis_settings = RedisSettings.from_dsn(redis_url)
        interval = load_lifecycle_config().sweep_interval_minutes
        cls.cron_jobs = [
            cron(escalation_sweep, minute=_every(interval)),
            cron(reap_reservations, minute=_every(REAP_INTERVAL_MINUTES)),
        ]


WorkerSettings._init_arq()


if __name__ == "__main__":
    from arq import run_worker
    run_worker(WorkerSettings)
