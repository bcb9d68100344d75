from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from vaultops.core.config import get_settings
from vaultops.core.logging import configure_logging
from vaultops.persistence.db import SessionLocal
from vaultops.services.dr_scheduler import DRCadenceScheduler
from vaultops.services.orchestrator import get_orchestrator, reset_orchestrator

logger = logging.getLogger(__name__)


async def run_dr_sweep(ctx) -> dict:
    # Create automated DR tests for every client whose cadence has elapsed.
    scheduler = DRCadenceScheduler(get_orchestrator(), SessionLocal)
    result = await scheduler.schedule_periodic_dr_tests()
    return {"job_ids": result.job_ids, "count": result.count, "skipped": result.skipped}


async def _startup(ctx) -> None:
    configure_logging()
    ctx["orchestrator"] = get_orchestrator()
    logger.info("dr_worker_started")


async def _shutdown(ctx) -> None:
    # Give running DR tests a bounded window to finish, then cancel the rest.
    orchestrator = ctx.get("orchestrator")
    if orchestrator is not None:
        await orchestrator.dispatcher.drain(timeout=get_settings().job_drain_timeout_s)
    await reset_orchestrator()
    logger.info("dr_worker_stopped")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.dr_worker_queue_name
    functions = [run_dr_sweep]
    cron_jobs = [
        cron(
            run_dr_sweep,
            hour={settings.dr_sweep_cron_hour},
            minute={settings.dr_sweep_cron_minute},
            run_at_startup=False,
            unique=True,
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown
