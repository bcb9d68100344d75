from __future__ import annotations

import argparse
import asyncio
import json

from vaultops.core.config import get_settings
from vaultops.core.logging import configure_logging
from vaultops.persistence.db import SessionLocal, engine
from vaultops.services.dr_scheduler import DRCadenceScheduler
from vaultops.services.orchestrator import get_orchestrator, reset_orchestrator


async def _run_sweep(wait: bool) -> dict:
    # One-shot DR sweep for operators; the worker cron runs the same code path.
    orchestrator = get_orchestrator()
    try:
        result = await DRCadenceScheduler(orchestrator, SessionLocal).schedule_periodic_dr_tests()
        payload: dict = {"job_ids": result.job_ids, "count": result.count, "skipped": result.skipped}
        if wait and result.job_ids:
            await orchestrator.dispatcher.drain(timeout=get_settings().job_drain_timeout_s)
            statuses = {}
            for job_id in result.job_ids:
                snapshot = await orchestrator.get_status(job_id)
                statuses[job_id] = snapshot.status
            payload["statuses"] = statuses
        return payload
    finally:
        await reset_orchestrator()
        await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Schedule automated DR tests for due clients")
    parser.add_argument("--wait", action="store_true", help="wait for created DR tests to finish")
    args = parser.parse_args()
    configure_logging()
    payload = asyncio.run(_run_sweep(args.wait))
    print(json.dumps(payload, indent=2))


if __name__ == "__main__":
    main()
