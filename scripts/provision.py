from __future__ import annotations

import argparse
import asyncio
import json
import sys

from vaultops.core.config import get_settings
from vaultops.core.errors import VaultOpsError
from vaultops.core.logging import configure_logging
from vaultops.domain.jobs import JobStatus
from vaultops.persistence.db import engine
from vaultops.services.orchestrator import get_orchestrator, reset_orchestrator


async def _provision(client_id: str, action: str, backup_id: str | None, wait: bool) -> dict:
    orchestrator = get_orchestrator()
    try:
        handle = await orchestrator.start_provisioning(
            client_id, action, backup_id, initiated_by="cli"
        )
        payload = handle.model_dump(mode="json")
        if wait:
            await orchestrator.dispatcher.wait(
                handle.job_id, timeout=get_settings().job_drain_timeout_s
            )
            payload["job"] = (await orchestrator.get_status(handle.job_id)).model_dump(mode="json")
        return payload
    finally:
        await reset_orchestrator()
        await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a provisioning action for one client")
    parser.add_argument("--client-id", required=True)
    parser.add_argument(
        "--action", required=True, choices=["init", "update", "destroy", "restore"]
    )
    parser.add_argument("--backup-id", default=None)
    parser.add_argument("--wait", action="store_true", help="wait for the job to finish")
    args = parser.parse_args()
    configure_logging()
    try:
        payload = asyncio.run(_provision(args.client_id, args.action, args.backup_id, args.wait))
    except VaultOpsError as exc:
        print(json.dumps({"error": {"code": exc.code, "message": exc.message}}, indent=2))
        sys.exit(1)
    print(json.dumps(payload, indent=2))
    job = payload.get("job")
    if job is not None and job.get("status") != JobStatus.SUCCESS.value:
        sys.exit(1)


if __name__ == "__main__":
    main()
