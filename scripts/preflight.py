from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
import shutil
import sys
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from vaultops.core.config import get_settings
from vaultops.persistence.db import engine


_REQUIRED_TABLES = ("clients", "jobs")


async def _check_database() -> tuple[bool, dict[str, Any]]:
    # Reachability plus presence of the tables init_db creates.
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
            tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    except (SQLAlchemyError, OSError) as exc:
        return False, {"error": str(exc)}
    missing = [name for name in _REQUIRED_TABLES if name not in tables]
    return not missing, {"missing_tables": missing}


async def _check_redis() -> tuple[bool, dict[str, Any]]:
    # Only the DR worker needs Redis, so an outage is a warning for the API.
    client = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
    try:
        return bool(await client.ping()), {}
    except (RedisError, OSError) as exc:
        return False, {"error": str(exc)}
    finally:
        await client.aclose()


def _check_provisioning() -> tuple[str, dict[str, Any]]:
    settings = get_settings()
    root = Path(settings.provisioning_root_dir)
    detail: dict[str, Any] = {"root_dir": str(root), "simulate": settings.provisioning_simulate}
    if settings.provisioning_simulate and settings.environment.lower() != "production":
        return "pass", detail
    binary = shutil.which(settings.provisioning_binary)
    detail["binary"] = binary
    return ("pass" if binary else "fail"), detail


async def run_preflight() -> int:
    results: list[dict[str, Any]] = []

    db_ok, db_detail = await _check_database()
    results.append({"check": "database_ready", "status": "pass" if db_ok else "fail", "detail": db_detail})

    redis_ok, redis_detail = await _check_redis()
    results.append(
        {"check": "redis_reachable", "status": "pass" if redis_ok else "warn", "detail": redis_detail}
    )

    provisioning_status, provisioning_detail = _check_provisioning()
    results.append(
        {"check": "provisioning_binary", "status": provisioning_status, "detail": provisioning_detail}
    )

    await engine.dispose()
    failed = [row for row in results if row["status"] == "fail"]
    print(json.dumps({"status": "pass" if not failed else "fail", "checks": results}, indent=2, sort_keys=True))
    return 0 if not failed else 1


def main() -> int:
    argparse.ArgumentParser(description="Check database, Redis and provisioning tool readiness.").parse_args()
    return asyncio.run(run_preflight())


if __name__ == "__main__":
    sys.exit(main())
