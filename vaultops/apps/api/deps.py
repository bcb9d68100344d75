from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncGenerator

from fastapi import Query
from sqlalchemy.ext.asyncio import AsyncSession

from vaultops.core.config import get_settings
from vaultops.persistence.db import get_session
from vaultops.services.orchestrator import JobOrchestrator, get_orchestrator


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with get_session() as session:
        yield session


def orchestrator_dep() -> JobOrchestrator:
    return get_orchestrator()


@dataclass(frozen=True)
class PageParams:
    page: int
    limit: int


def page_params(
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
) -> PageParams:
    settings = get_settings()
    resolved = settings.default_page_size if limit is None else min(limit, settings.max_page_size)
    return PageParams(page=page, limit=resolved)
