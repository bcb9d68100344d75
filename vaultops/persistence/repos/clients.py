from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vaultops.domain.clients import ClientStatus, TerraformState
from vaultops.domain.models import Client


async def get_client(session: AsyncSession, client_id: str) -> Client | None:
    result = await session.execute(select(Client).where(Client.id == client_id))
    return result.scalar_one_or_none()


async def list_clients(
    session: AsyncSession, *, status: ClientStatus | None = None
) -> list[Client]:
    stmt = select(Client)
    if status is not None:
        stmt = stmt.where(Client.status == status.value)
    result = await session.execute(stmt.order_by(Client.created_at, Client.id))
    return list(result.scalars().all())


async def set_terraform_state(
    session: AsyncSession, client_id: str, state: TerraformState
) -> None:
    await session.execute(
        update(Client)
        .where(Client.id == client_id)
        .values(terraform_state=state.value, updated_at=datetime.now(timezone.utc))
    )
