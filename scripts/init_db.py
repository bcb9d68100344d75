from __future__ import annotations

import asyncio

from vaultops.core.logging import configure_logging
from vaultops.persistence.db import create_schema, engine


async def _init_db() -> None:
    # Create tables and partial indexes straight from ORM metadata.
    await create_schema()
    await engine.dispose()
    print("schema_created=true")


def main() -> None:
    configure_logging()
    asyncio.run(_init_db())


if __name__ == "__main__":
    main()
