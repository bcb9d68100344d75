from __future__ import annotations

import argparse

import uvicorn

from vaultops.apps.api.main import create_app
from vaultops.core.config import get_settings


def main() -> None:
    # Serve the job API; background jobs run in this process's event loop.
    parser = argparse.ArgumentParser(description="Run the VaultOps API")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()
    uvicorn.run(create_app(), host=args.host, port=args.port, log_level=get_settings().log_level.lower())


if __name__ == "__main__":
    main()
