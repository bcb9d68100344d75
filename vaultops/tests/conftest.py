from __future__ import annotations

import os
from pathlib import Path
import tempfile

# Settings and the engine are resolved at import time, so point them at a
# throwaway SQLite database before anything from vaultops is imported.
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="vaultops-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_ROOT / 'vaultops.db'}")
os.environ.setdefault("PROVISIONING_ROOT_DIR", str(_TEST_ROOT / "provisioning"))
os.environ.setdefault("PROVISIONING_SIMULATE", "true")
os.environ.setdefault("PROVISIONING_SIMULATE_DELAY_MS", "0")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("LOG_LEVEL", "INFO")

import pytest  # noqa: E402

from vaultops.core.config import get_settings  # noqa: E402
from vaultops.persistence.db import SessionLocal, create_schema, drop_schema, engine  # noqa: E402
from vaultops.services.dispatch import JobDispatcher  # noqa: E402
from vaultops.services.orchestrator import JobOrchestrator, reset_orchestrator  # noqa: E402
from vaultops.services.provisioning import ProvisioningDriver  # noqa: E402
from vaultops.services.telemetry import reset_telemetry  # noqa: E402
from vaultops.tests.utils.providers import scripted_providers  # noqa: E402


@pytest.fixture(autouse=True)
async def database_schema():
    # Fresh tables per test; dispose the engine so pooled connections never cross loops.
    await create_schema()
    yield
    await reset_orchestrator()
    await drop_schema()
    await engine.dispose()
    reset_telemetry()


@pytest.fixture
def providers():
    return scripted_providers()


@pytest.fixture
def driver(tmp_path: Path) -> ProvisioningDriver:
    return ProvisioningDriver(root_dir=tmp_path / "provisioning", simulate=True, development=True)


@pytest.fixture
async def orchestrator(providers, driver):
    instance = JobOrchestrator(
        session_factory=SessionLocal,
        dispatcher=JobDispatcher(4),
        driver=driver,
        providers=providers,
        settings=get_settings(),
    )
    yield instance
    await instance.dispatcher.shutdown()
