from __future__ import annotations

from datetime import timedelta

from httpx import ASGITransport, AsyncClient

from vaultops.apps.api.main import create_app
from vaultops.domain.jobs import JobStatus
from vaultops.services.orchestrator import get_orchestrator
from vaultops.tests.utils.seed import create_test_backup, create_test_client


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


async def test_dr_test_flow_over_http() -> None:
    seeded = await create_test_client(providers=["azure"])
    await create_test_backup(client_id=seeded.id, provider="azure", age=timedelta(hours=2))

    async with _client() as client:
        response = await client.post(
            f"/v1/clients/{seeded.id}/dr-tests", json={"verification_steps": ["integrity"]}
        )
        assert response.status_code == 202
        job_id = response.json()["data"]["job_id"]

        await get_orchestrator().dispatcher.wait(job_id, timeout=5)

        response = await client.get(f"/v1/dr-tests/{job_id}")
        report = response.json()["data"]
        assert report["status"] == JobStatus.SUCCESS.value
        assert report["verification_steps"] == ["integrity"]
        assert report["metrics"]["rpo_target"] == "24h"
        assert report["metrics"]["recovery_point_hours"] == 2

        response = await client.get(f"/v1/clients/{seeded.id}/dr-tests")
        assert response.json()["data"]["total"] == 1

        response = await client.get(f"/v1/clients/{seeded.id}/dr-compliance")
        compliance = response.json()["data"]
        assert compliance["successful_tests"] == 1
        assert compliance["frequency_compliance"] is True


async def test_sweep_endpoint_schedules_due_clients() -> None:
    seeded = await create_test_client()
    await create_test_backup(client_id=seeded.id)
    await create_test_client(name="No backups yet")

    async with _client() as client:
        response = await client.post("/v1/dr-tests/sweep")
    assert response.status_code == 202
    sweep = response.json()["data"]
    assert sweep["count"] == 1
    assert len(sweep["skipped"]) == 1

    await get_orchestrator().dispatcher.drain(timeout=5)


async def test_unknown_dr_test_is_not_found() -> None:
    async with _client() as client:
        response = await client.get("/v1/dr-tests/missing")
    assert response.status_code == 404
