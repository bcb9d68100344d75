from __future__ import annotations

import pytest

from vaultops.domain.models import Client, Job
from vaultops.providers.cloud.factory import default_cloud_providers, enabled_providers, get_cloud_provider


def _client(providers: list[str]) -> Client:
    return Client(
        id="c1",
        name="Acme",
        environment="prod",
        status="active",
        providers=providers,
        backup_config={"aws": {"resources": ["arn:aws:ec2:i-1", "arn:aws:rds:db-1"]}},
    )


def test_enabled_providers_keep_canonical_order() -> None:
    assert enabled_providers(_client(["gcp", "AWS", "other"])) == ["aws", "gcp"]
    assert enabled_providers(_client([])) == []


def test_factory_rejects_unknown_providers() -> None:
    assert set(default_cloud_providers()) == {"aws", "azure", "gcp"}
    assert get_cloud_provider("Azure").name == "azure"
    with pytest.raises(ValueError):
        get_cloud_provider("oracle")


async def test_simulated_backup_is_deterministic() -> None:
    provider = get_cloud_provider("aws")
    first = await provider.start_backup(_client(["aws"]))
    second = await provider.start_backup(_client(["aws"]))
    assert first == second
    assert first["data_size_mb"] == 2 * 10 * 1024
    assert first["recovery_point_id"].startswith("arn:aws:backup:us-east-1:")
    assert first["resources"] == ["arn:aws:ec2:i-1", "arn:aws:rds:db-1"]


async def test_simulated_restore_and_verification() -> None:
    provider = get_cloud_provider("gcp")
    backup = Job(id="b1", client_id="c1", job_type="backup", status="success")
    restored = await provider.start_restore(_client(["gcp"]), backup, {"target_vpc": "vpc-1", "target_subnet": None})
    assert restored["target"] == {"target_vpc": "vpc-1"}
    assert restored["restored_resources"] == [
        {"id": "gcp-c1-default", "provider": "gcp", "status": "restored"}
    ]

    steps = await provider.verify_backup(_client(["gcp"]), backup, ["integrity", "access"])
    assert [step["step"] for step in steps] == ["integrity", "access"]
    assert all(step["passed"] for step in steps)
