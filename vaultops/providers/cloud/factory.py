from __future__ import annotations

from vaultops.domain.clients import CLOUD_PROVIDERS
from vaultops.domain.models import Client
from vaultops.providers.cloud.base import CloudProvider
from vaultops.providers.cloud.simulated import SimulatedCloudProvider


def get_cloud_provider(name: str) -> CloudProvider:
    # Real SDK gateways plug in here; every provider is simulated for now.
    normalized = (name or "").lower()
    if normalized not in CLOUD_PROVIDERS:
        raise ValueError(f"Unsupported cloud provider: {name}")
    return SimulatedCloudProvider(normalized)


def default_cloud_providers() -> dict[str, CloudProvider]:
    return {name: get_cloud_provider(name) for name in CLOUD_PROVIDERS}


def enabled_providers(client: Client) -> list[str]:
    # Keep a stable aws/azure/gcp order so fan-out results are reproducible.
    enabled = {str(provider).lower() for provider in (client.providers or [])}
    return [name for name in CLOUD_PROVIDERS if name in enabled]
