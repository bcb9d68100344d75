from __future__ import annotations

from vaultops.services.provisioning.driver import (
    CommandResult,
    GeneratedConfig,
    ProvisioningCommand,
    ProvisioningDriver,
    restore_variables,
)
from vaultops.services.provisioning.output_parsing import (
    parse_change_summary,
    parse_output_json,
    parse_restored_resources,
)

__all__ = [
    "CommandResult",
    "GeneratedConfig",
    "ProvisioningCommand",
    "ProvisioningDriver",
    "restore_variables",
    "parse_change_summary",
    "parse_output_json",
    "parse_restored_resources",
]
