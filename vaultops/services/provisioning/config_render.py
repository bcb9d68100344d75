from __future__ import annotations

from datetime import datetime
import json
import re

from vaultops.domain.clients import BackupConfig
from vaultops.domain.models import Client


_NON_ALNUM = re.compile(r"[^a-z0-9]")

_REQUIRED_PROVIDERS = {
    "aws": ("aws", "hashicorp/aws", "~> 4.0"),
    "azure": ("azurerm", "hashicorp/azurerm", "~> 3.0"),
    "gcp": ("google", "hashicorp/google", "~> 4.0"),
}


def slugify(name: str) -> str:
    # Resource names derive from the client name with every non [a-z0-9] char mapped to "-".
    return _NON_ALNUM.sub("-", (name or "").lower())


def _hcl(value: object) -> str:
    # JSON literals are valid HCL for strings, numbers and lists.
    return json.dumps(value)


def _tags(client: Client, *, labels: bool = False) -> list[str]:
    environment = client.environment or "production"
    if labels:
        return [
            "  labels = {",
            f"    environment = {_hcl(environment)}",
            f"    client      = {_hcl(slugify(client.name))}",
            '    managed_by  = "terraform"',
            "  }",
        ]
    return [
        "  tags = {",
        f"    Environment = {_hcl(environment)}",
        f"    Client      = {_hcl(client.name)}",
        '    ManagedBy   = "terraform"',
        "  }",
    ]


def _provider_blocks(config: BackupConfig, providers: list[str], *, development: bool) -> list[str]:
    lines: list[str] = []
    if "aws" in providers:
        lines += ["provider \"aws\" {", f"  region = {_hcl(config.aws.region)}"]
        if development:
            lines += [
                "",
                "  # Development mode credentials",
                '  access_key                  = "fake-access-key"',
                '  secret_key                  = "fake-secret-key"',
                "  skip_credentials_validation = true",
                "  skip_requesting_account_id  = true",
                "  skip_metadata_api_check     = true",
            ]
        lines += ["}", ""]
    if "azure" in providers:
        lines += ["provider \"azurerm\" {", "  features {}"]
        if development:
            lines += ["", "  # Development mode credentials", "  skip_provider_registration = true"]
        lines += ["}", ""]
    if "gcp" in providers:
        lines += [
            "provider \"google\" {",
            f"  project = {_hcl(config.gcp.project_id)}",
            f"  region  = {_hcl(config.gcp.region)}",
            "}",
            "",
        ]
    return lines


def _module_blocks(
    client: Client, config: BackupConfig, providers: list[str], *, module_source: str
) -> list[str]:
    slug = slugify(client.name)
    source = module_source.rstrip("/")
    lines: list[str] = []
    if "aws" in providers:
        lines += [
            "module \"aws_backup\" {",
            f"  source = {_hcl(f'{source}/aws')}",
            "",
            f"  client_id   = {_hcl(client.id)}",
            f"  client_name = {_hcl(client.name)}",
            "",
            f"  backup_vault_name = {_hcl(config.aws.backup_vault_name or f'{slug}-vault')}",
            f"  retention_days    = {int(config.retention_days)}",
            "",
            f"  resources_to_backup = {_hcl(list(config.aws.resources) or ['*'])}",
            "",
            *_tags(client),
            "}",
            "",
        ]
    if "azure" in providers:
        lines += [
            "module \"azure_backup\" {",
            f"  source = {_hcl(f'{source}/azure')}",
            "",
            f"  client_id   = {_hcl(client.id)}",
            f"  client_name = {_hcl(client.name)}",
            "",
            f"  resource_group_name = {_hcl(config.azure.resource_group_name or f'{slug}-rg')}",
            f"  location            = {_hcl(config.azure.location)}",
            "",
            f"  recovery_vault_name = {_hcl(f'{slug}-vault')}",
            f"  retention_days      = {int(config.retention_days)}",
            "",
            f"  backup_frequency = {_hcl(config.frequency)}",
            f"  backup_time      = {_hcl(config.start_time)}",
            "",
            *_tags(client),
            "}",
            "",
        ]
    if "gcp" in providers:
        lines += [
            "module \"gcp_backup\" {",
            f"  source = {_hcl(f'{source}/gcp')}",
            "",
            f"  client_id   = {_hcl(client.id)}",
            f"  client_name = {_hcl(client.name)}",
            "",
            f"  project_id = {_hcl(config.gcp.project_id)}",
            f"  location   = {_hcl(config.gcp.region)}",
            "",
            f"  backup_bucket_name = {_hcl(f'{slug}-backup')}",
            f"  retention_days     = {int(config.retention_days)}",
            "",
            *_tags(client, labels=True),
            "}",
            "",
        ]
    return lines


def render_main_tf(
    client: Client,
    providers: list[str],
    *,
    module_source: str,
    generated_at: datetime,
    development: bool = False,
) -> str:
    """Render the client's main.tf.

    Output depends only on the client's attributes; the generation timestamp
    comment is the single wall-clock input.
    """
    config = BackupConfig.model_validate(client.backup_config or {})
    lines = [
        f"# Provisioning configuration for client: {client.name}",
        f"# Generated on: {generated_at.isoformat()}",
        "",
        "terraform {",
        "  required_providers {",
    ]
    for name in providers:
        local_name, source, version = _REQUIRED_PROVIDERS[name]
        lines += [
            f"    {local_name} = {{",
            f"      source  = {_hcl(source)}",
            f"      version = {_hcl(version)}",
            "    }",
        ]
    lines += [
        "  }",
        "",
        "  backend \"local\" {",
        f"    path = {_hcl(f'states/{client.id}.tfstate')}",
        "  }",
        "}",
        "",
    ]
    lines += _provider_blocks(config, providers, development=development)
    lines += _module_blocks(client, config, providers, module_source=module_source)
    return "\n".join(lines)


def render_variables_tf(client: Client) -> str:
    lines = [
        f"# Variables for client: {client.name}",
        "",
        "variable \"client_id\" {",
        '  description = "The unique ID of the client"',
        "  type        = string",
        f"  default     = {_hcl(client.id)}",
        "}",
        "",
        "variable \"client_name\" {",
        '  description = "The name of the client"',
        "  type        = string",
        f"  default     = {_hcl(client.name)}",
        "}",
        "",
    ]
    # Restore runs pass these through -var; declaring them keeps validate happy.
    for name, description, default in (
        ("restore_mode", "Whether resources are being restored from a backup", "false"),
        ("backup_id", "Identifier of the backup being restored", ""),
        ("recovery_point_arn", "Recovery point the restore reads from", ""),
    ):
        lines += [
            f"variable \"{name}\" {{",
            f"  description = {_hcl(description)}",
            "  type        = string",
            f"  default     = {_hcl(default)}",
            "}",
            "",
        ]
    return "\n".join(lines)
