from __future__ import annotations

import json
import logging
import re
from typing import Any

from vaultops.domain.jobs import ChangeSummary


logger = logging.getLogger(__name__)


_PLAN_SUMMARY = re.compile(r"Plan: (\d+) to add, (\d+) to change, (\d+) to destroy")
_CREATION_MARKER = re.compile(r"Creation complete after \d+[ms] \[id=([^\]]+)\]")


def parse_change_summary(output: str | None) -> ChangeSummary | None:
    # A missing summary line is normal (e.g. "No changes"), not an error.
    if not output:
        return None
    match = _PLAN_SUMMARY.search(output)
    if match is None:
        return None
    return ChangeSummary(
        added=int(match.group(1)),
        changed=int(match.group(2)),
        destroyed=int(match.group(3)),
    )


def parse_restored_resources(output: Any) -> list[dict[str, Any]]:
    """Best-effort list of resources created by an apply.

    Structured output exposing a ``resources`` list wins over text scanning;
    the scan only recognizes "Creation complete ... [id=...]" markers and is
    not guaranteed to find every resource.
    """
    if isinstance(output, dict):
        resources = output.get("resources")
        if isinstance(resources, list):
            return [item if isinstance(item, dict) else {"id": str(item)} for item in resources]
        return []
    if not isinstance(output, str) or not output:
        return []
    restored: list[dict[str, Any]] = []
    for match in _CREATION_MARKER.finditer(output):
        resource_id = match.group(1)
        restored.append(
            {"id": resource_id, "type": resource_id.split(".")[0], "status": "created"}
        )
    return restored


def parse_output_json(output: str | None) -> dict[str, Any]:
    # Outputs are telemetry; unparseable JSON degrades to an empty map.
    if not output:
        return {}
    try:
        parsed = json.loads(output)
    except json.JSONDecodeError as exc:
        logger.warning("provisioning_output_unparseable error=%s", exc)
        return {}
    if not isinstance(parsed, dict):
        return {}
    return parsed
