from __future__ import annotations

import logging
import sys

from vaultops.core.config import get_settings


_HANDLER_NAME = "vaultops"
_RESERVED = set(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "asctime"}


class KeyValueFormatter(logging.Formatter):
    # Append `extra=` context as key=value pairs so log lines stay grep-friendly.
    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        context = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED and not key.startswith("_")
        }
        if not context:
            return base
        pairs = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
        return f"{base} {pairs}"


def configure_logging(level: str | None = None) -> None:
    # Idempotent: API factory, worker and scripts may all call this.
    root = logging.getLogger()
    resolved = (level or get_settings().log_level or "INFO").upper()
    root.setLevel(resolved)
    for handler in root.handlers:
        if handler.get_name() == _HANDLER_NAME:
            handler.setLevel(resolved)
            return
    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setLevel(resolved)
    handler.setFormatter(KeyValueFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(handler)
