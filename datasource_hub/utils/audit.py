from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from datasource_hub.utils.config import get_logs_dir
from datasource_hub.utils.logging import get_logger, redact

LOGGER = get_logger(__name__)


def audit_log_path() -> Path:
    log_dir = get_logs_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / "audit.log"


def record_audit(
    action: str,
    outcome: str,
    *,
    user: str | None,
    organization: str | None = None,
    details: dict[str, Any],
) -> dict[str, Any]:
    entry = {
        "timestamp": datetime.now(UTC).isoformat(),
        "action": action,
        "outcome": outcome,
        "user": user,
        "organization": organization,
        **redact(details),
    }
    try:
        with audit_log_path().open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, default=str) + "\n")
    except OSError:  # pragma: no cover - best-effort persistence
        LOGGER.warning("Failed to write audit log for %s", action)
    LOGGER.info("audit.%s %s %s", action, outcome, redact(details))
    return entry

