from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import UTC, datetime
from time import perf_counter
from typing import Any

from datasource_hub.utils.logging import get_logger

LOGGER = get_logger(__name__)


def emit_datasource_metric(event: str, **fields: Any) -> dict[str, Any]:
    """Log a metric payload and hand it back to the caller."""
    payload = {"event": _normalize_event(event), "timestamp": datetime.now(UTC).isoformat(), **fields}
    _log_payload(payload)
    return payload


def timing_payload(event: str, *, elapsed_ms: float, **fields: Any) -> dict[str, Any]:
    return {
        "event": f"{_normalize_event(event)}.timing",
        "elapsed_ms": elapsed_ms,
        "timestamp": datetime.now(UTC).isoformat(),
        **fields,
    }


def emit_datasource_timing(event: str, *, elapsed_ms: float, **fields: Any) -> dict[str, Any]:
    payload = timing_payload(event, elapsed_ms=elapsed_ms, **fields)
    _log_payload(payload)
    return payload


@contextmanager
def measure_datasource(event: str, **fields: Any):
    """Emit a timing metric around a block, whether or not it raises."""
    start = perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (perf_counter() - start) * 1000
        emit_datasource_timing(event, elapsed_ms=elapsed_ms, **fields)


def _normalize_event(event: str) -> str:
    return event if event.startswith("datasource.") else f"datasource.{event}"


def _log_payload(payload: dict[str, Any]) -> None:
    try:
        LOGGER.info(json.dumps(payload, default=str))
    except (TypeError, ValueError):
        LOGGER.info("%s %s", payload.get("event", "datasource.metric"), payload)
