from __future__ import annotations

import json
import logging
import os
import re
import sys
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from datasource_hub.utils.config import LOG_DIR_ENV, LOG_LEVEL_ENV, get_logs_dir

LOG_FILE_NAME = "datasource_hub.log"
REDACTED = "***"
# Connection params and OAuth payloads must never reach log files.
SENSITIVE_FIELD_PATTERN = re.compile(
    r"password|secret|token|private_?key|api_?key|client_?key|cert", re.IGNORECASE
)
# Client libraries that log every warehouse or OAuth request at INFO.
QUIET_LOGGERS = ("httpx", "httpcore", "google.auth", "google.cloud", "urllib3")


def configure_logging(log_level: str | None = None, log_path: Path | None = None) -> None:
    """Console output for operators plus a JSON-lines file next to the audit log."""
    level_name = (log_level or os.getenv(LOG_LEVEL_ENV) or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    if log_path is None:
        override = os.getenv(LOG_DIR_ENV)
        log_path = (Path(override).expanduser() if override else get_logs_dir()) / LOG_FILE_NAME
    log_path.parent.mkdir(parents=True, exist_ok=True)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ConsoleFormatter())
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(JsonFormatter())
    logging.basicConfig(level=level, handlers=[console_handler, file_handler])

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)


def redact(value: Any) -> Any:
    """Mask values whose field name looks like a credential, recursing into nested params."""
    if isinstance(value, Mapping):
        return {
            key: REDACTED if SENSITIVE_FIELD_PATTERN.search(str(key)) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def _format_event(event: str, extra: Mapping[str, Any] | None = None) -> str:
    return json.dumps({"event": event, **redact(dict(extra or {}))}, default=str)


def _split_event(message: str) -> tuple[str | None, dict[str, Any] | None]:
    try:
        payload = json.loads(message)
    except json.JSONDecodeError:
        return None, None
    if not isinstance(payload, dict):
        return None, None
    return payload.pop("event", None), payload


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "logger": record.name,
            "severity": record.levelname,
            "thread": record.threadName,
        }
        message = record.getMessage()
        event, payload = _split_event(message)
        if payload is None:
            data["message"] = message
        else:
            if event is not None:
                data["event"] = event
            data.update(payload)
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


class ConsoleFormatter(logging.Formatter):
    """One line per record; structured events render as ``event key=value ...``."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = time.strftime("%H:%M:%S", time.localtime(record.created))
        message = record.getMessage()
        event, payload = _split_event(message)
        if payload is not None:
            message = event or message
            if payload:
                message += " " + " ".join(f"{key}={payload[key]}" for key in sorted(payload))
        output = f"{timestamp} | {record.levelname:<8} | {record.threadName} | {record.name} | {message}"
        if record.exc_info:
            output += "\n" + self.formatException(record.exc_info)
        return output


def log_event(logger: logging.Logger, event: str, **extra: Any) -> None:
    logger.info(_format_event(event, extra))


def log_warning_event(logger: logging.Logger, event: str, **extra: Any) -> None:
    logger.warning(_format_event(event, extra))


@contextmanager
def log_timing(logger: logging.Logger, event: str, **extra: Any) -> Iterator[None]:
    """Wrap a mutation in ``<event>.start`` and ``<event>.complete|error`` with elapsed ms."""
    start = time.perf_counter()
    logger.info(_format_event(f"{event}.start", extra))
    try:
        yield
    except Exception:
        logger.exception(_format_event(f"{event}.error", _with_elapsed(extra, start)))
        raise
    logger.info(_format_event(f"{event}.complete", _with_elapsed(extra, start)))


def _with_elapsed(extra: Mapping[str, Any], start: float) -> dict[str, Any]:
    return {**extra, "elapsed_ms": (time.perf_counter() - start) * 1000.0}
