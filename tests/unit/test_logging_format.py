import json
import logging

from datasource_hub.utils.logging import (
    QUIET_LOGGERS,
    ConsoleFormatter,
    JsonFormatter,
    configure_logging,
    log_event,
    log_timing,
    redact,
)


def _record(message: str, level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord("datasource_hub.test", level, __file__, 1, message, None, None)


def test_json_formatter_emits_parseable_line() -> None:
    line = JsonFormatter().format(_record("datasource.update ok"))
    payload = json.loads(line)
    assert payload["message"] == "datasource.update ok"
    assert payload["severity"] == "INFO"


def test_console_formatter_includes_logger_name() -> None:
    line = ConsoleFormatter().format(_record("hello", logging.WARNING))
    assert "datasource_hub.test" in line
    assert "hello" in line


def test_log_timing_reports_start_and_completion(caplog) -> None:
    logger = logging.getLogger("datasource_hub.timing")
    with caplog.at_level(logging.INFO, logger="datasource_hub.timing"):
        with log_timing(logger, "datasource.update", datasource_id="ds_1"):
            log_event(logger, "datasource.inner", step=1)

    messages = [record.getMessage() for record in caplog.records]
    assert any("datasource.update.start" in message for message in messages)
    assert any("datasource.update.complete" in message for message in messages)
    assert any("datasource.inner" in message for message in messages)


def test_structured_events_mask_credentials(caplog) -> None:
    logger = logging.getLogger("datasource_hub.redaction")
    with caplog.at_level(logging.INFO, logger="datasource_hub.redaction"):
        log_event(
            logger,
            "datasource.params_merged",
            datasource_id="ds_1",
            params={"host": "db.internal", "password": "s3cret", "clientKey": "pem", "refreshToken": "rt"},
        )

    [record] = caplog.records
    payload = json.loads(JsonFormatter().format(record))
    assert payload["event"] == "datasource.params_merged"
    assert payload["datasource_id"] == "ds_1"
    assert payload["params"] == {
        "host": "db.internal",
        "password": "***",
        "clientKey": "***",
        "refreshToken": "***",
    }


def test_redact_recurses_into_lists() -> None:
    assert redact([{"apiKey": "k", "name": "a"}, "plain"]) == [{"apiKey": "***", "name": "a"}, "plain"]


def test_configure_logging_writes_json_lines_under_log_dir(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("DATASOURCE_LOG_DIR", str(tmp_path / "logs"))
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    saved_quiet = {name: logging.getLogger(name).level for name in QUIET_LOGGERS}
    root.handlers = []
    try:
        configure_logging("debug")
        assert logging.getLogger("httpx").level == logging.WARNING
        log_event(logging.getLogger("datasource_hub.file"), "datasource.created", datasource_id="ds_9")
        for handler in root.handlers:
            handler.flush()
        [line] = (tmp_path / "logs" / "datasource_hub.log").read_text().strip().splitlines()
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers = saved_handlers
        root.setLevel(saved_level)
        for name, level in saved_quiet.items():
            logging.getLogger(name).setLevel(level)

    payload = json.loads(line)
    assert payload["event"] == "datasource.created"
    assert payload["datasource_id"] == "ds_9"
