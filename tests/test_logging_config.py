"""
Tests for structlog setup.
"""
import json
import logging

import pytest
import structlog

from mcp_relay.config import LoggingConfig
from mcp_relay.utils.logging_config import setup_logging


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    for handler in logging.getLogger().handlers[:]:
        handler.close()
        logging.getLogger().removeHandler(handler)
    structlog.reset_defaults()


def test_json_logs_go_to_file(tmp_path):
    log_file = tmp_path / "logs" / "relay.log"
    setup_logging(LoggingConfig(level="INFO", format="json", file=log_file))

    structlog.get_logger("mcp_relay.test").info("Session ready.", server_name="ctx")
    for handler in logging.getLogger().handlers:
        handler.flush()

    records = [json.loads(line) for line in log_file.read_text().splitlines() if line.strip()]
    ready = [r for r in records if r["event"] == "Session ready."]
    assert len(ready) == 1
    assert ready[0]["server_name"] == "ctx"
    assert ready[0]["level"] == "info"
    assert "timestamp" in ready[0]


def test_level_filters_lower_records(tmp_path):
    log_file = tmp_path / "relay.log"
    setup_logging(LoggingConfig(level="ERROR", format="json", file=log_file))

    structlog.get_logger("mcp_relay.test").warning("Not written.")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert "Not written." not in log_file.read_text()
