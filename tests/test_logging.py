"""Tests for the logging configuration."""

import json
import logging

import pytest

from capturebot.core.logging import CHATTY_LOGGERS, get_logging_config, setup_logging
from capturebot.core.settings import Settings


@pytest.fixture
def restore_logging():
    yield
    for name in ("", "capturebot", "uvicorn", "uvicorn.access", *CHATTY_LOGGERS):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
        logger.propagate = True


def test_debug_turns_on_sql_and_http_logging():
    quiet = get_logging_config("capturebot", Settings(debug=False))
    loud = get_logging_config("capturebot", Settings(debug=True))

    for name in ("sqlalchemy.engine", "httpx"):
        assert quiet["loggers"][name]["level"] == "WARNING"
        assert loud["loggers"][name]["level"] == "INFO"
    assert loud["loggers"]["capturebot"]["level"] == "DEBUG"
    assert loud["handlers"]["console"]["level"] == "DEBUG"


def test_development_uses_console_format_with_service_name():
    config = get_logging_config("cli-trends", Settings(environment="development"))

    assert config["handlers"]["console"]["formatter"] == "console"
    assert "[cli-trends]" in config["formatters"]["console"]["format"]


def test_production_emits_json_with_service_field(capsys, restore_logging):
    setup_logging("capturebot", Settings(environment="production", log_level="INFO"))

    logging.getLogger("capturebot.test").info("tick done", extra={'user_id': 'u-1'})

    record = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert record["message"] == "tick done"
    assert record["service"] == "capturebot"
    assert record["environment"] == "production"
    assert record["user_id"] == "u-1"
