"""Structured logging configuration using dictConfig.

Production emits one JSON object per line with the service name as a field;
development uses a readable console format. ``DEBUG=true`` also turns on
SQL statement and outbound HTTP logging.
"""
import logging
import logging.config
import sys
from typing import Dict, Any, Optional

from .settings import Settings, get_settings

# Loggers whose verbosity follows settings.debug rather than settings.log_level
CHATTY_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore")


def get_logging_config(service_name: Optional[str] = None, settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Get logging configuration dictionary."""
    settings = settings or get_settings()
    service = service_name or "capturebot"
    production = settings.environment == "production"

    handler = {
        "class": "logging.StreamHandler",
        "level": settings.log_level,
        "formatter": "json" if production else "console",
        "stream": sys.stdout
    }

    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.json.JsonFormatter",
                "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S%z",
                "static_fields": {"service": service, "environment": settings.environment},
            },
            "console": {
                "format": f"%(asctime)s [{service}] [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            }
        },
        "handlers": {"console": handler},
        "loggers": {
            "capturebot": {
                "level": "DEBUG" if settings.debug else settings.log_level,
                "handlers": ["console"],
                "propagate": False
            },
            "uvicorn": {
                "level": "INFO",
                "handlers": ["console"],
                "propagate": False
            },
            "uvicorn.access": {
                "level": "INFO" if settings.debug else "WARNING",
                "handlers": ["console"],
                "propagate": False
            },
        },
        "root": {
            "level": settings.log_level,
            "handlers": ["console"]
        }
    }

    for name in CHATTY_LOGGERS:
        config["loggers"][name] = {
            "level": "INFO" if settings.debug else "WARNING",
            "handlers": ["console"],
            "propagate": False
        }

    if settings.debug:
        handler["level"] = "DEBUG"

    return config


def setup_logging(service_name: Optional[str] = None, settings: Optional[Settings] = None) -> None:
    """Configure structured logging using dictConfig."""
    logging.config.dictConfig(get_logging_config(service_name, settings))


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
