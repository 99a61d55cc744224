"""
Logging configuration for the FX Rate Aggregator Service.
Supports both JSON and text logging formats.
"""

import logging
import logging.config
import sys
from typing import Dict, Any, Optional
from pythonjsonlogger import jsonlogger

from .config import settings

LOGGER_NAMESPACE = "fx_aggregator"

NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "yfinance", "peewee", "redis")

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(log_level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """
    Configure the root and ``fx_aggregator`` loggers.

    Args:
        log_level: Overrides ``settings.log_level``
        log_format: ``json`` or ``text``; overrides ``settings.log_format``
    """
    level = (log_level or settings.log_level).upper()
    fmt = (log_format or settings.log_format).lower()

    if fmt == "json":
        logging.config.dictConfig(get_json_logging_config(level))
    else:
        logging.config.dictConfig(get_text_logging_config(level))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_json_logging_config(level: str) -> Dict[str, Any]:
    """JSON lines on stdout, one object per record, tagged with the service name and version."""
    formatter = {
        "()": jsonlogger.JsonFormatter,
        "format": "%(asctime)s %(name)s %(levelname)s %(message)s %(funcName)s %(lineno)d",
        "datefmt": DATE_FORMAT,
        "rename_fields": {"asctime": "timestamp", "levelname": "level"},
        "static_fields": {"service": settings.app_name, "version": settings.app_version}
    }
    return _build_config(level, formatter)


def get_text_logging_config(level: str) -> Dict[str, Any]:
    """Plain text; DEBUG output includes the source path."""
    if level == "DEBUG":
        pattern = "%(asctime)s [%(levelname)s] %(name)s: %(message)s [in %(pathname)s:%(lineno)d]"
    else:
        pattern = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    return _build_config(level, {"format": pattern, "datefmt": DATE_FORMAT})


def _build_config(level: str, formatter: Dict[str, Any]) -> Dict[str, Any]:
    logger_config = {"handlers": ["console"], "level": level, "propagate": False}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": formatter},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "default",
                "stream": sys.stdout
            }
        },
        "loggers": {
            "": dict(logger_config),
            LOGGER_NAMESPACE: dict(logger_config)
        }
    }


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``fx_aggregator`` namespace."""
    if name == LOGGER_NAMESPACE or name.startswith(LOGGER_NAMESPACE + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


# Convenience function for getting loggers
def create_logger(module_name: str) -> logging.Logger:
    """Create a logger for a specific module."""
    return get_logger(module_name)
