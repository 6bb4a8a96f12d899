from __future__ import annotations

from logging.config import dictConfig

from app.core.config import get_settings

_configured = False


def configure_logging(level: str | int | None = None) -> None:
    global _configured
    if _configured:
        return

    log_level = level if level is not None else get_settings().log_level
    if isinstance(log_level, str):
        log_level = log_level.upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S",
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "level": log_level,
                    "formatter": "default",
                }
            },
            "loggers": {
                "app": {"handlers": ["default"], "level": log_level, "propagate": False},
                "paho": {"level": "WARNING"},
            },
            "root": {"handlers": ["default"], "level": "WARNING"},
        }
    )

    _configured = True
