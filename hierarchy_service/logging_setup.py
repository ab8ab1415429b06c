"""Central logging configuration for the hierarchy service.

Applies a root stdout handler so every module logger emits without
per-module setup. ``LOG_LEVEL`` adjusts the service loggers; job workers
log from background threads, so the thread name is part of the format.
"""
from __future__ import annotations
import logging
import os
from logging.config import dictConfig

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _dict_config(level: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)s:%(name)s:[%(threadName)s] %(message)s",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": "DEBUG",
                "formatter": "default",
                "stream": "ext://sys.stdout",
            }
        },
        "root": {"level": "INFO", "handlers": ["console"]},
        "loggers": {
            "hierarchy_service": {"level": level, "propagate": True},
            "uvicorn.access": {"level": "WARNING", "handlers": ["console"], "propagate": False},
        },
    }


def configure_logging() -> None:
    """Configure application-wide logging once.

    If the root logger already has handlers (reloaders, pytest capture),
    return to prevent duplicate output.
    """
    root = logging.getLogger()
    if root.handlers:
        return
    level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    if level not in _LEVELS:
        level = "INFO"
    dictConfig(_dict_config(level))
