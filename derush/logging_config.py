from __future__ import annotations

import logging

from derush.config import LoggingSettings

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"


def configure_logging(settings: LoggingSettings) -> None:
    """Configure process-wide logging once at CLI start-up, plus per-module level overrides."""

    logging.basicConfig(
        level=_resolve_level(settings.level),
        format=settings.format or DEFAULT_LOG_FORMAT,
        force=True,
    )
    # e.g. {"derush.features.classifier": "ERROR"} hides per-window degradation warnings
    for logger_name, level in settings.module_levels.items():
        logging.getLogger(logger_name).setLevel(_resolve_level(level))


def _resolve_level(level: str) -> int:
    return getattr(logging, level.upper(), logging.INFO)
