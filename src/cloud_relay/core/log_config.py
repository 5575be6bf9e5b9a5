"""
Apply log level from env.

Single log level for the relay; RELAY_LOG_LEVEL, else INFO. Transport libraries
(azure-iot-device, paho) are capped at WARNING unless DEBUG is requested.
"""

from __future__ import annotations

import logging
import os

_NOISY_LOGGERS = ("azure", "paho")


def _parse_level(raw: str) -> int:
    if not raw or not str(raw).strip():
        return logging.INFO
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    return int(getattr(logging, raw, logging.INFO))


def level_from_env() -> int:
    raw = os.environ.get("RELAY_LOG_LEVEL", "").strip()
    return _parse_level(raw) if raw else logging.INFO


def apply_log_level(level: int) -> None:
    """Set root logger level; quiet transport libraries unless debugging."""
    logging.getLogger().setLevel(level)
    lib_level = level if level <= logging.DEBUG else max(level, logging.WARNING)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(lib_level)


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    apply_log_level(level_from_env())
