"""Defaults read from the environment.

XLABRIDGE_CPU_DEVICE_COUNT   number of simulated host devices (default 1)
XLABRIDGE_CPU_MEMORY_BYTES   memory of each host device (default 1 GiB)
XLABRIDGE_LOG_LEVEL          enables logging at this level when set
"""

from __future__ import annotations

import os

DEFAULT_CPU_DEVICE_COUNT = 1
DEFAULT_CPU_MEMORY_BYTES = 1 << 30

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw, 0)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def cpu_device_count() -> int:
    return _env_int("XLABRIDGE_CPU_DEVICE_COUNT", DEFAULT_CPU_DEVICE_COUNT)


def cpu_memory_bytes() -> int:
    return _env_int("XLABRIDGE_CPU_MEMORY_BYTES", DEFAULT_CPU_MEMORY_BYTES)


def log_level_from_env() -> str | None:
    raw = os.environ.get("XLABRIDGE_LOG_LEVEL")
    if not raw:
        return None
    level = raw.strip().upper()
    if level not in _LEVELS:
        raise ValueError(f"XLABRIDGE_LOG_LEVEL must be one of {', '.join(_LEVELS)}, got {raw!r}")
    return level
