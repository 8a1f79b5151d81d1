"""Platform registry of the reference runtime.

Only the host platform has a device factory in this build. Accelerator
platforms are known by name so that asking for them reports UNAVAILABLE
instead of NOT_FOUND.
"""

from __future__ import annotations

from dataclasses import dataclass

from .status import Status, not_found, unavailable

RUNTIME_VERSION = "xlabridge-reference 0.1"


@dataclass(frozen=True, slots=True)
class PlatformInfo:
    name: str
    version: str
    device_kind: str
    available: bool


_PLATFORMS: dict[str, PlatformInfo] = {
    "cpu": PlatformInfo("cpu", RUNTIME_VERSION, "Host", available=True),
    "cuda": PlatformInfo("cuda", RUNTIME_VERSION, "GPU", available=False),
    "rocm": PlatformInfo("rocm", RUNTIME_VERSION, "GPU", available=False),
    "tpu": PlatformInfo("tpu", RUNTIME_VERSION, "TPU", available=False),
}

_ALIASES = {"host": "cpu", "gpu": "cuda"}


def known_platforms() -> list[str]:
    return sorted(_PLATFORMS)


def resolve(name: str) -> tuple[Status, PlatformInfo | None]:
    key = _ALIASES.get(name.lower(), name.lower())
    info = _PLATFORMS.get(key)
    if info is None:
        return not_found(f"unknown platform '{name}'; known platforms: {', '.join(known_platforms())}"), None
    if not info.available:
        return unavailable(f"platform '{info.name}' is not linked into this runtime build"), None
    return Status.ok(), info
