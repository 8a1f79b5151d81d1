import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    """Make `src/` importable in tests without requiring installation."""
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    sys.path.insert(0, str(src_dir))


@pytest.fixture
def client():
    """A one-device host client, closed after the test."""
    from xlabridge import CpuOptions, PjRtClient

    c = PjRtClient.cpu(CpuOptions(device_count=1, memory_bytes=64 << 20))
    yield c
    c.close()


@pytest.fixture
def client2():
    """A host client with two devices."""
    from xlabridge import CpuOptions, PjRtClient

    c = PjRtClient.cpu(CpuOptions(device_count=2, memory_bytes=64 << 20))
    yield c
    c.close()


@pytest.fixture
def quiet_logging():
    """Restore the library's silent logging default after the test."""
    from xlabridge import disable_logging

    yield
    disable_logging()
