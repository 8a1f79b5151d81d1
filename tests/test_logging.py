"""Logging and configuration tests."""

import io
import logging

import pytest

from xlabridge import (
    CpuOptions,
    Literal,
    PjRtClient,
    XlaBuilder,
    configure_from_env,
    disable_logging,
    setup_logging,
)
from xlabridge import config
from xlabridge.ir import element_type as et
from xlabridge.logging_config import XLABRIDGE_LOGGER_NAME


# =============================================================================
# 1. Logging
# =============================================================================


class TestLogging:
    """The library is silent until an application opts in."""

    def test_silent_by_default(self):
        logger = logging.getLogger(XLABRIDGE_LOGGER_NAME)
        assert not logger.propagate
        assert any(isinstance(h, logging.NullHandler) for h in logger.handlers)

    def test_debug_output(self, quiet_logging):
        stream = io.StringIO()
        setup_logging(level="DEBUG", stream=stream, format="%(name)s %(message)s")

        with PjRtClient.cpu(CpuOptions(device_count=1, memory_bytes=1 << 20)) as c:
            b = XlaBuilder("logged")
            c.compile((b.parameter(0, et.f32, []) + 1.0).build())

        out = stream.getvalue()
        assert "built computation 'logged'" in out
        assert "compiled 'logged'" in out
        assert "xlabridge.pjrt.client" in out

    def test_close_with_live_buffers_warns(self, quiet_logging):
        stream = io.StringIO()
        setup_logging(level="WARNING", stream=stream)

        c = PjRtClient.cpu(CpuOptions(device_count=1, memory_bytes=1 << 20))
        buf = c.buffer_from_literal(Literal.scalar(1.0, et.f32))
        c.close()

        out = stream.getvalue()
        assert "[WARNING]" in out
        assert "1 live buffer(s)" in out
        assert buf.is_deleted()

    def test_propagate_to_application(self, quiet_logging, caplog):
        setup_logging(level="WARNING", propagate=True)
        caplog.set_level(logging.WARNING, logger=XLABRIDGE_LOGGER_NAME)
        c = PjRtClient.cpu(CpuOptions(device_count=1, memory_bytes=1 << 20))
        c.buffer_from_literal(Literal.scalar(1, et.s32))
        c.close()
        assert any("live buffer" in r.getMessage() for r in caplog.records)

    def test_repeated_setup_replaces_own_handlers(self, quiet_logging):
        logger = logging.getLogger(XLABRIDGE_LOGGER_NAME)
        foreign = logging.StreamHandler(io.StringIO())
        logger.addHandler(foreign)
        try:
            first, second = io.StringIO(), io.StringIO()
            setup_logging(level="INFO", stream=first)
            setup_logging(level="INFO", stream=second)
            logger.info("once")
            assert first.getvalue() == ""
            assert "once" in second.getvalue()
            assert foreign in logger.handlers
        finally:
            logger.removeHandler(foreign)

    def test_unknown_level(self, quiet_logging):
        with pytest.raises(ValueError, match="unknown log level"):
            setup_logging(level="LOUD")

    def test_disable_logging(self, quiet_logging):
        stream = io.StringIO()
        setup_logging(level="DEBUG", stream=stream)
        disable_logging()
        logging.getLogger(XLABRIDGE_LOGGER_NAME).warning("hidden")
        assert stream.getvalue() == ""

    def test_configure_from_env(self, quiet_logging, monkeypatch):
        monkeypatch.setenv("XLABRIDGE_LOG_LEVEL", "debug")
        configure_from_env()
        assert logging.getLogger(XLABRIDGE_LOGGER_NAME).level == logging.DEBUG


# =============================================================================
# 2. Environment configuration
# =============================================================================


class TestConfig:
    """Environment variables provide defaults for backend options."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("XLABRIDGE_CPU_DEVICE_COUNT", raising=False)
        monkeypatch.delenv("XLABRIDGE_CPU_MEMORY_BYTES", raising=False)
        monkeypatch.delenv("XLABRIDGE_LOG_LEVEL", raising=False)
        assert config.cpu_device_count() == config.DEFAULT_CPU_DEVICE_COUNT
        assert config.cpu_memory_bytes() == 1 << 30
        assert config.log_level_from_env() is None

    def test_integer_forms(self, monkeypatch):
        monkeypatch.setenv("XLABRIDGE_CPU_MEMORY_BYTES", "0x1000")
        assert config.cpu_memory_bytes() == 4096
        assert CpuOptions().memory_bytes == 4096

    @pytest.mark.parametrize("raw", ["many", "0", "-2"])
    def test_bad_device_count(self, monkeypatch, raw):
        monkeypatch.setenv("XLABRIDGE_CPU_DEVICE_COUNT", raw)
        with pytest.raises(ValueError, match="XLABRIDGE_CPU_DEVICE_COUNT"):
            config.cpu_device_count()

    def test_bad_log_level(self, monkeypatch):
        monkeypatch.setenv("XLABRIDGE_LOG_LEVEL", "loud")
        with pytest.raises(ValueError):
            config.log_level_from_env()
