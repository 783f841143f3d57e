"""
Test fixtures and configuration for pytest
"""

import os
import tempfile
from types import SimpleNamespace
from unittest.mock import MagicMock

import psutil
import pytest

# Operator log files go to a throwaway directory, never the repo's logs/.
# Set before the package is imported so module-level loggers pick it up.
os.environ.setdefault("TELEMETRY_LOG_DIR", tempfile.mkdtemp(prefix="pizza-telemetry-logs-"))


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_host(monkeypatch):
    """Pin the host gauges: load 1.5 on 4 cores, half of 16 GB free."""
    monkeypatch.setattr(psutil, "getloadavg", lambda: (1.5, 1.0, 0.5))
    monkeypatch.setattr(psutil, "cpu_count", lambda logical=True: 4)
    monkeypatch.setattr(
        psutil,
        "virtual_memory",
        lambda: SimpleNamespace(total=16_000_000_000, free=8_000_000_000),
    )


@pytest.fixture
def aggregator(clock, fake_host):
    from pizza_telemetry.observability.metrics import MetricsAggregator

    return MetricsAggregator(clock=clock)


@pytest.fixture
def operator_log():
    """Stand-in for the operator logger, to count reported failures."""
    return MagicMock()


@pytest.fixture
def shipper(operator_log):
    from pizza_telemetry.observability.shipper import LogShipper

    s = LogShipper(
        "test-source",
        url="http://logs.test/loki/api/v1/push",
        api_key="12345:glc_secret",
        logger=operator_log,
    )
    yield s
    s.shutdown()


@pytest.fixture
def ok_response():
    resp = MagicMock()
    resp.ok = True
    resp.status_code = 204
    return resp


@pytest.fixture
def error_response():
    resp = MagicMock()
    resp.ok = False
    resp.status_code = 401
    resp.reason = "Unauthorized"
    resp.text = "invalid credentials"
    return resp


@pytest.fixture
def test_config():
    """Provide a configuration with both exporters disabled"""
    return {
        "metrics": {
            "source": "test-source",
            "url": "",
            "api_key": "",
            "interval_seconds": "10",
            "format": "otlp",
        },
        "logging": {
            "source": "test-source",
            "url": "",
            "api_key": "",
            "debug": False,
        },
    }
