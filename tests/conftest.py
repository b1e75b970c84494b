"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import os
import sys
import textwrap
import time
from unittest.mock import Mock

import pytest

from sysmon_tap.registry import MetricRegistry
from sysmon_tap.supervisor import TimerService


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "linux: mark test as Linux-specific"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )


def pytest_collection_modifyitems(config, items):
    """Skip Linux-specific tests on other platforms."""
    if sys.platform.startswith("linux"):
        return
    skip_linux = pytest.mark.skip(reason="requires Linux")
    for item in items:
        if "linux" in item.keywords:
            item.add_marker(skip_linux)


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start: int = 1_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock():
    """A manually advanced millisecond clock."""
    return FakeClock()


@pytest.fixture
def sink():
    """A registry sink recording publish/unpublish calls."""
    return Mock(spec=["on_publish", "on_unpublish"])


@pytest.fixture
def registry(sink):
    """A registry with schema validation and a mock sink attached."""
    return MetricRegistry(sinks=[sink])


@pytest.fixture
def timers():
    """A timer service shut down after the test."""
    service = TimerService("test-timer")
    yield service
    service.shutdown()


@pytest.fixture
def make_tool(tmp_path):
    """Write an executable Python script standing in for an external tool."""

    def _make(name: str, body: str) -> str:
        script = tmp_path / name
        script.write_text(
            f"#!{sys.executable}\n" + textwrap.dedent(body), encoding="utf-8"
        )
        os.chmod(script, 0o755)
        return str(script)

    return _make


@pytest.fixture
def wait_for():
    """Poll a condition until it holds or a deadline passes."""

    def _wait(predicate, timeout: float = 10.0, interval: float = 0.05) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait


@pytest.fixture
def stopped_samplers():
    """Collect samplers started by a test and stop them afterwards."""
    started = []
    yield started
    for sampler in started:
        sampler.stop_monitoring()
