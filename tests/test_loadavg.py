"""Tests for the uptime load average sampler."""
from __future__ import annotations

import pytest

from sysmon_tap.errors import MonitoringEnvironmentError, ParseError
from sysmon_tap.samplers import LoadAverageSampler, SamplerState
from sysmon_tap.samplers.loadavg import parse_uptime

LOAD_KEY = "sysmon.linux:type=LoadAverage"


class TestParseUptime:
    """Test uptime output parsing."""

    @pytest.mark.parametrize(
        ("line", "expected"),
        [
            (
                " 10:14:01 up 3 days,  2:01,  1 user,  load average: 0.00, 0.01, 0.05",
                (0.0, 0.01, 0.05),
            ),
            (
                "10:14  up 12 days, 3 users, load averages: 1.52 1.61 1.70",
                (1.52, 1.61, 1.70),
            ),
        ],
    )
    def test_formats(self, line, expected):
        """Test Linux and BSD style output."""
        assert parse_uptime(line) == expected

    def test_garbage(self):
        """Test that other output is rejected."""
        with pytest.raises(ParseError):
            parse_uptime("uptime: command failed")


@pytest.mark.linux
@pytest.mark.integration
class TestLoadAverageSampler:
    """Test the sampler against a fake uptime tool."""

    def test_construction_publishes_record(self, make_tool, registry, timers):
        """Test that the verification run publishes the load averages."""
        tool = make_tool(
            "uptime",
            'print(" 10:14:01 up 3 days,  2:01,  1 user,  load average: 0.50, 0.25, 0.10")\n',
        )
        sampler = LoadAverageSampler({"uptime.path": tool}, registry, timers)
        record = registry.get(LOAD_KEY)
        assert (record.one_min, record.ten_min, record.fifteen_min) == (0.5, 0.25, 0.1)
        assert sampler.state is SamplerState.CREATED

    def test_bad_output_fails_construction(self, make_tool, registry, timers):
        """Test that unparseable output is an environment error."""
        tool = make_tool("uptime", 'print("nothing to see here")\n')
        with pytest.raises(MonitoringEnvironmentError, match="did not match"):
            LoadAverageSampler({"uptime.path": tool}, registry, timers)

    def test_no_output_fails_construction(self, make_tool, registry, timers):
        """Test that a silent tool is an environment error."""
        tool = make_tool("uptime", "pass\n")
        with pytest.raises(MonitoringEnvironmentError, match="No data read"):
            LoadAverageSampler({"uptime.path": tool}, registry, timers)

    def test_missing_tool(self, registry, timers, tmp_path):
        """Test that a missing binary fails construction."""
        with pytest.raises(MonitoringEnvironmentError, match="not found"):
            LoadAverageSampler({"uptime.path": str(tmp_path / "uptime")}, registry, timers)
        assert not registry.is_published(LOAD_KEY)
