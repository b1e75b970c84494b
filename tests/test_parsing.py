"""Tests for the shared line grammars and value sanitizers."""
from __future__ import annotations

import logging
import math
import re

import pytest

from sysmon_tap.errors import MonitoringEnvironmentError, ParseError
from sysmon_tap.parsing import (
    DeviceLineJoiner,
    FormatVariant,
    LineKind,
    classify_line,
    column_pattern,
    detect_variant,
    header_pattern,
    is_device_only,
    parse_int_or_none,
    parse_long_ignore_alpha,
    parse_percentage,
    parse_sanitized_float,
)

HEADER = re.compile(r"^\s*Device:\s+r/s\s+w/s\s*$")
DATA = column_pattern(("device", "r", "w"))


class TestClassifyLine:
    """Test header/data/blank classification."""

    def test_header(self):
        """Test that a header line is recognized before data."""
        assert classify_line("Device:  r/s  w/s", HEADER, DATA) == (LineKind.HEADER, None)

    def test_data(self):
        """Test that a data line returns its match."""
        kind, match = classify_line("sda 1.0 2.0", HEADER, DATA)
        assert kind is LineKind.DATA
        assert match.groups() == ("sda", "1.0", "2.0")

    def test_blank(self):
        """Test that whitespace-only lines are blank."""
        assert classify_line("   ", HEADER, DATA) == (LineKind.BLANK, None)

    def test_garbage_raises_parse_error(self):
        """Test that unmatched lines raise ParseError carrying the line."""
        with pytest.raises(ParseError) as excinfo:
            classify_line("sda 1.0", HEADER, DATA)
        assert excinfo.value.line == "sda 1.0"


class TestPatterns:
    """Test the pattern builders."""

    def test_column_pattern_skips_unnamed_columns(self):
        """Test named groups with skipped columns."""
        pattern = column_pattern(("device", None, "util"))
        match = pattern.match("sda 9.9 42.0")
        assert match.groupdict() == {"device": "sda", "util": "42.0"}

    def test_header_pattern_escapes_titles(self):
        """Test that titles with regex metacharacters match literally."""
        pattern = header_pattern(("Device", "%util", "avgrq-sz"))
        assert pattern.match("Device   %util  avgrq-sz")
        assert not pattern.match("Device   Xutil  avgrq-sz")


class TestDetectVariant:
    """Test format variant detection."""

    variants = (
        FormatVariant("v1", re.compile(r"^a b$"), column_pattern(("first", "second"))),
        FormatVariant("v2", re.compile(r"^a b c$"), column_pattern(("first", "second", "third"))),
    )

    def test_first_matching_variant_wins(self, caplog):
        """Test that the matching variant is returned and logged."""
        with caplog.at_level(logging.INFO):
            assert detect_variant("a b c", self.variants).name == "v2"
        assert "v2" in caplog.text

    def test_unknown_header_is_environment_error(self):
        """Test that no match is fatal and lists the expected headers."""
        with pytest.raises(MonitoringEnvironmentError) as excinfo:
            detect_variant("x y", self.variants)
        assert "v1" in str(excinfo.value)
        assert "'x y'" in str(excinfo.value)


class TestDeviceLineJoiner:
    """Test rejoining of wrapped iostat device lines."""

    def test_complete_line_passes_through(self):
        """Test that normal lines are returned unchanged."""
        joiner = DeviceLineJoiner()
        assert joiner.feed("sda 1 2") == "sda 1 2"
        assert joiner.pending is None

    def test_device_only_line_is_joined(self):
        """Test that a lone device name is joined with the next line."""
        joiner = DeviceLineJoiner()
        assert joiner.feed("dm-0-long-name") is None
        assert joiner.pending == "dm-0-long-name"
        assert joiner.feed("      0.00  1.00") == "dm-0-long-name 0.00  1.00"
        assert joiner.pending is None

    def test_reset(self):
        """Test that reset drops a pending device."""
        joiner = DeviceLineJoiner()
        joiner.feed("sdb")
        joiner.reset()
        assert joiner.feed("sda 1") == "sda 1"

    def test_is_device_only(self):
        """Test device-only detection."""
        assert is_device_only("  nvme0n1  ")
        assert not is_device_only("")
        assert not is_device_only("sda 1")


class TestValueParsing:
    """Test numeric sanitizers."""

    def test_sanitized_float(self):
        """Test normal, locale comma and implausible values."""
        assert parse_sanitized_float("12.5") == 12.5
        assert parse_sanitized_float("12,5") == 12.5
        assert math.isnan(parse_sanitized_float("1e13"))
        assert math.isnan(parse_sanitized_float("-2e12"))
        assert math.isnan(parse_sanitized_float("inf"))
        assert math.isnan(parse_sanitized_float("n/a"))

    def test_int_or_none(self):
        """Test tolerant integer parsing."""
        assert parse_int_or_none(" 42\n") == 42
        assert parse_int_or_none("") is None
        assert parse_int_or_none(None) is None

    def test_long_ignore_alpha(self):
        """Test unit suffix stripping."""
        assert parse_long_ignore_alpha("19689M") == 19689
        assert parse_long_ignore_alpha("-") is None

    @pytest.mark.parametrize(
        ("text", "expected"),
        [("29%", 29), ("0%", 0), ("100%", 100), ("-", None)],
    )
    def test_percentage(self, text, expected):
        """Test percentage parsing."""
        assert parse_percentage(text) == expected

    def test_percentage_is_clamped(self, caplog):
        """Test that out-of-range percentages are clamped with a warning."""
        with caplog.at_level(logging.WARNING):
            assert parse_percentage("150%", "capacity") == 100
            assert parse_percentage("-3", "capacity") == 0
        assert "Clamping out of range capacity" in caplog.text
