"""Line grammars shared by the samplers.

Tool output is handled one line at a time. Each line is classified, in order,
as a header (start of a report cycle), a data line, or blank; anything else is
a :class:`~sysmon_tap.errors.ParseError`. Tools that changed their column
layout between versions are handled by trying each known
:class:`FormatVariant` header once at startup and keeping the one that
matched.
"""
from __future__ import annotations

import enum
import logging
import math
import re
from collections.abc import Sequence
from dataclasses import dataclass

from sysmon_tap.errors import MonitoringEnvironmentError, ParseError

logger = logging.getLogger(__name__)

# iostat occasionally reports throughput spikes far beyond anything a device
# can do; such values are replaced with NaN.
IMPLAUSIBLE_VALUE = 1e12

DEVICE_ONLY = re.compile(r"^\s*\S+\s*$")


class LineKind(enum.Enum):
    HEADER = "header"
    DATA = "data"
    BLANK = "blank"


@dataclass(frozen=True)
class FormatVariant:
    """A (header, data) grammar pair for one version of a tool's output."""

    name: str
    header: re.Pattern[str]
    data: re.Pattern[str]

    def classify(self, line: str) -> tuple[LineKind, re.Match[str] | None]:
        return classify_line(line, self.header, self.data)


def column_pattern(columns: Sequence[str | None]) -> re.Pattern[str]:
    """Whitespace-separated columns; named ones become named groups, ``None`` is skipped."""
    fields = r"\s+".join(
        rf"(?P<{name}>\S+)" if name is not None else r"\S+" for name in columns
    )
    return re.compile(rf"^\s*{fields}\s*$")


def header_pattern(columns: Sequence[str]) -> re.Pattern[str]:
    """Literal column titles separated by whitespace."""
    fields = r"\s+".join(re.escape(column) for column in columns)
    return re.compile(rf"^\s*{fields}\s*$")


def detect_variant(line: str, variants: Sequence[FormatVariant]) -> FormatVariant:
    for variant in variants:
        if variant.header.match(line):
            logger.info("Detected output format %s.", variant.name)
            return variant
    expected = "\n".join(f"  {v.name}: {v.header.pattern}" for v in variants)
    raise MonitoringEnvironmentError(
        f"Header line does not match any expected header.\nGot: {line!r}\n"
        f"Expected one of:\n{expected}"
    )


def classify_line(
    line: str,
    header: re.Pattern[str],
    data: re.Pattern[str],
) -> tuple[LineKind, re.Match[str] | None]:
    if header.match(line):
        return LineKind.HEADER, None
    match = data.match(line)
    if match:
        return LineKind.DATA, match
    if not line.strip():
        return LineKind.BLANK, None
    raise ParseError(line)


def is_device_only(line: str) -> bool:
    return DEVICE_ONLY.match(line) is not None


class DeviceLineJoiner:
    """Rejoin a device name printed alone with the fields on the next line.

    Long device names make iostat wrap its output::

        dm-0-long-name
                  0.00     0.00    0.10 ...
    """

    def __init__(self) -> None:
        self._pending: str | None = None

    @property
    def pending(self) -> str | None:
        return self._pending

    def feed(self, line: str) -> str | None:
        """Return a complete line, or ``None`` while waiting for the rest."""
        if self._pending is not None:
            joined = f"{self._pending} {line.strip()}"
            logger.debug("Joining %r and %r.", self._pending, line)
            self._pending = None
            return joined
        if is_device_only(line):
            self._pending = line.strip()
            return None
        return line

    def reset(self) -> None:
        self._pending = None


def parse_sanitized_float(text: str) -> float:
    """Parse a float; implausible spikes and garbage become NaN."""
    try:
        value = float(text.replace(",", "."))
    except ValueError:
        logger.debug("Error parsing value: %s", text)
        return math.nan
    if math.isinf(value) or abs(value) > IMPLAUSIBLE_VALUE:
        logger.debug("Discarding implausible value: %s", text)
        return math.nan
    return value


def parse_int_or_none(text: str | None) -> int | None:
    if text is None:
        return None
    try:
        return int(text.strip())
    except ValueError:
        logger.debug("Error parsing value: %s", text)
        return None


def parse_long_ignore_alpha(text: str) -> int | None:
    """``"19689M"`` -> 19689; ``"-"`` (no inode support) -> None."""
    return parse_int_or_none(re.sub(r"[A-Za-z]", "", text))


def clamp_percentage(value: float | None, field_name: str = "percentage") -> float | None:
    if value is None or math.isnan(value):
        return value
    if value < 0 or value > 100:
        logger.warning("Clamping out of range %s: %s", field_name, value)
        return min(max(value, 0.0), 100.0)
    return value


def parse_percentage(text: str, field_name: str = "percentage") -> int | None:
    """``"29%"`` -> 29, clamped to [0, 100]."""
    value = parse_int_or_none(text.replace("%", ""))
    if value is None:
        return None
    clamped = clamp_percentage(value, field_name)
    return int(clamped) if clamped is not None else None
