"""Per-device I/O statistics from a long-running ``iostat -d -x -k`` process.

Startup output is a banner, a blank line and the first column header::

    Linux 2.6.18-194.el5 (host)     09/12/2010

    Device:         rrqm/s   wrqm/s   r/s   w/s    rkB/s    wkB/s avgrq-sz avgqu-sz   await  svctm  %util
    sda               0.21     2.02  0.63  1.49    15.26    14.05    27.55     0.02    9.10   2.21   0.47

Every later report repeats the header, so a header line marks the start of a
new cycle. Long device names are printed alone on a line with the numbers on
the next one.
"""
from __future__ import annotations

import math
import re
from collections.abc import Mapping

from sysmon_tap.config import extract_args, extract_period, extract_str
from sysmon_tap.errors import MonitoringEnvironmentError
from sysmon_tap.parsing import (
    DeviceLineJoiner,
    FormatVariant,
    LineKind,
    clamp_percentage,
    column_pattern,
    detect_variant,
    parse_sanitized_float,
)
from sysmon_tap.records import IOStatRecord
from sysmon_tap.samplers.base import StreamingSampler

KEY_PATH = "iostat.path"
KEY_OPTS = "iostat.opts"
KEY_PERIOD = "iostat.period"
KEY_READ_TIMEOUT = "iostat.read_timeout"
DEFAULT_PATH = "iostat"
DEFAULT_OPTS = "-d -x -k"
DEFAULT_PERIOD = 60

BANNER_PREFIX = "Linux"
DEVICE_SUB_KEY = "devicename"

HEADER_V5 = re.compile(
    r"^\s*Device:\s+rrqm/s\s+wrqm/s\s+r/s\s+w/s\s+rsec/s\s+wsec/s\s+rkB/s\s+wkB/s\s+"
    r"avgrq-sz\s+avgqu-sz\s+await\s+svctm\s+%util\s*$"
)
HEADER_V7 = re.compile(
    r"^\s*Device:\s+rrqm/s\s+wrqm/s\s+r/s\s+w/s\s+rkB/s\s+wkB/s\s+"
    r"avgrq-sz\s+avgqu-sz\s+await\s+svctm\s+%util\s*$"
)
HEADER_V10 = re.compile(
    r"^\s*Device:\s+rrqm/s\s+wrqm/s\s+r/s\s+w/s\s+rkB/s\s+wkB/s\s+"
    r"avgrq-sz\s+avgqu-sz\s+await\s+r_await\s+w_await\s+svctm\s+%util\s*$"
)
HEADER_V11 = re.compile(
    r"^\s*Device\s+r/s\s+w/s\s+rkB/s\s+wkB/s\s+rrqm/s\s+wrqm/s\s+%rrqm\s+%wrqm\s+"
    r"r_await\s+w_await\s+aqu-sz\s+rareq-sz\s+wareq-sz\s+svctm\s+%util\s*$"
)
# sysstat 12.1 groups columns by direction, adds discards and drops svctm;
# 12.3 adds flush requests before aqu-sz.
HEADER_V12 = re.compile(
    r"^\s*Device:?\s+r/s\s+rkB/s\s+rrqm/s\s+%rrqm\s+r_await\s+rareq-sz\s+"
    r"w/s\s+wkB/s\s+wrqm/s\s+%wrqm\s+w_await\s+wareq-sz\s+"
    r"d/s\s+dkB/s\s+drqm/s\s+%drqm\s+d_await\s+dareq-sz\s+"
    r"aqu-sz\s+%util\s*$"
)
HEADER_V12_FLUSH = re.compile(
    r"^\s*Device:?\s+r/s\s+rkB/s\s+rrqm/s\s+%rrqm\s+r_await\s+rareq-sz\s+"
    r"w/s\s+wkB/s\s+wrqm/s\s+%wrqm\s+w_await\s+wareq-sz\s+"
    r"d/s\s+dkB/s\s+drqm/s\s+%drqm\s+d_await\s+dareq-sz\s+"
    r"f/s\s+f_await\s+aqu-sz\s+%util\s*$"
)

_COMMON = ("device", "rrqm", "wrqm", "r", "w")
_TAIL = ("avgrq", "avgqu", "await", "svctm", "util")
_V12_DIRECTIONS = (
    "device",
    "r", "rkb", "rrqm", None, "r_await", "rareq",
    "w", "wkb", "wrqm", None, "w_await", "wareq",
    None, None, None, None, None, None,
)

IOSTAT_VARIANTS = (
    FormatVariant(
        "sysstat 5.x",
        HEADER_V5,
        # rsec/s and wsec/s duplicate the kB/s columns.
        column_pattern(_COMMON + (None, None, "rkb", "wkb") + _TAIL),
    ),
    FormatVariant(
        "sysstat 7.x",
        HEADER_V7,
        column_pattern(_COMMON + ("rkb", "wkb") + _TAIL),
    ),
    FormatVariant(
        "sysstat 10.x",
        HEADER_V10,
        # The per-direction waits are covered by the combined await.
        column_pattern(
            _COMMON + ("rkb", "wkb", "avgrq", "avgqu", "await", None, None, "svctm", "util")
        ),
    ),
    FormatVariant(
        "sysstat 11.x",
        HEADER_V11,
        column_pattern(
            (
                "device", "r", "w", "rkb", "wkb", "rrqm", "wrqm", None, None,
                "r_await", "w_await", "avgqu", "rareq", "wareq", "svctm", "util",
            )
        ),
    ),
    FormatVariant(
        "sysstat 12.1+",
        HEADER_V12,
        column_pattern(_V12_DIRECTIONS + ("avgqu", "util")),
    ),
    FormatVariant(
        "sysstat 12.3+",
        HEADER_V12_FLUSH,
        column_pattern(_V12_DIRECTIONS + (None, None, "avgqu", "util")),
    ),
)


def _weighted(values: dict[str, float], read_key: str, write_key: str) -> float:
    """Average of a per-direction value, weighted by read and write request rates."""
    reads, writes = values["r"], values["w"]
    total = reads + writes
    if math.isnan(total):
        return math.nan
    if total == 0:
        return 0.0
    return (reads * values[read_key] + writes * values[write_key]) / total


def parse_iostat_values(match: re.Match[str]) -> dict[str, float | str]:
    """Map one data line to IOStatRecord fields."""
    groups = match.groupdict()
    device = groups.pop("device")
    values = {name: parse_sanitized_float(text) for name, text in groups.items()}
    if "await" in values:
        average_wait = values["await"]
        request_size = values["avgrq"]
    else:
        # Newer sysstat splits these by direction; recombine them weighted by
        # request counts. Request sizes come in kB, one kB is two sectors.
        average_wait = _weighted(values, "r_await", "w_await")
        request_size = 2 * _weighted(values, "rareq", "wareq")
    return {
        "device": device,
        "merged_read_requests_per_second": values["rrqm"],
        "merged_write_requests_per_second": values["wrqm"],
        "read_requests_per_second": values["r"],
        "write_requests_per_second": values["w"],
        "kilobytes_read_per_second": values["rkb"],
        "kilobytes_written_per_second": values["wkb"],
        "average_request_size_sectors": request_size,
        "average_queue_length": values["avgqu"],
        "average_wait_millis": average_wait,
        "average_service_millis": values.get("svctm", math.nan),
        "utilization_percentage": clamp_percentage(values["util"], "%util"),
    }


class IOStatSampler(StreamingSampler):
    SOURCE = IOStatRecord.SOURCE
    HEADER_LINES = 3
    INSTALL_HINT = "It is usually provided by the sysstat package."

    variant: FormatVariant

    def configure(self, config: Mapping[str, str]) -> None:
        self.path = extract_str(config, KEY_PATH, DEFAULT_PATH)
        self.opts = extract_args(config, KEY_OPTS, DEFAULT_OPTS)
        self._period = extract_period(config, KEY_PERIOD, DEFAULT_PERIOD)
        self.configure_read_timeout(config, KEY_READ_TIMEOUT)
        self.joiner = DeviceLineJoiner()

    @property
    def period_s(self) -> float:
        return float(self._period)

    def command(self) -> list[str]:
        return [self.path, *self.opts, str(self._period)]

    def check_startup(self, lines: list[str]) -> None:
        banner, blank, header = lines
        if not banner.strip().startswith(BANNER_PREFIX):
            self.logger.warning(
                "iostat returned unexpected first line: %s. "
                "Expected something that started with: %s",
                banner,
                BANNER_PREFIX,
            )
        if blank.strip():
            raise MonitoringEnvironmentError(
                f"Missing blank second line. Found this instead: {blank!r}"
            )
        self.variant = detect_variant(header, IOSTAT_VARIANTS)
        # The header that was just consumed opens the first cycle.
        self.records.sweep()

    def process_line(self, line: str) -> None:
        if line.strip().startswith(BANNER_PREFIX):
            self.logger.debug("Skipping repeated banner: %s", line)
            return
        full_line = self.joiner.feed(line)
        if full_line is None:
            return
        kind, match = self.variant.classify(full_line)
        if kind is LineKind.HEADER:
            self.logger.debug("Processing header line")
            self.records.sweep()
            return
        if kind is not LineKind.DATA or match is None:
            return
        self.logger.debug("Processing data line: %s", full_line)
        values = parse_iostat_values(match)
        record = IOStatRecord(
            key=self.key(DEVICE_SUB_KEY, str(values["device"])),
            last_updated=self.records.clock(),
            sample_period_seconds=self._period,
            **values,
        )
        self.records.upsert(record)
