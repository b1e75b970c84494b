"""Virtual memory statistics from a long-running ``vmstat`` process.

``vmstat -n <period>`` prints two header lines once, then one report line per
period::

    procs -----------memory---------- ---swap-- -----io---- -system-- ------cpu-----
     r  b   swpd   free   buff  cache   si   so    bi    bo   in   cs us sy id wa st
     1  0      0 812344  91420 903124    0    0     3     9   42   77  1  0 99  0  0

The first report holds averages since boot. The ``st`` column appeared in
procps 3.2.7 and ``gu`` in procps-ng 4.0; both are tolerated.
"""
from __future__ import annotations

import re
from collections.abc import Mapping

from sysmon_tap.config import extract_args, extract_period, extract_str
from sysmon_tap.errors import MonitoringEnvironmentError
from sysmon_tap.parsing import (
    FormatVariant,
    LineKind,
    clamp_percentage,
    column_pattern,
    detect_variant,
    header_pattern,
    parse_int_or_none,
)
from sysmon_tap.records import VMStatRecord
from sysmon_tap.samplers.base import StreamingSampler

KEY_PATH = "vmstat.path"
KEY_OPTS = "vmstat.opts"
KEY_PERIOD = "vmstat.period"
KEY_READ_TIMEOUT = "vmstat.read_timeout"
DEFAULT_PATH = "vmstat"
DEFAULT_OPTS = "-n"
DEFAULT_PERIOD = 60

GROUP_HEADER = re.compile(
    r"^\s*procs\s+-+memory-+\s+-+swap-+\s+-+io-+\s+-+system-+\s+-+cpu-+\s*$"
)

_TITLES = (
    "r", "b", "swpd", "free", "buff", "cache", "si", "so",
    "bi", "bo", "in", "cs", "us", "sy", "id", "wa",
)
_PERCENT_FIELDS = frozenset(
    {
        "user_percent_cpu",
        "sys_percent_cpu",
        "idle_percent_cpu",
        "wait_percent_cpu",
        "stolen_percent_cpu",
    }
)
_FIELDS = VMStatRecord.MUTABLE_FIELDS

VMSTAT_VARIANTS = (
    FormatVariant(
        "procps (17 columns)",
        header_pattern(_TITLES + ("st",)),
        column_pattern(_FIELDS),
    ),
    FormatVariant(
        "procps-ng 4 (18 columns)",
        header_pattern(_TITLES + ("st", "gu")),
        column_pattern(_FIELDS + (None,)),
    ),
    FormatVariant(
        "procps legacy (16 columns)",
        header_pattern(_TITLES),
        column_pattern(_FIELDS[:16]),
    ),
)


def parse_vmstat_values(match: re.Match[str]) -> dict[str, int | None]:
    values: dict[str, int | None] = {}
    for name, text in match.groupdict().items():
        value = parse_int_or_none(text)
        if name in _PERCENT_FIELDS and value is not None:
            value = int(clamp_percentage(value, name))
        values[name] = value
    return values


class VMStatSampler(StreamingSampler):
    SOURCE = VMStatRecord.SOURCE
    HEADER_LINES = 2
    INSTALL_HINT = "It is usually provided by the procps package."

    variant: FormatVariant

    def configure(self, config: Mapping[str, str]) -> None:
        self.path = extract_str(config, KEY_PATH, DEFAULT_PATH)
        self.opts = extract_args(config, KEY_OPTS, DEFAULT_OPTS)
        self._period = extract_period(config, KEY_PERIOD, DEFAULT_PERIOD)
        self.configure_read_timeout(config, KEY_READ_TIMEOUT)

    @property
    def period_s(self) -> float:
        return float(self._period)

    def command(self) -> list[str]:
        return [self.path, *self.opts, str(self._period)]

    def check_startup(self, lines: list[str]) -> None:
        group_header, column_header = lines
        if not GROUP_HEADER.match(group_header):
            raise MonitoringEnvironmentError(
                f"First line of vmstat output did not match the expected header.\n"
                f"Got: {group_header!r}\nExpected: {GROUP_HEADER.pattern}"
            )
        self.variant = detect_variant(column_header, VMSTAT_VARIANTS)

    def process_line(self, line: str) -> None:
        if GROUP_HEADER.match(line):
            self.records.sweep()
            return
        kind, match = self.variant.classify(line)
        if kind is not LineKind.DATA or match is None:
            return
        record = VMStatRecord(
            key=self.key(),
            last_updated=self.records.clock(),
            **parse_vmstat_values(match),
        )
        self.records.upsert(record)
