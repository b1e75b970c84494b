from __future__ import annotations

import re
from collections.abc import Mapping

from sysmon_tap.config import extract_period, extract_str
from sysmon_tap.errors import ParseError, ProcessError
from sysmon_tap.records import LoadAverageRecord
from sysmon_tap.samplers.base import Sampler

KEY_PATH = "uptime.path"
KEY_PERIOD = "uptime.period"
DEFAULT_PATH = "uptime"
DEFAULT_PERIOD = 10

# " 10:14:01 up 3 days,  2:01,  1 user,  load average: 0.00, 0.01, 0.05"
UPTIME_DATA = re.compile(
    r"^.*\s+load\s+averages?:\s+([\d.]+),?\s+([\d.]+),?\s+([\d.]+)\s*$"
)


def parse_uptime(line: str) -> tuple[float, float, float]:
    match = UPTIME_DATA.match(line)
    if match is None:
        raise ParseError(line, f"Data line did not match pattern: {line!r}")
    return float(match.group(1)), float(match.group(2)), float(match.group(3))


class LoadAverageSampler(Sampler):
    SOURCE = LoadAverageRecord.SOURCE

    def configure(self, config: Mapping[str, str]) -> None:
        self.path = extract_str(config, KEY_PATH, DEFAULT_PATH)
        self._period = extract_period(config, KEY_PERIOD, DEFAULT_PERIOD)

    @property
    def period_s(self) -> float:
        return float(self._period)

    def tick(self) -> None:
        self.records.sweep()
        lines = self.run_command([self.path])
        if not lines:
            raise ProcessError(f"No data read from {self.path}")
        one_min, ten_min, fifteen_min = parse_uptime(lines[0])
        self.records.upsert(
            LoadAverageRecord(
                key=self.key(),
                last_updated=self.records.clock(),
                one_min=one_min,
                ten_min=ten_min,
                fifteen_min=fifteen_min,
            )
        )
