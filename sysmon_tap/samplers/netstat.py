"""Network interface counters from ``/proc/net/dev``::

    Inter-|   Receive                                                |  Transmit
     face |bytes    packets errs drop fifo frame compressed multicast|bytes    packets errs drop fifo colls carrier compressed
        lo:  1234      10    0    0    0     0          0         0     5678      12    0    0    0     0       0          0

Counters are cumulative since boot; per-second rates are derived from two
consecutive reads.
"""
from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path

from sysmon_tap.config import extract_period, extract_str
from sysmon_tap.errors import MonitoringEnvironmentError, ParseError, ProcessError
from sysmon_tap.records import NetworkInterfaceRecord
from sysmon_tap.samplers.base import Sampler

KEY_PERIOD = "netstat.period_ms"
KEY_DATA_PATH = "netstat.data_path"
DEFAULT_PERIOD_MS = 2000
DEFAULT_DATA_PATH = "/proc/net/dev"

DEVICE_SUB_KEY = "devicename"

FIRST_LINE = re.compile(r"^\s*Inter-\|\s*Receive\s*\|\s*Transmit\s*$")
SECOND_LINE = re.compile(
    r"^\s*face\s*\|\s*bytes\s*packets\s*errs\s*drop\s*fifo\s*frame\s*compressed\s*"
    r"multicast\s*\|\s*bytes\s*packets\s*errs\s*drop\s*fifo\s*colls\s*carrier\s*"
    r"compressed\s*$"
)
DATA_LINE = re.compile(r"^\s*(\S+):\s*" + r"\s+".join([r"(\d+)"] * 16) + r"\s*$")


def parse_interface_line(line: str) -> tuple[str, dict[str, int]]:
    """``lo: 1234 10 ...`` -> (``"lo"``, counters by record field name)."""
    match = DATA_LINE.match(line)
    if match is None:
        raise ParseError(line)
    counters = {
        name: int(value)
        for name, value in zip(NetworkInterfaceRecord.COUNTER_FIELDS, match.groups()[1:])
    }
    return match.group(1), counters


def check_readable(path: Path) -> None:
    if not path.exists():
        raise MonitoringEnvironmentError(f"Data path not found: {path}")
    if not os.access(path, os.R_OK):
        raise MonitoringEnvironmentError(f"Data path exists, but is not readable: {path}")


class NetworkSampler(Sampler):
    SOURCE = NetworkInterfaceRecord.SOURCE

    def configure(self, config: Mapping[str, str]) -> None:
        self.period_ms = extract_period(config, KEY_PERIOD, DEFAULT_PERIOD_MS)
        self.data_path = Path(extract_str(config, KEY_DATA_PATH, DEFAULT_DATA_PATH))

    @property
    def period_s(self) -> float:
        return self.period_ms / 1000.0

    def setup(self) -> None:
        check_readable(self.data_path)
        self.tick()

    def read_lines(self) -> list[str]:
        try:
            return self.data_path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            raise ProcessError(
                f"Error while reading data from {self.data_path}: {exc}"
            ) from exc

    def tick(self) -> None:
        for line in self.read_lines():
            try:
                self.process_line(line)
            except ParseError as exc:
                self.handle_parse_error(exc)

    def process_line(self, line: str) -> None:
        if FIRST_LINE.match(line):
            self.records.sweep()
            return
        if SECOND_LINE.match(line) or not line.strip():
            return
        name, counters = parse_interface_line(line)
        record = NetworkInterfaceRecord(
            key=self.key(DEVICE_SUB_KEY, name),
            last_updated=self.records.clock(),
            interface_name=name,
            **counters,
        )
        live = self.records.upsert(record)
        self.logger.debug("%s", live)
