from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from sysmon_tap.config import extract_period, extract_str
from sysmon_tap.errors import ProcessError
from sysmon_tap.parsing import parse_int_or_none
from sysmon_tap.records import EntropyRecord
from sysmon_tap.samplers.base import Sampler
from sysmon_tap.samplers.netstat import check_readable

KEY_PERIOD = "entropy.period"
KEY_DATA_PATH = "entropy.data_path"
DEFAULT_PERIOD = 10
DEFAULT_DATA_PATH = "/proc/sys/kernel/random/entropy_avail"


class EntropySampler(Sampler):
    """Tracks the kernel entropy pool level (bits available)."""

    SOURCE = EntropyRecord.SOURCE

    def configure(self, config: Mapping[str, str]) -> None:
        self._period = extract_period(config, KEY_PERIOD, DEFAULT_PERIOD)
        self.data_path = Path(extract_str(config, KEY_DATA_PATH, DEFAULT_DATA_PATH))

    @property
    def period_s(self) -> float:
        return float(self._period)

    def setup(self) -> None:
        check_readable(self.data_path)
        self.tick()

    def read_level(self) -> int | None:
        try:
            with self.data_path.open(encoding="utf-8") as handle:
                line = handle.readline()
        except OSError as exc:
            raise ProcessError(
                f"Error while reading data from {self.data_path}: {exc}"
            ) from exc
        level = parse_int_or_none(line)
        if level is None:
            self.logger.warning("Unexpected value in %s: %r", self.data_path, line.strip())
        return level

    def tick(self) -> None:
        self.records.sweep()
        self.records.upsert(
            EntropyRecord(
                key=self.key(),
                last_updated=self.records.clock(),
                level=self.read_level(),
            )
        )
