"""Filesystem space and inode usage from ``df``.

Each tick reads the mount table for filesystem types and runs ``df`` twice,
once for blocks and once for inodes::

    Filesystem         1048576-blocks      Used Available Capacity Mounted on
    /dev/md0                   19689M     5275M    13414M      29% /

    Filesystem            Inodes   IUsed   IFree IUse% Mounted on
    /dev/md0             2564096  191270 2372826    8% /
"""
from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

from sysmon_tap.config import extract_args, extract_list, extract_period, extract_str
from sysmon_tap.errors import MonitoringEnvironmentError, ProcessError
from sysmon_tap.parsing import parse_long_ignore_alpha, parse_percentage
from sysmon_tap.records import DiskSpaceRecord
from sysmon_tap.samplers.base import Sampler

KEY_PATH = "df.path"
KEY_BLOCK_OPTS = "df.block_opts"
KEY_INODE_OPTS = "df.inode_opts"
KEY_PERIOD = "df.period"
KEY_DEVICE_NAME_FILTER = "df.device_name_filter"
KEY_FS_TYPE_FILTER = "df.fs_type_filter"
KEY_MTAB_PATH = "df.mtab_path"
DEFAULT_PATH = "df"
DEFAULT_BLOCK_OPTS = "-P -B M"
DEFAULT_INODE_OPTS = "-P -i"
DEFAULT_PERIOD = 10
DEFAULT_DEVICE_NAME_FILTER = ""
DEFAULT_FS_TYPE_FILTER = "iso9660,proc,sysfs,tmpfs"
DEFAULT_MTAB_PATH = "/etc/mtab"

DEVICE_SUB_KEY = "devicename"

DF_HEADER = re.compile(
    r"^\s*Filesystem\s+\d+-blocks\s+Used\s+Available\s+Capacity\s+Mounted on\s*$"
)
DF_INODE_HEADER = re.compile(
    r"^\s*Filesystem\s+Inodes\s+IUsed\s+IFree\s+IUse%\s+Mounted on\s*$"
)
# Mount points may contain spaces.
DF_DATA = re.compile(r"^\s*(\S+)\s+(\S+)\s+(\S+)\s+(\S+)\s+(\S+)\s+(\S(.*?\S)?)\s*$")
# /dev/sda2 / ext3 rw 0 0
MTAB_DATA = re.compile(r"^\s*(\S+)\s+\S(.*?\S)?\s+(\S+)\s+\S+\s+\d+\s+\d+\s*$")


@dataclass(frozen=True)
class DfData:
    """One ``df`` row; counts are megabytes or inodes depending on the run."""

    device: str
    mount_point: str | None = None
    total: int | None = None
    used: int | None = None
    available: int | None = None
    percentage_used: int | None = None


def parse_mtab(lines: Iterable[str]) -> dict[str, str]:
    """Device name to filesystem type."""
    fs_types: dict[str, str] = {}
    for line in lines:
        match = MTAB_DATA.match(line)
        if match:
            fs_types[match.group(1)] = match.group(3)
    return fs_types


def parse_df_output(
    lines: list[str],
    header: re.Pattern[str],
    logger: logging.Logger | None = None,
) -> dict[str, DfData]:
    if not lines:
        raise ProcessError("No data read from df process!")
    if not header.match(lines[0]):
        raise MonitoringEnvironmentError(
            f"Unexpected header from df process: {lines[0]!r}. "
            f"Did not match with regex: {header.pattern}"
        )
    result: dict[str, DfData] = {}
    for line in lines[1:]:
        match = DF_DATA.match(line)
        if match is None:
            if logger is not None:
                logger.warning(
                    "Df data line did not match: %s. Pattern: %s", line, DF_DATA.pattern
                )
            continue
        data = DfData(
            device=match.group(1),
            mount_point=match.group(6),
            total=parse_long_ignore_alpha(match.group(2)),
            used=parse_long_ignore_alpha(match.group(3)),
            available=parse_long_ignore_alpha(match.group(4)),
            percentage_used=parse_percentage(match.group(5), "df capacity"),
        )
        result[data.device] = data
    return result


class DiskSpaceSampler(Sampler):
    SOURCE = DiskSpaceRecord.SOURCE
    INSTALL_HINT = "It is usually provided by the coreutils package."

    def configure(self, config: Mapping[str, str]) -> None:
        self.path = extract_str(config, KEY_PATH, DEFAULT_PATH)
        block_opts = extract_args(config, KEY_BLOCK_OPTS, DEFAULT_BLOCK_OPTS)
        inode_opts = extract_args(config, KEY_INODE_OPTS, DEFAULT_INODE_OPTS)
        self.block_command = [self.path, *block_opts]
        self.inode_command = [self.path, *inode_opts]
        self._period = extract_period(config, KEY_PERIOD, DEFAULT_PERIOD)
        self.device_name_filter = frozenset(
            extract_list(config, KEY_DEVICE_NAME_FILTER, DEFAULT_DEVICE_NAME_FILTER)
        )
        self.fs_type_filter = frozenset(
            extract_list(config, KEY_FS_TYPE_FILTER, DEFAULT_FS_TYPE_FILTER)
        )
        self.mtab_path = Path(extract_str(config, KEY_MTAB_PATH, DEFAULT_MTAB_PATH))
        self.logger.info("df block cmd: %s", " ".join(self.block_command))
        self.logger.info("df inode cmd: %s", " ".join(self.inode_command))

    @property
    def period_s(self) -> float:
        return float(self._period)

    def read_filesystem_types(self) -> dict[str, str]:
        try:
            text = self.mtab_path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise ProcessError(
                f"Error while reading data from {self.mtab_path}: {exc}"
            ) from exc
        return parse_mtab(text.splitlines())

    def read_df(self, command: list[str], header: re.Pattern[str]) -> dict[str, DfData]:
        lines = self.run_command(command, install_hint=self.INSTALL_HINT)
        return parse_df_output(lines, header, self.logger)

    def tick(self) -> None:
        self.records.sweep()
        fs_types = self.read_filesystem_types()
        blocks = self.read_df(self.block_command, DF_HEADER)
        inodes = self.read_df(self.inode_command, DF_INODE_HEADER)
        for record in self.build_records(fs_types, blocks, inodes):
            self.records.upsert(record)

    def build_records(
        self,
        fs_types: Mapping[str, str],
        blocks: Mapping[str, DfData],
        inodes: Mapping[str, DfData],
    ) -> list[DiskSpaceRecord]:
        records: list[DiskSpaceRecord] = []
        timestamp = self.records.clock()
        for device, space in blocks.items():
            fs_type = fs_types.get(device)
            if device in self.device_name_filter or fs_type in self.fs_type_filter:
                continue
            if fs_type is None:
                self.logger.warning("Unexpected null 'fsType' for device '%s'.", device)
            inode = inodes.get(device)
            if inode is None:
                self.logger.warning(
                    "Unexpected null inode data for device '%s'. "
                    "Will update with empty values.",
                    device,
                )
                inode = DfData(device)
            records.append(
                DiskSpaceRecord(
                    key=self.key(DEVICE_SUB_KEY, device),
                    last_updated=timestamp,
                    device=device,
                    fs_type=fs_type,
                    mount_point=space.mount_point,
                    total_megabytes=space.total,
                    used_megabytes=space.used,
                    available_megabytes=space.available,
                    percentage_space_used=space.percentage_used,
                    total_inodes=inode.total,
                    used_inodes=inode.used,
                    available_inodes=inode.available,
                    percentage_inodes_used=inode.percentage_used,
                )
            )
        return records
