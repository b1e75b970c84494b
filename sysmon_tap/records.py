"""Published metric records.

A record is created the first time its key shows up in tool output, updated in
place on every later observation and dropped when its device disappears. The
owning sampler is the only writer; registry consumers read concurrently, so all
reads and writes of the value fields go through the record's lock.
"""
from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar

from sysmon_tap.rates import InterfaceCounters, compute_rates


def now_millis() -> int:
    return int(time.time() * 1000)


def _json_value(value: Any) -> Any:
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


@dataclass(eq=False)
class SampleRecord:
    key: str
    last_updated: int = field(default_factory=now_millis)
    _lock: threading.RLock = field(
        default_factory=threading.RLock, init=False, repr=False, compare=False
    )

    SOURCE: ClassVar[str] = "record"
    # Value fields copied by apply_update and exported by snapshot.
    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = ()

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "key" and "key" in self.__dict__:
            raise AttributeError(f"{type(self).__name__}.key cannot be changed")
        super().__setattr__(name, value)

    def apply_update(self, other: SampleRecord) -> None:
        """Copy the value fields of ``other`` into this record atomically."""
        if type(other) is not type(self):
            raise TypeError(
                f"Cannot update {type(self).__name__} from {type(other).__name__}"
            )
        if other.key != self.key:
            raise ValueError(f"Key mismatch: {self.key} vs. {other.key}")
        values = other.values()
        with self._lock:
            for name in self.MUTABLE_FIELDS:
                setattr(self, name, values[name])
            self.last_updated = other.last_updated

    def values(self) -> dict[str, Any]:
        with self._lock:
            return {name: getattr(self, name) for name in self.MUTABLE_FIELDS}

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            payload: dict[str, Any] = {
                "key": self.key,
                "type": self.SOURCE,
                "last_updated": self.last_updated,
            }
            for name in self.MUTABLE_FIELDS:
                payload[name] = _json_value(getattr(self, name))
        return payload

    def __str__(self) -> str:
        return f"{self.key} ({self.last_updated})"


@dataclass(eq=False)
class LoadAverageRecord(SampleRecord):
    SOURCE: ClassVar[str] = "LoadAverage"
    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = ("one_min", "ten_min", "fifteen_min")

    one_min: float | None = None
    ten_min: float | None = None
    fifteen_min: float | None = None


@dataclass(eq=False)
class VMStatRecord(SampleRecord):
    SOURCE: ClassVar[str] = "VMStat"
    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = (
        "running_processes",
        "sleeping_processes",
        "swapped_memory",
        "free_memory",
        "buffers_memory",
        "cache_memory",
        "swap_in",
        "swap_out",
        "blocks_read",
        "blocks_written",
        "interrupts",
        "context_switches",
        "user_percent_cpu",
        "sys_percent_cpu",
        "idle_percent_cpu",
        "wait_percent_cpu",
        "stolen_percent_cpu",
    )

    # procs
    running_processes: int | None = None
    sleeping_processes: int | None = None
    # memory, in kilobytes
    swapped_memory: int | None = None
    free_memory: int | None = None
    buffers_memory: int | None = None
    cache_memory: int | None = None
    # swap, in kilobytes per second
    swap_in: int | None = None
    swap_out: int | None = None
    # io, in blocks per second
    blocks_read: int | None = None
    blocks_written: int | None = None
    # system, per second
    interrupts: int | None = None
    context_switches: int | None = None
    # cpu, percent of total time
    user_percent_cpu: int | None = None
    sys_percent_cpu: int | None = None
    idle_percent_cpu: int | None = None
    wait_percent_cpu: int | None = None
    stolen_percent_cpu: int | None = None


@dataclass(eq=False)
class IOStatRecord(SampleRecord):
    SOURCE: ClassVar[str] = "io-device"
    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = (
        "device",
        "sample_period_seconds",
        "merged_read_requests_per_second",
        "merged_write_requests_per_second",
        "read_requests_per_second",
        "write_requests_per_second",
        "kilobytes_read_per_second",
        "kilobytes_written_per_second",
        "average_request_size_sectors",
        "average_queue_length",
        "average_wait_millis",
        "average_service_millis",
        "utilization_percentage",
    )

    device: str = ""
    sample_period_seconds: int = 0
    merged_read_requests_per_second: float = math.nan
    merged_write_requests_per_second: float = math.nan
    read_requests_per_second: float = math.nan
    write_requests_per_second: float = math.nan
    kilobytes_read_per_second: float = math.nan
    kilobytes_written_per_second: float = math.nan
    average_request_size_sectors: float = math.nan
    average_queue_length: float = math.nan
    average_wait_millis: float = math.nan
    average_service_millis: float = math.nan
    utilization_percentage: float = math.nan


@dataclass(eq=False)
class DiskSpaceRecord(SampleRecord):
    SOURCE: ClassVar[str] = "filesystem"
    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = (
        "device",
        "fs_type",
        "mount_point",
        "total_megabytes",
        "used_megabytes",
        "available_megabytes",
        "percentage_space_used",
        "total_inodes",
        "used_inodes",
        "available_inodes",
        "percentage_inodes_used",
    )

    device: str = ""
    fs_type: str | None = None
    mount_point: str | None = None
    total_megabytes: int | None = None
    used_megabytes: int | None = None
    available_megabytes: int | None = None
    percentage_space_used: int | None = None
    total_inodes: int | None = None
    used_inodes: int | None = None
    available_inodes: int | None = None
    percentage_inodes_used: int | None = None


@dataclass(eq=False)
class NetworkInterfaceRecord(SampleRecord):
    SOURCE: ClassVar[str] = "net-device"
    COUNTER_FIELDS: ClassVar[tuple[str, ...]] = (
        "bytes_received",
        "packets_received",
        "receive_errors",
        "dropped_received_packets",
        "receive_fifo_errors",
        "receive_frame_errors",
        "compressed_packets_received",
        "multicast_frames_received",
        "bytes_sent",
        "packets_sent",
        "send_errors",
        "dropped_sent_packets",
        "sent_fifo_errors",
        "collisions",
        "carrier_drops",
        "compressed_packets_sent",
    )
    RATE_FIELDS: ClassVar[tuple[str, ...]] = (
        "bytes_per_second_received",
        "bytes_per_second_sent",
        "packets_per_second_received",
        "packets_per_second_sent",
        "timespan_ms",
    )
    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = (
        ("interface_name",) + COUNTER_FIELDS + RATE_FIELDS
    )

    interface_name: str = ""
    bytes_received: int = 0
    packets_received: int = 0
    receive_errors: int = 0
    dropped_received_packets: int = 0
    receive_fifo_errors: int = 0
    receive_frame_errors: int = 0
    compressed_packets_received: int = 0
    multicast_frames_received: int = 0
    bytes_sent: int = 0
    packets_sent: int = 0
    send_errors: int = 0
    dropped_sent_packets: int = 0
    sent_fifo_errors: int = 0
    collisions: int = 0
    carrier_drops: int = 0
    compressed_packets_sent: int = 0
    # Derived from two consecutive observations; unset until the second one.
    bytes_per_second_received: int | None = None
    bytes_per_second_sent: int | None = None
    packets_per_second_received: int | None = None
    packets_per_second_sent: int | None = None
    timespan_ms: int = 0

    def counters(self) -> InterfaceCounters:
        with self._lock:
            return InterfaceCounters(
                timestamp_ms=self.last_updated,
                bytes_received=self.bytes_received,
                packets_received=self.packets_received,
                bytes_sent=self.bytes_sent,
                packets_sent=self.packets_sent,
            )

    def apply_update(self, other: SampleRecord) -> None:
        """Take the counters of ``other`` and derive rates against our own."""
        if not isinstance(other, NetworkInterfaceRecord):
            raise TypeError(
                f"Cannot update {type(self).__name__} from {type(other).__name__}"
            )
        if other.interface_name != self.interface_name:
            raise ValueError(
                f"interface name mismatch: {self.interface_name} vs. {other.interface_name}"
            )
        current = other.counters()
        with self._lock:
            rates = compute_rates(self.counters(), current)
            super().apply_update(other)
            self.timespan_ms = rates.timespan_ms
            self.bytes_per_second_received = rates.bytes_per_second_received
            self.bytes_per_second_sent = rates.bytes_per_second_sent
            self.packets_per_second_received = rates.packets_per_second_received
            self.packets_per_second_sent = rates.packets_per_second_sent

    def __str__(self) -> str:
        with self._lock:
            if self.timespan_ms > 0 and self.bytes_per_second_received is not None:
                return (
                    f"{self.interface_name} (rcvd={self.bytes_per_second_received} Bps "
                    f"sent={self.bytes_per_second_sent} Bps sample={self.timespan_ms}ms)"
                )
            return f"{self.interface_name} (not computed)"


@dataclass(eq=False)
class EntropyRecord(SampleRecord):
    SOURCE: ClassVar[str] = "EntropyLevel"
    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = ("level",)

    level: int | None = None
