from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from sysmon_tap.records import SampleRecord, now_millis
from sysmon_tap.registry import MetricRegistry


class RecordSet:
    """The live records of one sampler, mirrored into the registry.

    ``sweep`` runs at the start of every report cycle. A record not refreshed
    since the previous sweep belongs to a device that disappeared between
    cycles and is unpublished.
    """

    def __init__(
        self,
        registry: MetricRegistry,
        clock: Callable[[], int] = now_millis,
    ) -> None:
        self.registry = registry
        self.clock = clock
        self.logger = logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._records: dict[str, SampleRecord] = {}
        self.freshness_timestamp = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._records

    def get(self, key: str) -> SampleRecord | None:
        with self._lock:
            return self._records.get(key)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._records)

    def upsert(self, record: SampleRecord) -> SampleRecord:
        """Publish a new record or update the live one in place."""
        with self._lock:
            live = self._records.get(record.key)
            if live is None:
                self._records[record.key] = record
        if live is None:
            self.registry.publish(record.key, record)
            return record
        live.apply_update(record)
        self.logger.debug("Updated %s", live)
        self.registry.refresh(live.key)
        return live

    def sweep(self) -> list[str]:
        """Drop records older than the last cycle start, then start a new cycle."""
        with self._lock:
            stale = [
                key
                for key, record in self._records.items()
                if record.last_updated < self.freshness_timestamp
            ]
            for key in stale:
                del self._records[key]
            self.freshness_timestamp = self.clock()
        for key in stale:
            self.logger.info("%s is now considered stale (device removed?)", key)
            self.registry.unpublish(key)
        return stale

    def clear(self) -> None:
        with self._lock:
            keys = list(self._records)
            self._records.clear()
        for key in keys:
            self.registry.unpublish(key)
