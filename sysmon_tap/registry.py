"""In-process management registry.

Records are published under hierarchical names of the form
``<root>.<platform>:type=<source>[,<sub key>=<value>]``, for example
``sysmon.linux:type=io-device,devicename=sda``. Publishing replaces any entry
at that name; external consumers find records with glob patterns such as
``sysmon.linux:type=net-device,*``. Sinks (the MQTT mirror) observe every
change.
"""
from __future__ import annotations

import fnmatch
import logging
import threading
from typing import Any, Protocol

from sysmon_tap.records import SampleRecord
from sysmon_tap.schema import validate_record


def object_name(
    root: str,
    source: str,
    sub_key: str | None = None,
    sub_value: str | None = None,
) -> str:
    name = f"{root}:type={source}"
    if sub_key is not None:
        name = f"{name},{sub_key}={sub_value}"
    return name


def parse_object_name(name: str) -> tuple[str, dict[str, str]]:
    """Split ``root:k=v,k=v`` into the root and an ordered property map."""
    root, sep, rest = name.partition(":")
    if not sep or not rest:
        raise ValueError(f"Malformed object name: {name!r}")
    properties: dict[str, str] = {}
    for item in rest.split(","):
        prop, eq, value = item.partition("=")
        if not eq:
            raise ValueError(f"Malformed object name property {item!r} in {name!r}")
        properties[prop] = value
    return root, properties


class RegistrySink(Protocol):
    def on_publish(self, key: str, payload: dict[str, Any]) -> None: ...

    def on_unpublish(self, key: str) -> None: ...


class MetricRegistry:
    def __init__(
        self,
        sinks: list[RegistrySink] | None = None,
        validate: bool = True,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.validate = validate
        self._lock = threading.RLock()
        self._records: dict[str, SampleRecord] = {}
        self._sinks: list[RegistrySink] = list(sinks or [])

    def publish(self, key: str, record: SampleRecord) -> None:
        with self._lock:
            replaced = key in self._records
            self._records[key] = record
            sinks = list(self._sinks)
        if replaced:
            self.logger.debug("Replaced %s", key)
        else:
            self.logger.info("Published %s", key)
        self._notify_publish(key, record, sinks)

    def refresh(self, key: str) -> None:
        """Push the current values of an updated record to the sinks."""
        with self._lock:
            record = self._records.get(key)
            sinks = list(self._sinks)
        if record is None:
            self.logger.warning("Cannot refresh unpublished record %s", key)
            return
        self._notify_publish(key, record, sinks)

    def unpublish(self, key: str) -> bool:
        with self._lock:
            record = self._records.pop(key, None)
            sinks = list(self._sinks)
        if record is None:
            self.logger.warning("Failed to unpublish %s: not published", key)
            return False
        self.logger.info("Removing %s from registry", key)
        for sink in sinks:
            sink.on_unpublish(key)
        return True

    def is_published(self, key: str) -> bool:
        with self._lock:
            return key in self._records

    def get(self, key: str) -> SampleRecord | None:
        with self._lock:
            return self._records.get(key)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._records)

    def query(self, pattern: str = "*") -> dict[str, SampleRecord]:
        with self._lock:
            return {
                key: record
                for key, record in sorted(self._records.items())
                if fnmatch.fnmatchcase(key, pattern)
            }

    def snapshot(self, pattern: str = "*") -> dict[str, dict[str, Any]]:
        return {key: record.snapshot() for key, record in self.query(pattern).items()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _notify_publish(
        self, key: str, record: SampleRecord, sinks: list[RegistrySink]
    ) -> None:
        if not sinks and not self.validate:
            return
        payload = record.snapshot()
        if self.validate:
            schema_errors = validate_record(payload)
            if schema_errors:
                self.logger.warning(
                    "Schema validation failed for %s with %s errors.",
                    key,
                    len(schema_errors),
                )
                self.logger.debug("Schema errors: %s", schema_errors)
        for sink in sinks:
            sink.on_publish(key, payload)
