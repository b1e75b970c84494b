"""Sampler lifecycle.

Every metric source runs in its own daemon thread::

    CREATED --start_monitoring()--> RUNNING --stop_monitoring()--> STOPPING --> STOPPED
       |
       +--verification fails--> FAILED

Construction reads the configuration and runs one synchronous tick to prove
that the host supports the source; a sampler that fails this check is never
started. Instances are single use.
"""
from __future__ import annotations

import enum
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence

from sysmon_tap.config import extract_float, registry_root
from sysmon_tap.errors import (
    MonitoringEnvironmentError,
    ParseError,
    ProcessError,
    SysmonError,
)
from sysmon_tap.records import now_millis
from sysmon_tap.recordset import RecordSet
from sysmon_tap.registry import MetricRegistry, object_name
from sysmon_tap.supervisor import ProcessSupervisor, TimerService

# Floor for the startup timeout so that very short periods still leave the
# external tool time to launch.
MIN_STARTUP_TIMEOUT_S = 5.0


class SamplerState(enum.Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


class Sampler(threading.Thread, ABC):
    SOURCE: str = "sampler"
    STARTUP_PERIODS = 4
    JOIN_PERIODS = 4

    def __init__(
        self,
        config: Mapping[str, str] | None,
        registry: MetricRegistry,
        timers: TimerService,
        clock: Callable[[], int] = now_millis,
        verify: bool = True,
    ) -> None:
        super().__init__(name=self.__class__.__name__, daemon=True)
        self.logger = logging.getLogger(self.__class__.__name__)
        self.config: dict[str, str] = dict(config or {})
        self.registry = registry
        self.timers = timers
        self.records = RecordSet(registry, clock)
        self.root = registry_root(self.config)
        self._lifecycle = SamplerState.CREATED
        self._lifecycle_lock = threading.Lock()
        self._stop_requested = threading.Event()
        self._reported = threading.Event()
        self._verified = False
        self._current: ProcessSupervisor | None = None
        self.read_timeout: float | None = None
        self.configure(self.config)
        if verify:
            self.verify()

    @property
    @abstractmethod
    def period_s(self) -> float:
        """Sampling period in seconds."""

    @abstractmethod
    def configure(self, config: Mapping[str, str]) -> None:
        """Read settings; raises ConfigurationError for malformed values."""

    @abstractmethod
    def tick(self) -> None:
        """One acquire, parse, compute and publish cycle."""

    @property
    def state(self) -> SamplerState:
        return self._lifecycle

    @property
    def stopping(self) -> bool:
        return self._stop_requested.is_set()

    @property
    def verifying(self) -> bool:
        return self._lifecycle is SamplerState.CREATED

    @property
    def startup_timeout_s(self) -> float:
        return max(self.STARTUP_PERIODS * self.period_s, MIN_STARTUP_TIMEOUT_S)

    @property
    def join_timeout_s(self) -> float:
        return self.JOIN_PERIODS * self.period_s

    def key(self, sub_key: str | None = None, sub_value: str | None = None) -> str:
        return object_name(self.root, self.SOURCE, sub_key, sub_value)

    def configure_read_timeout(self, config: Mapping[str, str], key: str) -> None:
        self.read_timeout = extract_float(config, key, None, minimum=0.001)

    def sleep_interval(self) -> float:
        return self.period_s

    def setup(self) -> None:
        """Verification tick; streaming samplers override this to check headers."""
        self.tick()

    def release(self) -> None:
        """Release subprocess and file resources."""
        current = self._current
        if current is not None:
            current.kill()

    def verify(self) -> None:
        if self._verified:
            return
        try:
            self.setup()
        except (ParseError, ProcessError, OSError) as exc:
            self._fail()
            raise MonitoringEnvironmentError(
                f"{self.name} failed environment verification: {exc}"
            ) from exc
        except Exception:
            self._fail()
            raise
        self._verified = True
        self._note_report()
        self.logger.debug("Environment verified for %s.", self.name)

    def _note_report(self) -> None:
        if self.records:
            self._reported.set()

    def wait_for_report(self, timeout: float | None = None) -> bool:
        """Block until this sampler has published records; True once it has."""
        return self._reported.wait(timeout)

    def _fail(self) -> None:
        with self._lifecycle_lock:
            self._lifecycle = SamplerState.FAILED
        self.release()

    def start_monitoring(self) -> None:
        with self._lifecycle_lock:
            if self._lifecycle is not SamplerState.CREATED:
                raise SysmonError(f"Do not reuse {self.__class__.__name__} objects")
            if not self._verified:
                raise SysmonError(f"{self.name} must be verified before it is started")
            self._lifecycle = SamplerState.RUNNING
        self.logger.info("Starting %s monitoring.", self.SOURCE)
        self.start()

    def stop_monitoring(self) -> None:
        with self._lifecycle_lock:
            if self._lifecycle is not SamplerState.RUNNING:
                self.logger.debug(
                    "%s is %s; nothing to stop.", self.name, self._lifecycle.value
                )
                return
            self._lifecycle = SamplerState.STOPPING
        self._stop_requested.set()
        # Killing the child unblocks a read in progress.
        self.release()
        self.join(self.join_timeout_s)
        if self.is_alive():
            self.logger.error(
                "Background thread failed to shutdown within %.1fs", self.join_timeout_s
            )

    def run(self) -> None:
        try:
            while not self._stop_requested.is_set():
                try:
                    self.tick()
                except ParseError as exc:
                    self.logger.warning("%s", exc)
                self._note_report()
                if self._stop_requested.wait(self.sleep_interval()):
                    break
        except Exception:
            if self._stop_requested.is_set():
                self.logger.debug("Exception caused by shutdown", exc_info=True)
            else:
                self.logger.error(
                    "Shutting down %s monitoring due to error.", self.SOURCE, exc_info=True
                )
        finally:
            self._finish()

    def _finish(self) -> None:
        with self._lifecycle_lock:
            if self._lifecycle is SamplerState.RUNNING:
                self._lifecycle = SamplerState.STOPPING
        self.release()
        with self._lifecycle_lock:
            self._lifecycle = SamplerState.STOPPED
        self.logger.info("%s monitoring stopped.", self.SOURCE)

    def handle_parse_error(self, exc: ParseError) -> None:
        """Bad lines are fatal while verifying and only logged afterwards."""
        if self.verifying:
            raise exc
        self.logger.warning("%s", exc)

    def run_command(self, command: Sequence[str], install_hint: str | None = None) -> list[str]:
        """Run a short-lived command under a kill timer of the startup timeout."""
        timeout = self.startup_timeout_s
        supervisor = ProcessSupervisor(command, self.timers, install_hint=install_hint)
        self._current = supervisor
        try:
            supervisor.spawn()
            return supervisor.run_to_completion(timeout)
        finally:
            supervisor.kill()
            self._current = None


class StreamingSampler(Sampler):
    """A sampler fed by one long-running command printing a report per period."""

    HEADER_LINES = 1
    STARTUP_PERIODS = 1
    INSTALL_HINT: str | None = None

    process: ProcessSupervisor | None = None

    @abstractmethod
    def command(self) -> list[str]:
        """argv of the external tool."""

    @abstractmethod
    def check_startup(self, lines: list[str]) -> None:
        """Validate the startup lines and lock in the output format."""

    @abstractmethod
    def process_line(self, line: str) -> None:
        """Handle one line of steady-state output."""

    def sleep_interval(self) -> float:
        return 0.0

    def setup(self) -> None:
        command = self.command()
        self.logger.info("%s cmd: %s", self.SOURCE, " ".join(command))
        self.process = ProcessSupervisor(
            command,
            self.timers,
            read_timeout=self.read_timeout,
            install_hint=self.INSTALL_HINT,
        )
        self.process.spawn()
        lines = self.process.startup(self.HEADER_LINES, self.startup_timeout_s)
        self.check_startup(lines)

    def read_line(self) -> str | None:
        if self.process is None:
            raise ProcessError(f"{self.name} has no running process")
        return self.process.read_line()

    def tick(self) -> None:
        line = self.read_line()
        if line is None:
            if self.stopping:
                return
            raise ProcessError(f"Unexpected end of input from {self.SOURCE}")
        try:
            self.process_line(line)
        except ParseError as exc:
            self.handle_parse_error(exc)
        self._note_report()

    def release(self) -> None:
        if self.process is not None:
            self.process.kill()
