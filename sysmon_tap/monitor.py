from __future__ import annotations

import logging
import platform
import re
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass

import psutil

from sysmon_tap.errors import SysmonError
from sysmon_tap.registry import MetricRegistry, RegistrySink
from sysmon_tap.samplers import (
    DiskSpaceSampler,
    EntropySampler,
    IOStatSampler,
    LoadAverageSampler,
    NetworkSampler,
    Sampler,
    VMStatSampler,
)
from sysmon_tap.supervisor import TimerService

SHUTDOWN_TIMEOUT_S = 5.0
TESTED_KERNEL = (2, 6)

SamplerFactory = Callable[[Mapping[str, str], MetricRegistry, TimerService], Sampler]


@dataclass(frozen=True)
class SamplerSpec:
    name: str
    factory: SamplerFactory
    # A critical source that fails to start takes the whole monitor down.
    critical: bool


LINUX_SAMPLERS: tuple[SamplerSpec, ...] = (
    SamplerSpec("vmstat", VMStatSampler, critical=True),
    SamplerSpec("iostat", IOStatSampler, critical=True),
    SamplerSpec("netstat", NetworkSampler, critical=True),
    SamplerSpec("diskspace", DiskSpaceSampler, critical=True),
    SamplerSpec("load average", LoadAverageSampler, critical=False),
    SamplerSpec("entropy level", EntropySampler, critical=False),
)


def stop_samplers(
    samplers: Sequence[Sampler],
    timeout_s: float = SHUTDOWN_TIMEOUT_S,
    logger: logging.Logger | None = None,
) -> bool:
    """Stop samplers in parallel; returns False if any was still running at the deadline."""
    logger = logger or logging.getLogger(__name__)
    if not samplers:
        return True
    executor = ThreadPoolExecutor(
        max_workers=len(samplers), thread_name_prefix="Shutdown thread"
    )
    try:
        futures = {executor.submit(sampler.stop_monitoring): sampler for sampler in samplers}
        done, not_done = wait(futures, timeout=timeout_s)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
    for future in done:
        exc = future.exception()
        if exc is not None:
            logger.error(
                "Error stopping %s", futures[future].name, exc_info=exc
            )
    for future in not_done:
        logger.warning(
            "%s did not stop within %.1fs", futures[future].name, timeout_s
        )
    return not not_done


class PlatformMonitor(ABC):
    """Starts and stops the samplers available on one platform."""

    PLATFORM: str = ""

    @abstractmethod
    def verify_execution_environment(self) -> None:
        """Raise SysmonError if this monitor cannot run on the current host."""

    @abstractmethod
    def start_monitoring(self) -> None: ...

    @abstractmethod
    def stop_monitoring(self) -> None: ...

    @abstractmethod
    def wait_for_first_reports(self) -> bool:
        """Block until every started sampler has published; False if any is overdue."""


class LinuxMonitor(PlatformMonitor):
    PLATFORM = "linux"

    def __init__(
        self,
        config: Mapping[str, str],
        registry: MetricRegistry,
        timers: TimerService,
        sampler_specs: Sequence[SamplerSpec] = LINUX_SAMPLERS,
        shutdown_timeout_s: float = SHUTDOWN_TIMEOUT_S,
    ) -> None:
        self.config = dict(config)
        self.registry = registry
        self.timers = timers
        self.sampler_specs = tuple(sampler_specs)
        self.shutdown_timeout_s = shutdown_timeout_s
        self.samplers: list[Sampler] = []
        self.logger = logging.getLogger(self.__class__.__name__)

    def verify_execution_environment(self) -> None:
        if not psutil.LINUX:
            raise SysmonError(
                f"Linux monitoring cannot run on {platform.system() or 'UNKNOWN'}"
            )
        release = platform.release()
        match = re.match(r"^(\d+)\.(\d+)", release)
        if match is None or (int(match.group(1)), int(match.group(2))) < TESTED_KERNEL:
            self.logger.warning(
                "Linux monitoring has only been tested on Linux 2.6 and later, "
                "this is %s. Things may not work as expected.",
                release,
            )

    def start_monitoring(self) -> None:
        self.verify_execution_environment()
        for spec in self.sampler_specs:
            try:
                sampler = spec.factory(self.config, self.registry, self.timers)
                sampler.start_monitoring()
            except SysmonError:
                self.logger.error("Error starting %s monitoring.", spec.name, exc_info=True)
                if spec.critical:
                    self.logger.warning(
                        "Shutting down monitoring due to startup errors with %s.",
                        spec.name,
                    )
                    self.stop_monitoring()
                    raise
                continue
            self.samplers.append(sampler)
        self.logger.info(
            "Started %s of %s Linux samplers.", len(self.samplers), len(self.sampler_specs)
        )

    def stop_monitoring(self) -> None:
        samplers, self.samplers = self.samplers, []
        stop_samplers(samplers, self.shutdown_timeout_s, self.logger)

    def wait_for_first_reports(self) -> bool:
        reported = True
        for sampler in list(self.samplers):
            # Streaming tools print their first report one period after startup.
            if not sampler.wait_for_report(sampler.period_s + sampler.startup_timeout_s):
                self.logger.warning("%s published nothing in its first period.", sampler.name)
                reported = False
        return reported


PLATFORM_MONITORS: dict[str, type[PlatformMonitor]] = {
    LinuxMonitor.PLATFORM: LinuxMonitor,
}


def determine_platform_monitor(
    config: Mapping[str, str],
    registry: MetricRegistry,
    timers: TimerService,
    system: str | None = None,
) -> PlatformMonitor:
    system = (system or platform.system()).lower()
    monitor_class = PLATFORM_MONITORS.get(system)
    if monitor_class is None:
        raise SysmonError(f"No system monitor available for platform: {system}")
    return monitor_class(config, registry, timers)


class SysmonDaemon:
    """Owns the registry, the shared timer service and the platform monitor."""

    def __init__(
        self,
        config: Mapping[str, str],
        sinks: Sequence[RegistrySink] = (),
        monitor_factory: Callable[..., PlatformMonitor] = determine_platform_monitor,
    ) -> None:
        self.config = dict(config)
        self.registry = MetricRegistry(list(sinks))
        self.timers = TimerService()
        self.monitor_factory = monitor_factory
        self.monitor: PlatformMonitor | None = None
        self.logger = logging.getLogger(self.__class__.__name__)
        self._shutdown = threading.Event()
        self._lock = threading.Lock()
        self._stopped = False

    def start(self) -> None:
        self.monitor = self.monitor_factory(self.config, self.registry, self.timers)
        self.logger.info("Starting %s.", type(self.monitor).__name__)
        self.monitor.start_monitoring()

    def wait_for_first_reports(self) -> bool:
        if self.monitor is None:
            return False
        return self.monitor.wait_for_first_reports()

    def request_shutdown(self) -> None:
        self._shutdown.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until shutdown is requested; True once it has been."""
        return self._shutdown.wait(timeout)

    def shutdown(self) -> None:
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        self._shutdown.set()
        if self.monitor is not None:
            self.logger.info("Shutdown signalled. Stopping monitoring.")
            self.monitor.stop_monitoring()
        self.timers.shutdown()
