"""Supervision of the external commands that samplers read from.

A :class:`ProcessSupervisor` owns one child process: it spawns it with piped
stdio, hands out its stdout line by line and tears it down (children included)
on :meth:`ProcessSupervisor.kill`. Reads that must finish in bounded time are
guarded by a kill timer obtained from an injected :class:`TimerService`;
killing the child closes its stdout, which unblocks the reading thread.
"""
from __future__ import annotations

import logging
import subprocess
import threading
from collections.abc import Callable, Sequence
from pathlib import Path

import psutil

from sysmon_tap.errors import MonitoringEnvironmentError, ProcessError
from sysmon_tap.logging_utils import TRACE_LEVEL

REAP_TIMEOUT_S = 2.0


class TimerHandle:
    """A pending callback scheduled on a :class:`TimerService`."""

    def __init__(self, service: TimerService, callback: Callable[[], None]) -> None:
        self._service = service
        self._callback = callback
        self._timer: threading.Timer | None = None
        self.fired = False

    def _fire(self) -> None:
        self._service._discard(self)
        self.fired = True
        self._callback()

    def cancel(self) -> bool:
        """Cancel the callback. Returns False if it already ran."""
        if self._timer is not None:
            self._timer.cancel()
        self._service._discard(self)
        return not self.fired


class TimerService:
    """Process-lifetime scheduler for kill timers.

    One instance is created by the daemon and handed to every sampler so that
    no module keeps its own global timer thread.
    """

    def __init__(self, name: str = "sysmon-timer") -> None:
        self.name = name
        self.logger = logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._pending: set[TimerHandle] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def schedule(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self, callback)
        timer = threading.Timer(delay_s, handle._fire)
        timer.daemon = True
        timer.name = f"{self.name}-{id(handle):x}"
        handle._timer = timer
        with self._lock:
            if self._closed:
                raise RuntimeError(f"{self.name} has been shut down")
            self._pending.add(handle)
        timer.start()
        self.logger.log(TRACE_LEVEL, "Scheduled timer in %.1fs", delay_s)
        return handle

    def _discard(self, handle: TimerHandle) -> None:
        with self._lock:
            self._pending.discard(handle)

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            pending = list(self._pending)
            self._pending.clear()
        for handle in pending:
            if handle._timer is not None:
                handle._timer.cancel()
        if pending:
            self.logger.debug("Cancelled %s pending timers.", len(pending))


class ProcessSupervisor:
    def __init__(
        self,
        command: Sequence[str],
        timers: TimerService,
        read_timeout: float | None = None,
        install_hint: str | None = None,
    ) -> None:
        if not command:
            raise ValueError("command must not be empty")
        self.command = list(command)
        self.timers = timers
        self.read_timeout = read_timeout
        self.install_hint = install_hint
        self.name = Path(self.command[0]).name
        self.logger = logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._process: subprocess.Popen[str] | None = None
        self._timed_out = False

    def __enter__(self) -> ProcessSupervisor:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.kill()

    @property
    def alive(self) -> bool:
        process = self._process
        return process is not None and process.poll() is None

    @property
    def timed_out(self) -> bool:
        return self._timed_out

    def spawn(self) -> ProcessSupervisor:
        self.logger.debug("Starting: %s", " ".join(self.command))
        try:
            process = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError as exc:
            raise MonitoringEnvironmentError(self._not_found_message()) from exc
        except PermissionError as exc:
            raise MonitoringEnvironmentError(
                f"Permission denied executing {self.command[0]}"
            ) from exc
        except OSError as exc:
            raise MonitoringEnvironmentError(
                f"Error starting {self.name}: {exc}"
            ) from exc
        with self._lock:
            self._process = process
            self._timed_out = False
        return self

    def _not_found_message(self) -> str:
        path = self.command[0]
        if "/" in path:
            message = f"{self.name} not found at specified path: {path}."
        else:
            message = f"{self.name} not found in the executable $PATH for this process."
        if self.install_hint:
            message = f"{message} {self.install_hint}"
        return message

    def _require_process(self) -> subprocess.Popen[str]:
        process = self._process
        if process is None:
            raise ProcessError(f"{self.name} is not running")
        return process

    def _expire(self) -> None:
        self.logger.debug("Killing %s child process after timeout.", self.name)
        self._timed_out = True
        self.kill()

    def _read(self, process: subprocess.Popen[str]) -> str | None:
        stdout = process.stdout
        if stdout is None:
            raise ProcessError(f"{self.name} has no stdout")
        try:
            line = stdout.readline()
        except (OSError, ValueError) as exc:
            raise ProcessError(f"Error while reading from {self.name}: {exc}") from exc
        if not line:
            return None
        line = line.rstrip("\r\n")
        self.logger.log(TRACE_LEVEL, "%s: %s", self.name, line)
        return line

    def read_line(self) -> str | None:
        """Read one line of stdout; ``None`` means end of stream.

        Blocks indefinitely unless ``read_timeout`` was given, in which case a
        read that outlasts it kills the process and raises ProcessError.
        """
        process = self._require_process()
        handle = None
        if self.read_timeout is not None:
            handle = self.timers.schedule(self.read_timeout, self._expire)
        try:
            line = self._read(process)
        finally:
            if handle is not None:
                handle.cancel()
        if self._timed_out:
            raise ProcessError(
                f"No output from {self.name} within {self.read_timeout}s"
            )
        return line

    def startup(self, expected_lines: int, timeout_s: float) -> list[str]:
        """Read the first ``expected_lines`` lines under a kill timer.

        Raises:
            MonitoringEnvironmentError: the timer expired or the process ended
                before printing enough lines.
        """
        process = self._require_process()
        lines: list[str] = []
        handle = self.timers.schedule(timeout_s, self._expire)
        try:
            while len(lines) < expected_lines:
                try:
                    line = self._read(process)
                except ProcessError as exc:
                    raise MonitoringEnvironmentError(str(exc)) from exc
                if line is None:
                    break
                lines.append(line)
        finally:
            handle.cancel()
        if self._timed_out:
            self.kill()
            raise MonitoringEnvironmentError(
                f"Timed out after {timeout_s:g}s waiting for output from {self.name}"
            )
        if len(lines) < expected_lines:
            detail = self._drain_stderr(process)
            self.kill()
            raise MonitoringEnvironmentError(
                f"Unexpected end of input from {self.name} after {len(lines)} lines"
                + (f": {detail}" if detail else "")
            )
        return lines

    def run_to_completion(self, timeout_s: float | None) -> list[str]:
        """Collect every stdout line of a short-lived command, then reap it."""
        process = self._require_process()
        try:
            stdout, stderr = process.communicate(timeout=timeout_s)
        except subprocess.TimeoutExpired as exc:
            self.kill()
            raise ProcessError(
                f"{self.name} did not finish within {timeout_s:g}s"
            ) from exc
        except (OSError, ValueError) as exc:
            self.kill()
            raise ProcessError(f"Error while reading from {self.name}: {exc}") from exc
        finally:
            with self._lock:
                if self._process is process and process.poll() is not None:
                    self._process = None
        if process.returncode != 0:
            self.logger.debug(
                "Command failed (%s): %s", process.returncode, " ".join(self.command)
            )
            if stderr:
                self.logger.log(TRACE_LEVEL, "stderr: %s", stderr.strip())
        if process.returncode is not None and process.returncode < 0:
            raise ProcessError(f"{self.name} was killed (signal {-process.returncode})")
        lines = stdout.splitlines() if stdout else []
        for line in lines:
            self.logger.log(TRACE_LEVEL, "%s: %s", self.name, line)
        return lines

    def _drain_stderr(self, process: subprocess.Popen[str]) -> str:
        if process.stderr is None:
            return ""
        try:
            process.wait(timeout=REAP_TIMEOUT_S)
        except subprocess.TimeoutExpired:
            return ""
        try:
            return process.stderr.read().strip()
        except (OSError, ValueError):
            return ""

    def kill(self) -> None:
        """Kill the process and its children and close every stream."""
        with self._lock:
            process, self._process = self._process, None
        if process is None:
            return
        self._terminate_tree(process)
        for stream in (process.stdin, process.stdout, process.stderr):
            if stream is None:
                continue
            try:
                stream.close()
            except (OSError, ValueError):
                self.logger.debug("Error closing %s stream.", self.name, exc_info=True)

    def _terminate_tree(self, process: subprocess.Popen[str]) -> None:
        if process.poll() is not None:
            return
        try:
            children = psutil.Process(process.pid).children(recursive=True)
        except psutil.Error:
            children = []
        for child in children:
            try:
                child.kill()
            except psutil.Error:
                self.logger.debug("Child %s already gone.", child.pid)
        try:
            process.kill()
        except ProcessLookupError:
            return
        try:
            process.wait(timeout=REAP_TIMEOUT_S)
        except subprocess.TimeoutExpired:
            self.logger.warning(
                "%s (pid %s) did not exit after kill.", self.name, process.pid
            )
