"""Tests for subprocess supervision and the timer service."""
from __future__ import annotations

import sys
import threading
import time

import pytest

from sysmon_tap.errors import MonitoringEnvironmentError, ProcessError
from sysmon_tap.supervisor import ProcessSupervisor, TimerService


def python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


class TestTimerService:
    """Test kill timer scheduling."""

    def test_callback_fires(self, timers):
        """Test that a scheduled callback runs."""
        fired = threading.Event()
        handle = timers.schedule(0.01, fired.set)
        assert fired.wait(2)
        assert handle.fired is True
        assert handle.cancel() is False

    def test_cancel_before_firing(self, timers):
        """Test that a cancelled callback never runs."""
        fired = threading.Event()
        handle = timers.schedule(10, fired.set)
        assert timers.pending == 1
        assert handle.cancel() is True
        assert timers.pending == 0
        assert not fired.wait(0.05)

    def test_shutdown_cancels_and_rejects(self):
        """Test that shutdown cancels pending timers and refuses new ones."""
        service = TimerService("shutdown-test")
        fired = threading.Event()
        service.schedule(10, fired.set)
        service.shutdown()
        assert service.pending == 0
        with pytest.raises(RuntimeError):
            service.schedule(1, fired.set)


@pytest.mark.integration
class TestProcessSupervisor:
    """Test child process handling with real interpreters."""

    def test_missing_binary(self, timers):
        """Test that a missing tool is an environment error with an install hint."""
        supervisor = ProcessSupervisor(
            ["/nonexistent/iostat", "5"], timers, install_hint="Install sysstat."
        )
        with pytest.raises(MonitoringEnvironmentError) as excinfo:
            supervisor.spawn()
        assert "not found at specified path" in str(excinfo.value)
        assert "Install sysstat." in str(excinfo.value)

    def test_missing_binary_on_path(self, timers):
        """Test the message for tools looked up on $PATH."""
        supervisor = ProcessSupervisor(["sysmon-tap-no-such-tool"], timers)
        with pytest.raises(MonitoringEnvironmentError, match=r"\$PATH"):
            supervisor.spawn()

    def test_empty_command(self, timers):
        """Test that an empty command is rejected."""
        with pytest.raises(ValueError):
            ProcessSupervisor([], timers)

    def test_startup_and_streaming(self, timers):
        """Test reading startup lines then steady-state lines."""
        code = "print('a'); print(''); print('b'); print('c')"
        with ProcessSupervisor(python(code), timers).spawn() as supervisor:
            assert supervisor.startup(3, timeout_s=10) == ["a", "", "b"]
            assert supervisor.read_line() == "c"
            assert supervisor.read_line() is None
        assert timers.pending == 0

    def test_startup_timeout_kills_process(self, timers):
        """Test that a silent tool is killed when the startup timer expires."""
        supervisor = ProcessSupervisor(python("import time; time.sleep(30)"), timers)
        supervisor.spawn()
        started = time.monotonic()
        with pytest.raises(MonitoringEnvironmentError, match="Timed out"):
            supervisor.startup(1, timeout_s=0.2)
        assert time.monotonic() - started < 10
        assert supervisor.timed_out
        assert not supervisor.alive

    def test_startup_end_of_input_reports_stderr(self, timers):
        """Test that an early exit includes the tool's error output."""
        code = "import sys; print('only'); sys.stderr.write('bad option'); sys.exit(2)"
        supervisor = ProcessSupervisor(python(code), timers).spawn()
        with pytest.raises(MonitoringEnvironmentError) as excinfo:
            supervisor.startup(2, timeout_s=10)
        assert "after 1 lines" in str(excinfo.value)
        assert "bad option" in str(excinfo.value)

    def test_read_timeout(self, timers):
        """Test that a configured read timeout turns a stall into ProcessError."""
        supervisor = ProcessSupervisor(
            python("import time; time.sleep(30)"), timers, read_timeout=0.2
        ).spawn()
        with pytest.raises(ProcessError, match="No output"):
            supervisor.read_line()
        assert not supervisor.alive

    def test_run_to_completion(self, timers):
        """Test collecting all output of a short-lived command."""
        supervisor = ProcessSupervisor(python("print('x'); print('y')"), timers).spawn()
        assert supervisor.run_to_completion(10) == ["x", "y"]
        assert not supervisor.alive

    def test_run_to_completion_timeout(self, timers):
        """Test that a hung one-shot command is killed."""
        supervisor = ProcessSupervisor(python("import time; time.sleep(30)"), timers).spawn()
        with pytest.raises(ProcessError, match="did not finish"):
            supervisor.run_to_completion(0.2)
        assert not supervisor.alive

    def test_nonzero_exit_still_returns_output(self, timers):
        """Test that output is returned even when the tool exits non-zero."""
        supervisor = ProcessSupervisor(
            python("import sys; print('partial'); sys.exit(1)"), timers
        ).spawn()
        assert supervisor.run_to_completion(10) == ["partial"]

    def test_kill_unblocks_reader(self, timers):
        """Test that killing the process ends a blocked read."""
        supervisor = ProcessSupervisor(python("import time; time.sleep(30)"), timers).spawn()
        result = {}

        def reader():
            try:
                result["line"] = supervisor.read_line()
            except ProcessError as exc:
                result["error"] = exc

        thread = threading.Thread(target=reader)
        thread.start()
        time.sleep(0.2)
        supervisor.kill()
        thread.join(5)
        assert not thread.is_alive()
        assert result.get("line") is None
        supervisor.kill()
        assert not supervisor.alive
