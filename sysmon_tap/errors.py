"""Exception taxonomy for sysmon-tap samplers.

Construction-time failures (``ConfigurationError`` and
``MonitoringEnvironmentError``) keep a sampler from ever running.
``ParseError`` is tolerated in steady state and ``ProcessError`` stops only the
sampler that hit it.
"""
from __future__ import annotations


class SysmonError(Exception):
    """Base class for all sysmon-tap errors."""


class ConfigurationError(SysmonError):
    """A configuration value is present but malformed."""

    def __init__(self, key: str, value: object, reason: str = "") -> None:
        self.key = key
        self.value = value
        message = f"Invalid config value for {key}: {value!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class MonitoringEnvironmentError(SysmonError):
    """The host cannot support a sampler: missing tool, unreadable path,
    unrecognized output format or a startup timeout."""


class ParseError(SysmonError):
    """A line of tool output is neither a header, a data line nor blank."""

    def __init__(self, line: str, message: str | None = None) -> None:
        self.line = line
        super().__init__(message or f"Found unexpected input: {line!r}")


class ProcessError(SysmonError):
    """The stream of a supervised process closed unexpectedly or failed."""
