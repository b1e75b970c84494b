from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class InterfaceCounters:
    """Cumulative counters of one interface at one point in time."""
    timestamp_ms: int
    bytes_received: int
    packets_received: int
    bytes_sent: int
    packets_sent: int


@dataclass(frozen=True)
class InterfaceRates:
    timespan_ms: int
    bytes_per_second_received: int | None
    bytes_per_second_sent: int | None
    packets_per_second_received: int | None
    packets_per_second_sent: int | None


def per_second(delta: int, timespan_ms: int) -> int | None:
    """Rate of ``delta`` over ``timespan_ms``; ``None`` when the span is zero."""
    if timespan_ms == 0:
        return None
    return int(1000 * abs(delta) / timespan_ms)


def compute_rates(previous: InterfaceCounters, current: InterfaceCounters) -> InterfaceRates:
    """Per-second rates between two snapshots of the same interface.

    Differences are absolute, so a counter reset between the two samples
    shows up as a spike rather than a negative rate.
    """
    timespan = abs(current.timestamp_ms - previous.timestamp_ms)
    return InterfaceRates(
        timespan_ms=timespan,
        bytes_per_second_received=per_second(
            current.bytes_received - previous.bytes_received, timespan
        ),
        bytes_per_second_sent=per_second(
            current.bytes_sent - previous.bytes_sent, timespan
        ),
        packets_per_second_received=per_second(
            current.packets_received - previous.packets_received, timespan
        ),
        packets_per_second_sent=per_second(
            current.packets_sent - previous.packets_sent, timespan
        ),
    )
