"""Per-source samplers; one background thread each."""

from sysmon_tap.samplers.base import Sampler, SamplerState, StreamingSampler
from sysmon_tap.samplers.diskspace import DiskSpaceSampler
from sysmon_tap.samplers.entropy import EntropySampler
from sysmon_tap.samplers.iostat import IOStatSampler
from sysmon_tap.samplers.loadavg import LoadAverageSampler
from sysmon_tap.samplers.netstat import NetworkSampler
from sysmon_tap.samplers.vmstat import VMStatSampler

__all__ = [
    "DiskSpaceSampler",
    "EntropySampler",
    "IOStatSampler",
    "LoadAverageSampler",
    "NetworkSampler",
    "Sampler",
    "SamplerState",
    "StreamingSampler",
    "VMStatSampler",
]
