"""sysmon-tap Linux host metrics exporter."""

from sysmon_tap.config import AppConfig, load_config
from sysmon_tap.monitor import LinuxMonitor, SysmonDaemon, determine_platform_monitor
from sysmon_tap.mqtt_client import MqttPublisher
from sysmon_tap.registry import MetricRegistry
from sysmon_tap.schema import validate_record

__all__ = [
    "AppConfig",
    "LinuxMonitor",
    "MetricRegistry",
    "MqttPublisher",
    "SysmonDaemon",
    "determine_platform_monitor",
    "load_config",
    "validate_record",
]
