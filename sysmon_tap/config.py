from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
import configparser
import shlex

from sysmon_tap.errors import ConfigurationError

# Sections whose options are flattened into the sampler key/value map.
MONITOR_SECTIONS = (
    "sysmon",
    "uptime",
    "vmstat",
    "iostat",
    "df",
    "netstat",
    "entropy",
)

KEY_REGISTRY_ROOT = "sysmon.root"
KEY_PLATFORM = "sysmon.platform"
DEFAULT_REGISTRY_ROOT = "sysmon"
DEFAULT_PLATFORM = "linux"


@dataclass(frozen=True)
class MqttConfig:
    enabled: bool
    host: str
    port: int
    base_topic: str
    client_id: str
    username: str | None
    password: str | None
    qos: int
    keepalive: int
    tls_enabled: bool
    ca_cert: str | None


@dataclass(frozen=True)
class LoggingConfig:
    level: str


@dataclass(frozen=True)
class AppConfig:
    mqtt: MqttConfig
    logging: LoggingConfig
    monitor: dict[str, str] = field(default_factory=dict)


def _get_optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value if value else None


def _get_list(value: str | None) -> list[str]:
    if value is None:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def extract_str(config: Mapping[str, str], key: str, default: str) -> str:
    value = config.get(key)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def extract_int(
    config: Mapping[str, str],
    key: str,
    default: int,
    minimum: int | None = None,
) -> int:
    """Return ``config[key]`` as an int, or ``default`` when unset.

    Raises:
        ConfigurationError: the value is set but is not an integer, or is
            below ``minimum``.
    """
    raw = config.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(key, raw, "expected an integer") from exc
    if minimum is not None and value < minimum:
        raise ConfigurationError(key, raw, f"must be >= {minimum}")
    return value


def extract_float(
    config: Mapping[str, str],
    key: str,
    default: float | None,
    minimum: float | None = None,
) -> float | None:
    """Return ``config[key]`` as a float (durations are in seconds)."""
    raw = config.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(key, raw, "expected a number") from exc
    if value != value:
        raise ConfigurationError(key, raw, "expected a number")
    if minimum is not None and value < minimum:
        raise ConfigurationError(key, raw, f"must be >= {minimum}")
    return value


def extract_list(config: Mapping[str, str], key: str, default: str) -> list[str]:
    value = config.get(key)
    return _get_list(default if value is None else value)


def extract_args(config: Mapping[str, str], key: str, default: str) -> list[str]:
    """Split a command option string the way a shell would."""
    raw = config.get(key)
    value = default if raw is None else raw
    try:
        return shlex.split(value)
    except ValueError as exc:
        raise ConfigurationError(key, raw, str(exc)) from exc


def extract_period(config: Mapping[str, str], key: str, default: int) -> int:
    """Sampling periods must be positive integers."""
    return extract_int(config, key, default, minimum=1)


def registry_root(config: Mapping[str, str]) -> str:
    root = extract_str(config, KEY_REGISTRY_ROOT, DEFAULT_REGISTRY_ROOT)
    platform_name = extract_str(config, KEY_PLATFORM, DEFAULT_PLATFORM)
    return f"{root}.{platform_name}"


def flatten_sections(parser: configparser.ConfigParser) -> dict[str, str]:
    monitor: dict[str, str] = {}
    for section in MONITOR_SECTIONS:
        if not parser.has_section(section):
            continue
        for option, value in parser.items(section, raw=True):
            if option in parser.defaults():
                continue
            monitor[f"{section}.{option}"] = value
    return monitor


def load_config(path: str | Path | None = None) -> AppConfig:
    parser = configparser.ConfigParser()
    if path is not None:
        read_files = parser.read(path)
        if not read_files:
            raise FileNotFoundError(f"Config file not found: {path}")

    # Use parser.get with fallback so that every section is optional
    mqtt = MqttConfig(
        enabled=parser.getboolean("mqtt", "enabled", fallback=False),
        host=parser.get("mqtt", "host", fallback="localhost"),
        port=parser.getint("mqtt", "port", fallback=1883),
        base_topic=parser.get("mqtt", "base_topic", fallback="sysmon"),
        client_id=parser.get("mqtt", "client_id", fallback="sysmon-tap"),
        username=_get_optional(parser.get("mqtt", "username", fallback=None)),
        password=_get_optional(parser.get("mqtt", "password", fallback=None)),
        qos=parser.getint("mqtt", "qos", fallback=0),
        keepalive=parser.getint("mqtt", "keepalive", fallback=60),
        tls_enabled=parser.getboolean("mqtt", "tls", fallback=False),
        ca_cert=_get_optional(parser.get("mqtt", "ca_cert", fallback=None)),
    )

    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
    )

    return AppConfig(
        mqtt=mqtt,
        logging=logging_config,
        monitor=flatten_sections(parser),
    )
