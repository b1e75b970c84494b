from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import time
from typing import Any

from sysmon_tap.config import load_config
from sysmon_tap.errors import SysmonError
from sysmon_tap.logging_utils import configure_logging, resolve_log_level
from sysmon_tap.monitor import SysmonDaemon
from sysmon_tap.mqtt_client import MqttPublisher

DUMP_INTERVAL_S = 10.0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="sysmon-tap Linux host metrics exporter")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to CFG configuration file (defaults apply when omitted)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR); overrides [logging] level",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable debug logging (-v) or trace logging (-vv)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Keep records in the local registry without publishing to MQTT",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Start all samplers, wait for their first reports, print the snapshot as JSON, then exit",
    )
    parser.add_argument(
        "--dump-json",
        help="Write the registry snapshot to a file (overwrites every interval)",
    )
    parser.add_argument(
        "--publish-status",
        metavar="STATUS",
        help="Publish a status (e.g., 'sleeping', 'online') to the availability topic and exit. "
             "Useful for system sleep/wake hooks.",
    )
    return parser


def render_snapshot(snapshot: dict[str, Any], pretty: bool) -> str:
    if pretty:
        return json.dumps(snapshot, indent=2, sort_keys=True)
    return json.dumps(snapshot, sort_keys=True)


def write_snapshot(path: str, text: str) -> None:
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(text)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)
    level = resolve_log_level(args.verbose, args.log_level or config.logging.level)
    configure_logging(level)
    logger = logging.getLogger("sysmon_tap")
    pretty_print = level <= logging.DEBUG

    # Handle --publish-status mode (quick publish and exit)
    if args.publish_status:
        publisher = MqttPublisher(config.mqtt)
        publisher.connect()
        # Wait briefly for connection to establish
        time.sleep(0.5)
        if publisher.connected:
            publisher.publish_status(args.publish_status)
            # Wait for message delivery
            time.sleep(0.5)
        else:
            logger.error("Failed to connect to MQTT broker")
        publisher.disconnect()
        return 0

    publisher = None
    if config.mqtt.enabled and not args.dry_run:
        publisher = MqttPublisher(config.mqtt)
        publisher.connect()
    elif args.dry_run:
        logger.info("Dry run enabled; skipping MQTT publish.")

    daemon = SysmonDaemon(config.monitor, sinks=[publisher] if publisher else [])

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %s.", signum)
        daemon.request_shutdown()

    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        try:
            daemon.start()
        except SysmonError:
            logger.error("Error while starting monitoring. Exiting.", exc_info=True)
            return 1

        if args.once:
            daemon.wait_for_first_reports()
            snapshot_json = render_snapshot(daemon.registry.snapshot(), pretty_print)
            if args.dump_json:
                write_snapshot(args.dump_json, snapshot_json)
            print(snapshot_json)
            logger.info("Single-run mode enabled; exiting after first reports.")
            return 0

        logger.info("sysmon-tap started with %s records.", len(daemon.registry))
        try:
            while not daemon.wait(DUMP_INTERVAL_S):
                if args.dump_json:
                    write_snapshot(
                        args.dump_json,
                        render_snapshot(daemon.registry.snapshot(), pretty_print),
                    )
        except KeyboardInterrupt:
            logger.info("sysmon-tap interrupted.")
        logger.info("sysmon-tap stopped.")
        return 0
    finally:
        daemon.shutdown()
        if publisher is not None:
            publisher.disconnect()


if __name__ == "__main__":
    sys.exit(main())
