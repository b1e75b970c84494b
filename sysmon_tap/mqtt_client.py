from __future__ import annotations

import json
import logging
import ssl
from typing import Any
from urllib.parse import quote

import paho.mqtt.client as mqtt

from sysmon_tap.config import MqttConfig
from sysmon_tap.registry import parse_object_name


def topic_for_key(base_topic: str, key: str) -> str:
    """``sysmon.linux:type=net-device,devicename=eth0`` -> ``<base>/net-device/eth0``."""
    _, properties = parse_object_name(key)
    source = properties.pop("type", "unknown")
    parts = [base_topic.rstrip("/"), quote(source, safe="")]
    parts.extend(quote(value, safe="") for value in properties.values())
    return "/".join(parts)


class MqttPublisher:
    """Mirrors registry records to retained MQTT topics."""

    def __init__(self, config: MqttConfig) -> None:
        self.config = config
        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=config.client_id,
            protocol=mqtt.MQTTv311,
        )
        self.logger = logging.getLogger(self.__class__.__name__)
        self._connected = False

        # Set up callbacks
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect

        if config.username:
            self.client.username_pw_set(config.username, config.password)
        if config.tls_enabled:
            self.client.tls_set(
                ca_certs=config.ca_cert,
                cert_reqs=ssl.CERT_REQUIRED,
            )

        # Set Last Will and Testament for availability
        self.client.will_set(
            self._availability_topic,
            payload="offline",
            qos=1,
            retain=True,
        )

        # Configure reconnect behavior with exponential backoff
        self.client.reconnect_delay_set(min_delay=1, max_delay=120)

    @property
    def _availability_topic(self) -> str:
        return f"{self.config.base_topic}/status"

    @property
    def connected(self) -> bool:
        return self._connected

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        if reason_code == 0:
            self._connected = True
            self.logger.info(
                "Connected to MQTT broker %s:%s", self.config.host, self.config.port
            )
            # Publish online status
            self.client.publish(
                self._availability_topic,
                payload="online",
                qos=1,
                retain=True,
            )
        else:
            self._connected = False
            self.logger.error(
                "Failed to connect to MQTT broker, reason code: %s", reason_code
            )

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        self._connected = False
        if reason_code == 0:
            self.logger.info("Disconnected from MQTT broker (clean)")
        else:
            self.logger.warning(
                "Unexpectedly disconnected from MQTT broker, reason code: %s. "
                "Will attempt to reconnect.",
                reason_code,
            )

    def connect(self) -> None:
        self.logger.info(
            "Connecting to MQTT broker %s:%s", self.config.host, self.config.port
        )
        self.client.connect(
            self.config.host,
            self.config.port,
            keepalive=self.config.keepalive,
        )
        # Start the network loop in the background for automatic reconnection
        self.client.loop_start()

    def disconnect(self) -> None:
        # Publish offline status before disconnecting
        if self._connected:
            self.client.publish(
                self._availability_topic,
                payload="offline",
                qos=1,
                retain=True,
            )
        self.client.loop_stop()
        self.client.disconnect()
        self.logger.info("Disconnected from MQTT broker")

    def publish_status(self, status: str) -> bool:
        """Publish a custom status (e.g. "sleeping") to the availability topic."""
        self.logger.info("Publishing status '%s' to %s", status, self._availability_topic)
        result = self.client.publish(
            self._availability_topic,
            payload=status,
            qos=1,
            retain=True,
        )
        return result.rc == mqtt.MQTT_ERR_SUCCESS

    def _publish(self, topic: str, payload: str | None) -> bool:
        result = self.client.publish(
            topic,
            payload=payload,
            qos=self.config.qos,
            retain=True,
        )
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            self.logger.error(
                "Failed to publish to %s, error code: %s", topic, result.rc
            )
            return False
        return True

    def on_publish(self, key: str, payload: dict[str, Any]) -> None:
        topic = topic_for_key(self.config.base_topic, key)
        self.logger.debug("Publishing %s to %s", key, topic)
        self._publish(topic, json.dumps(payload))

    def on_unpublish(self, key: str) -> None:
        # An empty retained message clears the broker's copy.
        topic = topic_for_key(self.config.base_topic, key)
        self.logger.debug("Clearing retained %s at %s", key, topic)
        self._publish(topic, None)
