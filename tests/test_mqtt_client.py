"""Tests for the MQTT registry mirror."""
from __future__ import annotations

import json
import logging
from unittest.mock import Mock, patch

import paho.mqtt.client as mqtt
import pytest

from sysmon_tap.config import MqttConfig
from sysmon_tap.mqtt_client import MqttPublisher, topic_for_key


@pytest.fixture
def mqtt_config():
    """Create an MQTT config for testing."""
    return MqttConfig(
        enabled=True,
        host="broker.local",
        port=1883,
        base_topic="sysmon/host1",
        client_id="sysmon-test",
        username="user",
        password="secret",
        qos=1,
        keepalive=30,
        tls_enabled=False,
        ca_cert=None,
    )


@pytest.fixture
def mock_client():
    """Patch the paho client class."""
    with patch("sysmon_tap.mqtt_client.mqtt.Client") as client_class:
        client = client_class.return_value
        client.publish.return_value = Mock(rc=mqtt.MQTT_ERR_SUCCESS)
        yield client


@pytest.fixture
def publisher(mqtt_config, mock_client):
    """Create an MqttPublisher around the mocked client."""
    return MqttPublisher(mqtt_config)


class TestTopicForKey:
    """Test mapping of registry names to topics."""

    def test_singleton(self):
        """Test a record without a device."""
        assert topic_for_key("sysmon", "sysmon.linux:type=LoadAverage") == "sysmon/LoadAverage"

    def test_device_is_quoted(self):
        """Test that slashes in device names stay within one topic level."""
        assert (
            topic_for_key("sysmon/", "sysmon.linux:type=filesystem,devicename=/dev/md0")
            == "sysmon/filesystem/%2Fdev%2Fmd0"
        )


class TestMqttPublisher:
    """Test MQTT client setup and record mirroring."""

    def test_client_setup(self, publisher, mock_client):
        """Test credentials and last will."""
        mock_client.username_pw_set.assert_called_once_with("user", "secret")
        mock_client.will_set.assert_called_once_with(
            "sysmon/host1/status", payload="offline", qos=1, retain=True
        )
        mock_client.tls_set.assert_not_called()

    def test_on_publish_sends_retained_json(self, publisher, mock_client):
        """Test that a record snapshot is published as retained JSON."""
        payload = {"key": "sysmon.linux:type=EntropyLevel", "type": "EntropyLevel", "level": 7}
        publisher.on_publish("sysmon.linux:type=EntropyLevel", payload)
        mock_client.publish.assert_called_once_with(
            "sysmon/host1/EntropyLevel", payload=json.dumps(payload), qos=1, retain=True
        )

    def test_on_unpublish_clears_retained_message(self, publisher, mock_client):
        """Test that unpublishing sends an empty retained payload."""
        publisher.on_unpublish("sysmon.linux:type=net-device,devicename=eth0")
        mock_client.publish.assert_called_once_with(
            "sysmon/host1/net-device/eth0", payload=None, qos=1, retain=True
        )

    def test_publish_failure_is_logged(self, publisher, mock_client, caplog):
        """Test that a failed publish is logged and reported."""
        mock_client.publish.return_value = Mock(rc=mqtt.MQTT_ERR_NO_CONN)
        with caplog.at_level(logging.ERROR):
            publisher.on_unpublish("sysmon.linux:type=VMStat")
        assert "Failed to publish" in caplog.text

    def test_connect_callbacks(self, publisher, mock_client):
        """Test connection state tracking and the online status."""
        publisher._on_connect(mock_client, None, {}, 0)
        assert publisher.connected is True
        mock_client.publish.assert_called_with(
            "sysmon/host1/status", payload="online", qos=1, retain=True
        )
        publisher._on_disconnect(mock_client, None, {}, 7)
        assert publisher.connected is False

    def test_connect_and_disconnect(self, publisher, mock_client):
        """Test the network loop lifecycle."""
        publisher.connect()
        mock_client.connect.assert_called_once_with("broker.local", 1883, keepalive=30)
        mock_client.loop_start.assert_called_once()
        publisher._connected = True
        publisher.disconnect()
        mock_client.publish.assert_called_with(
            "sysmon/host1/status", payload="offline", qos=1, retain=True
        )
        mock_client.loop_stop.assert_called_once()
        mock_client.disconnect.assert_called_once()

    def test_publish_status(self, publisher, mock_client):
        """Test publishing a custom availability status."""
        assert publisher.publish_status("sleeping") is True
        mock_client.publish.assert_called_once_with(
            "sysmon/host1/status", payload="sleeping", qos=1, retain=True
        )
