from types import SimpleNamespace

import paho.mqtt.client as mqtt
import pytest

from esp_receiver.errors import MalformedPayload, TransportError
from esp_receiver.models import Source
from esp_receiver.mqtt_handler import MqttTransport, parse_broker_url
from esp_receiver.schemas import MqttSettings


class DummyInfo:
    def __init__(self, rc=mqtt.MQTT_ERR_SUCCESS, published=True):
        self.rc = rc
        self._published = published

    def wait_for_publish(self, timeout=None):
        pass

    def is_published(self):
        return self._published


class DummyClient:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.calls = []
        self.next_info = DummyInfo()

    def enable_logger(self, logger):
        pass

    def username_pw_set(self, username, password):
        self.calls.append(("auth", username, password))

    def tls_set(self):
        self.calls.append(("tls",))

    def reconnect_delay_set(self, min_delay, max_delay):
        pass

    def connect_async(self, host, port, keepalive):
        self.calls.append(("connect", host, port))

    def loop_start(self):
        self.calls.append(("loop_start",))

    def loop_stop(self):
        self.calls.append(("loop_stop",))

    def disconnect(self):
        self.calls.append(("disconnect",))

    def subscribe(self, topic, qos=0):
        self.calls.append(("subscribe", topic))
        return 0, 1

    def publish(self, topic, payload, qos=0, retain=False):
        self.calls.append(("publish", topic, payload, retain))
        return self.next_info


@pytest.fixture
def received():
    return []


@pytest.fixture
def transport(received):
    clients = []

    def factory(**kwargs):
        clients.append(DummyClient(**kwargs))
        return clients[-1]

    t = MqttTransport(lambda raw, source: received.append((raw, source)), client_id="test", client_factory=factory)
    t.clients = clients
    return t


def _settings(**kw):
    return MqttSettings(enabled=True, **kw)


def test_parse_broker_url():
    assert parse_broker_url("mqtts://mqtt-dashboard.com:8883") == ("mqtt-dashboard.com", 8883, True, "tcp")
    assert parse_broker_url("mqtt://broker.local") == ("broker.local", 1883, False, "tcp")
    assert parse_broker_url("broker.local:1884") == ("broker.local", 1884, False, "tcp")
    assert parse_broker_url("wss://broker.example/mqtt") == ("broker.example", 443, True, "websockets")
    with pytest.raises(ValueError):
        parse_broker_url("http://broker.local")


def test_disabled_does_not_connect(transport):
    assert transport.start(MqttSettings(enabled=False)) is False
    assert transport.clients == []


def test_start_connects_with_credentials_and_tls(transport):
    transport.start(_settings(broker_url="mqtts://broker.local:8883", username="esp", password="pw"))
    client = transport.clients[0]
    assert ("auth", "esp", "pw") in client.calls
    assert ("tls",) in client.calls
    assert ("connect", "broker.local", 8883) in client.calls
    assert client.kwargs["client_id"] == "test"
    assert transport.connected is False


def test_connack_subscribes_to_telemetry(transport):
    transport.start(_settings(broker_url="mqtt://broker.local", base_topic="board7"))
    client = transport.clients[0]
    transport._on_connect(client, None, None, 0, None)
    assert transport.connected is True
    assert ("subscribe", "board7/telemetry") in client.calls


def test_rejected_connack_stays_disconnected(transport):
    transport.start(_settings(broker_url="mqtt://broker.local"))
    transport._on_connect(transport.clients[0], None, None, 5, None)
    assert transport.connected is False


def test_disconnect_clears_connected(transport):
    transport.start(_settings(broker_url="mqtt://broker.local"))
    transport._on_connect(transport.clients[0], None, None, 0, None)
    transport._on_disconnect(transport.clients[0], None, None, 7, None)
    assert transport.connected is False


def test_telemetry_message_is_ingested(transport, received):
    transport.start(_settings(broker_url="mqtt://broker.local"))
    transport._on_message(None, None, SimpleNamespace(topic="esp_device/telemetry", payload=b'{"lux": 7}'))
    transport._on_message(None, None, SimpleNamespace(topic="esp_device/other", payload=b'{"lux": 8}'))
    assert received == [({"lux": 7}, Source.MQTT)]


def test_bad_message_is_dropped(transport, received):
    transport.start(_settings(broker_url="mqtt://broker.local"))
    transport._on_message(None, None, SimpleNamespace(topic="esp_device/telemetry", payload=b"nope"))
    assert received == []
    assert transport.stats["rx_bad"] == 1


def test_ingest_errors_do_not_escape_callback():
    def boom(raw, source):
        raise MalformedPayload("list payload")

    t = MqttTransport(boom, client_factory=DummyClient)
    t.base_topic = "esp_device"
    t._on_message(None, None, SimpleNamespace(topic="esp_device/telemetry", payload=b"[1]"))


def test_publish_requires_connection(transport):
    with pytest.raises(TransportError):
        transport.publish("esp_device/control/pins", "{}")


def test_publish_checks_return_code(transport):
    transport.start(_settings(broker_url="mqtt://broker.local"))
    client = transport.clients[0]
    transport._on_connect(client, None, None, 0, None)

    transport.publish("esp_device/control/config", "{}", retain=True)
    assert ("publish", "esp_device/control/config", "{}", True) in client.calls

    client.next_info = DummyInfo(rc=mqtt.MQTT_ERR_NO_CONN)
    with pytest.raises(TransportError):
        transport.publish("esp_device/control/pins", "{}")

    client.next_info = DummyInfo(published=False)
    with pytest.raises(TransportError):
        transport.publish("esp_device/control/pins", "{}", timeout=0.1)


def test_restart_replaces_client(transport):
    transport.start(_settings(broker_url="mqtt://one.local"))
    transport.restart(_settings(broker_url="mqtt://two.local"))
    assert ("disconnect",) in transport.clients[0].calls
    assert ("connect", "two.local", 1883) in transport.clients[1].calls
