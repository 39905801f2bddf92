import json

import pytest

from esp_receiver.config_store import ConfigStore
from esp_receiver.db import init_db, make_engine
from esp_receiver.errors import TransportError


class FakeMqtt:
    """Stands in for MqttTransport: same topic/publish surface, no broker."""

    def __init__(self, connected=True, fail=False, base_topic="esp_device"):
        self.connected = connected
        self.fail = fail
        self.base_topic = base_topic
        self.published = []

    def topic(self, suffix):
        return f"{self.base_topic}/{suffix}"

    def publish(self, topic, payload, retain=False, timeout=None):
        if self.fail:
            raise TransportError("broker went away")
        self.published.append((topic, json.loads(payload), retain))


class RecordingRelay:
    def __init__(self, deliverable=True):
        self.deliverable = deliverable
        self.dispatched = []
        self.configs = []

    def can_deliver(self):
        return self.deliverable

    def dispatch(self, pin, state):
        self.dispatched.append((pin, state))

    def publish_config(self, payload):
        self.configs.append(payload)
        return True


@pytest.fixture
def engine():
    eng = make_engine("sqlite://")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def config_store(tmp_path):
    store = ConfigStore(tmp_path / "config.json")
    store.load()
    return store


@pytest.fixture
def relay():
    return RecordingRelay()


@pytest.fixture
def events():
    return []


@pytest.fixture
def notify(events):
    def _notify(event, data):
        events.append((event, data))
    return _notify
