# esp_receiver/mqtt_handler.py
import logging
import threading
import time
from typing import Callable
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt

from .errors import MalformedPayload, StorageError, TransportError
from .models import Source
from .schemas import MqttSettings
from .telemetry import decode_payload

log = logging.getLogger("mqtt")

_DEFAULT_PORTS = {"mqtt": 1883, "tcp": 1883, "mqtts": 8883, "ssl": 8883, "ws": 80, "wss": 443}

def _rc_int(rc) -> int:
    # Handles paho v2.x ReasonCode objects or plain ints
    try:
        return int(getattr(rc, "value", rc))
    except (TypeError, ValueError):
        return -1

def parse_broker_url(url: str) -> tuple[str, int, bool, str]:
    """brokerUrl -> (host, port, tls, transport)."""
    parts = urlsplit(url if "://" in url else f"mqtt://{url}")
    scheme = (parts.scheme or "mqtt").lower()
    if scheme not in _DEFAULT_PORTS:
        raise ValueError(f"unsupported broker scheme: {scheme}")
    host = parts.hostname or "localhost"
    port = parts.port or _DEFAULT_PORTS[scheme]
    tls = scheme in ("mqtts", "ssl", "wss")
    transport = "websockets" if scheme in ("ws", "wss") else "tcp"
    return host, port, tls, transport

class MqttTransport:
    """
    Live MQTT session with the device broker.

    Subscribes to `<baseTopic>/telemetry` and hands each message to `on_telemetry`;
    `connected` mirrors the session so the relay can pick a transport.
    """

    def __init__(
        self,
        on_telemetry: Callable[[object, Source], object],
        client_id: str | None = None,
        client_factory: Callable[..., mqtt.Client] = mqtt.Client,
    ) -> None:
        self.on_telemetry = on_telemetry
        self.client_id = client_id
        self.client_factory = client_factory
        self.client: mqtt.Client | None = None
        self.base_topic = ""
        self._connected = threading.Event()
        self._lock = threading.Lock()
        self.stats = {"rx_total": 0, "rx_bad": 0}

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    def topic(self, suffix: str) -> str:
        return f"{self.base_topic}/{suffix}"

    def start(self, cfg: MqttSettings) -> bool:
        with self._lock:
            if not cfg.enabled:
                log.info("[MQTT] MQTT is disabled in config.")
                return False
            if self.client is not None:
                log.info("[MQTT] Client is already connected or connecting.")
                return True
            host, port, tls, transport = parse_broker_url(cfg.broker_url)
            self.base_topic = cfg.base_topic

            client = self.client_factory(
                client_id=self.client_id or f"esp-receiver-{int(time.time())}",
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,  # paho 2.x
                transport=transport,
            )
            client.enable_logger(log)
            if cfg.username:
                client.username_pw_set(cfg.username, cfg.password or None)
            if tls:
                client.tls_set()
            client.reconnect_delay_set(min_delay=1, max_delay=30)

            client.on_connect = self._on_connect
            client.on_disconnect = self._on_disconnect
            client.on_subscribe = self._on_subscribe
            client.on_message = self._on_message

            log.info(
                "[MQTT] Connecting to %s (host=%s port=%s user=%s base=%s)",
                cfg.broker_url, host, port, "<set>" if cfg.username else "<none>", cfg.base_topic,
            )
            # connect_async: a broker that is down must not block start-up
            client.connect_async(host, port, keepalive=30)
            client.loop_start()
            self.client = client
            return True

    def stop(self) -> None:
        with self._lock:
            client, self.client = self.client, None
            self._connected.clear()
        if client is not None:
            client.disconnect()
            client.loop_stop()
            log.info("[MQTT] Connection closed.")

    def restart(self, cfg: MqttSettings) -> bool:
        log.info("[MQTT] MQTT config changed, reconnecting...")
        self.stop()
        return self.start(cfg)

    def publish(self, topic: str, payload: str, retain: bool = False, timeout: float | None = None) -> None:
        client = self.client
        if client is None or not self.connected:
            raise TransportError("MQTT client not connected")
        info = client.publish(topic, payload, qos=0, retain=retain)
        # paho v2: info.rc == mqtt.MQTT_ERR_SUCCESS (0) when queued
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"publish to {topic} failed rc={info.rc}")
        if timeout is not None:
            info.wait_for_publish(timeout=timeout)
            if not info.is_published():
                raise TransportError(f"publish to {topic} not confirmed within {timeout}s")
        log.info("[MQTT] Published to %s: %s", topic, payload)

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        rc = _rc_int(reason_code)
        if rc != mqtt.CONNACK_ACCEPTED:
            log.warning("[MQTT] Connect failed rc=%s (5=Not authorized). Retrying…", rc)
            return
        self._connected.set()
        topic = self.topic("telemetry")
        res, mid = client.subscribe(topic, qos=0)
        log.info("[MQTT] Connected to broker. SUB %s res=%s mid=%s", topic, res, mid)

    def _on_subscribe(self, client, userdata, mid, reason_codes, properties):
        if any(_rc_int(rc) >= 0x80 for rc in reason_codes):
            log.warning("[MQTT] subscription mid=%s rejected by broker", mid)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        self._connected.clear()
        log.warning("[MQTT] Disconnected rc=%s. Reconnecting…", _rc_int(reason_code))

    def _on_message(self, client, userdata, msg):
        self.stats["rx_total"] += 1
        if msg.topic != self.topic("telemetry"):
            return
        log.info("[MQTT] Received message on topic %s", msg.topic)
        try:
            self.on_telemetry(decode_payload(msg.payload), Source.MQTT)
        except MalformedPayload as e:
            self.stats["rx_bad"] += 1
            log.warning("[MQTT] Failed to parse telemetry message: %s", e)
        except StorageError as e:
            log.error("[MQTT] Telemetry dropped, storage failed: %s", e)
        except Exception:
            # an exception escaping here would kill paho's network thread
            log.exception("[MQTT] on_message error")
