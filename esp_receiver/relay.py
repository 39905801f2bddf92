import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from .errors import TransportError
from .mqtt_handler import MqttTransport
from .telemetry import device_address

log = logging.getLogger("relay")

# logical pin name suffix -> GPIO number on the device
PIN_MAPPING = {"12": 12, "13": 13, "14": 14}

def gpio_for(pin_name: str) -> int:
    logical = pin_name.removeprefix("pin")
    return PIN_MAPPING.get(logical) or int(logical)

class DeviceTransportState:
    """Last device address seen on an HTTP upload. Process-wide, never persisted."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._address: str | None = None

    @property
    def last_known_address(self) -> str | None:
        with self._lock:
            return self._address

    def note_payload(self, payload: Mapping[str, Any]) -> None:
        addr = device_address(payload)
        if addr is None:
            return
        with self._lock:
            if addr != self._address:
                log.info("[Relay] device address is now %s", addr)
            self._address = addr

@dataclass
class DeliveryOutcome:
    sent_to_device: bool
    transport: str | None = None
    error: str | None = None

class CommandRelay:
    """
    Delivers pin commands to the device.

    MQTT is used while the session is up; otherwise the command goes straight to
    the device's own HTTP endpoint at the last address it reported. Failures are
    logged and reported in the outcome, never raised.
    """

    def __init__(
        self,
        transport_state: DeviceTransportState,
        mqtt_transport: MqttTransport | None = None,
        http_client: httpx.Client | None = None,
        timeout: float = 3.0,
    ) -> None:
        self.transport_state = transport_state
        self.mqtt = mqtt_transport
        self.timeout = timeout
        self.http = http_client or httpx.Client(timeout=timeout)
        # one single-thread lane per GPIO pin keeps commands for a pin in order
        self._lanes: dict[int, ThreadPoolExecutor] = {}
        self._lanes_guard = threading.Lock()

    @property
    def mqtt_connected(self) -> bool:
        return self.mqtt is not None and self.mqtt.connected

    def can_deliver(self) -> bool:
        return self.mqtt_connected or self.transport_state.last_known_address is not None

    def deliver(self, pin: int, state: int) -> DeliveryOutcome:
        if self.mqtt_connected:
            transport = "mqtt"
            send = self._send_mqtt
        elif self.transport_state.last_known_address:
            transport = "http"
            send = self._send_http
        else:
            log.warning("[Relay] Cannot send pin %s=%s to ESP: no MQTT session and no known device address", pin, state)
            return DeliveryOutcome(False, error="no transport available")
        try:
            send(pin, state)
        except TransportError as e:
            log.error("[Relay] %s delivery of pin %s=%s failed: %s", transport, pin, state, e)
            return DeliveryOutcome(False, transport, str(e))
        log.info("[Relay] pin %s=%s sent via %s", pin, state, transport)
        return DeliveryOutcome(True, transport)

    def _lane(self, pin: int) -> ThreadPoolExecutor:
        with self._lanes_guard:
            lane = self._lanes.get(pin)
            if lane is None:
                lane = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"relay-pin{pin}")
                self._lanes[pin] = lane
            return lane

    def dispatch(self, pin: int, state: int) -> Future:
        """Fire-and-forget `deliver`; the result is only logged. Commands for one pin reach the device in call order."""
        fut = self._lane(pin).submit(self.deliver, pin, state)
        fut.add_done_callback(self._log_failure)
        return fut

    def publish_config(self, payload: dict[str, Any]) -> bool:
        """Retained config push; MQTT only, the device has no HTTP config endpoint."""
        if not self.mqtt_connected:
            log.warning("[MQTT] Cannot publish config. Client not connected.")
            return False
        try:
            self.mqtt.publish(self.mqtt.topic("control/config"), json.dumps(payload), retain=True)
        except TransportError as e:
            log.error("[MQTT] Failed to publish config: %s", e)
            return False
        return True

    def close(self) -> None:
        with self._lanes_guard:
            lanes = list(self._lanes.values())
            self._lanes.clear()
        for lane in lanes:
            lane.shutdown(wait=False)
        self.http.close()

    def _send_mqtt(self, pin: int, state: int) -> None:
        message = json.dumps({"pin": pin, "state": state})
        self.mqtt.publish(self.mqtt.topic("control/pins"), message, timeout=self.timeout)

    def _send_http(self, pin: int, state: int) -> None:
        url = f"http://{self.transport_state.last_known_address}/control"
        try:
            resp = self.http.get(url, params={"pin": pin, "state": state}, timeout=self.timeout)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportError(f"GET {url}: {e}") from e

    @staticmethod
    def _log_failure(fut: Future) -> None:
        exc = fut.exception()
        if exc is not None:
            log.error("[Relay] dispatch crashed: %r", exc)
