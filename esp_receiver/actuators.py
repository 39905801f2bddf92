import logging
import re
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from .config_store import ConfigStore
from .db import get_session
from .errors import InvalidState, StorageError
from .models import PinState, utcnow
from .relay import CommandRelay, gpio_for

log = logging.getLogger("actuators")

_PIN_NAME = re.compile(r"^pin\d+$")

Notify = Callable[[str, dict[str, Any]], None]

def validate(pin: Any, state: Any) -> tuple[str, int]:
    if not isinstance(pin, str) or not _PIN_NAME.match(pin):
        raise InvalidState(f"invalid pin name: {pin!r}")
    # JSON true/false would slip through `in (0, 1)`
    if isinstance(state, bool) or not isinstance(state, (int, float)) or state not in (0, 1):
        raise InvalidState("Invalid state. Must be 0 or 1.")
    return pin, int(state)

@dataclass
class PinOutcome:
    pin: str
    state: int
    changed: bool
    sent_to_device: bool = False

class ActuatorStateManager:
    """
    Canonical pin states. Writes are serialized per pin and the new state is
    committed before any command leaves for the device, so the stored value
    stays authoritative whatever happens on the wire.
    """

    def __init__(self, engine, config_store: ConfigStore, relay: CommandRelay, notify: Notify | None = None) -> None:
        self.engine = engine
        self.config_store = config_store
        self.relay = relay
        self.notify = notify or (lambda event, data: None)
        self._locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _lock_for(self, pin: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[pin]

    def get(self, pin: str) -> int:
        with get_session(self.engine) as s:
            try:
                row = s.get(PinState, pin)
            except SQLAlchemyError as e:
                raise StorageError(f"failed to read {pin}") from e
            return row.state if row else 0

    def snapshot(self) -> dict[str, int]:
        with get_session(self.engine) as s:
            try:
                rows = s.exec(select(PinState).order_by(PinState.name)).all()
            except SQLAlchemyError as e:
                raise StorageError("failed to read pin states") from e
            return {r.name: r.state for r in rows}

    def apply_desired(self, pin: str, desired: int) -> PinOutcome:
        """Automation path: change-only, and a no-op once a manual override has switched automation off."""
        pin, desired = validate(pin, desired)
        with self._lock_for(pin):
            current = self.get(pin)
            if current == desired:
                return PinOutcome(pin, desired, changed=False)
            if not self.config_store.get().automation_active:
                return PinOutcome(pin, current, changed=False)
            self._write(pin, desired)
            log.info("[Auto-Light] Server logic changing %s to %s.", pin, desired)
            return self._relay(pin, desired, changed=True)

    def manual_set(self, pin: str, state: int) -> PinOutcome:
        pin, state = validate(pin, state)
        with self._lock_for(pin):
            changed = self.get(pin) != state
            self._write(pin, state)
            overridden = pin == self.config_store.get().automation_pin and self.config_store.disable_automation()
            # queued while the lock is held so the device sees writes in stored order
            outcome = self._relay(pin, state, changed=changed)
        log.info("[Pin Control] Set pin %s state to %s", pin, state)

        if overridden:
            log.info("[Auto-Light] Manual override on %s detected. Disabling automation.", pin)
            self.relay.publish_config({"enableAutoLight": False, "enableLightThreshold": False})
        return outcome

    def _write(self, pin: str, state: int) -> None:
        try:
            with get_session(self.engine) as s:
                row = s.get(PinState, pin) or PinState(name=pin)
                row.state = state
                row.updated_at = utcnow()
                s.add(row)
                s.commit()
        except SQLAlchemyError as e:
            log.error("[Pin Control] Failed to write pin %s state: %s", pin, e)
            raise StorageError(f"failed to write pin {pin} state") from e

    def _relay(self, pin: str, state: int, changed: bool) -> PinOutcome:
        sent = self.relay.can_deliver()
        self.relay.dispatch(gpio_for(pin), state)
        outcome = PinOutcome(pin, state, changed=changed, sent_to_device=sent)
        if changed:
            self.notify("state_changed", {"pin": pin, "state": state})
        return outcome
