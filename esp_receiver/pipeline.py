import logging
from datetime import datetime
from typing import Any, Callable

from .actuators import ActuatorStateManager, Notify, PinOutcome
from .config_store import ConfigStore
from .models import Source, TelemetryRecord, utcnow
from .policy import decide
from .relay import DeviceTransportState
from .store import RecordStore
from .telemetry import normalize

log = logging.getLogger("pipeline")

class TelemetryPipeline:
    """One inbound report, start to finish: normalize, persist, announce, automate."""

    def __init__(
        self,
        store: RecordStore,
        config_store: ConfigStore,
        actuators: ActuatorStateManager,
        transport_state: DeviceTransportState,
        notify: Notify,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.config_store = config_store
        self.actuators = actuators
        self.transport_state = transport_state
        self.notify = notify
        self.clock = clock

    def ingest(self, raw: Any, source: Source) -> TelemetryRecord:
        """
        Raises MalformedPayload before anything is stored and StorageError if the
        record cannot be saved; both end processing of this report only.
        """
        record = normalize(raw, source)
        log.info("Processing data from %s: %s", source.value, record.payload)
        self.store.append(record)
        if record.source is Source.HTTP:
            self.transport_state.note_payload(record.payload)

        self.notify("new", {**record.meta(), "data": record.payload})
        self.evaluate(record)
        return record

    def evaluate(self, record: TelemetryRecord, now: datetime | None = None) -> PinOutcome | None:
        config = self.config_store.get()
        desired = decide(config, record, now or self.clock())
        if desired is None:
            return None
        return self.actuators.apply_desired(config.automation_pin, desired)
