"""
Turns an inbound report from either transport into a TelemetryRecord.

Nothing about the payload shape is assumed beyond it being a JSON object;
firmware revisions add and drop sensor fields freely.
"""
import json
import secrets
import time
from collections.abc import Mapping
from typing import Any

from .errors import MalformedPayload
from .models import Source, TelemetryRecord, utcnow


def new_record_id() -> str:
    # epoch-ms prefix keeps ids sortable by arrival
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def decode_payload(raw: bytes | str | None) -> Any:
    """Decode an MQTT message body."""
    if not raw:
        raise MalformedPayload("empty message body")
    try:
        text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
        return json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedPayload(f"payload is not valid JSON: {e}") from e


def normalize(raw: Any, source: Source) -> TelemetryRecord:
    if not isinstance(raw, Mapping):
        raise MalformedPayload(f"expected a JSON object, got {type(raw).__name__}")
    return TelemetryRecord(
        id=new_record_id(),
        received_at=utcnow(),
        source=Source(source),
        payload=dict(raw),
    )


def device_address(payload: Mapping[str, Any]) -> str | None:
    """Device IP as reported by the firmware (`ip`, or `network.ip` on newer builds)."""
    addr = payload.get("ip")
    if not addr:
        network = payload.get("network")
        if isinstance(network, Mapping):
            addr = network.get("ip")
    if isinstance(addr, str) and addr.strip():
        return addr.strip()
    return None
