"""
Automation policy for the light pin.

`decide` is pure: the same (config, record, now) always gives the same answer,
so a repeated report cannot flip the pin on its own.
"""
import re
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

from .models import TelemetryRecord
from .schemas import DeviceConfig

LIGHT_FIELD = "lux"

_HHMM = re.compile(r"^(\d{2}):(\d{2})$")


def _minutes(value: Any) -> int | None:
    if not isinstance(value, str):
        return None
    m = _HHMM.match(value)
    if not m:
        return None
    hours, minutes = int(m.group(1)), int(m.group(2))
    if hours > 23 or minutes > 59:
        return None
    return hours * 60 + minutes


def within_schedule(now: datetime, start: Any, end: Any, utc_offset_hours: float = 2) -> bool:
    """True when `now` falls in [start, end) local time; a malformed bound disables the window check."""
    start_min, end_min = _minutes(start), _minutes(end)
    if start_min is None or end_min is None:
        return True
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(timezone(timedelta(hours=utc_offset_hours)))
    now_min = local.hour * 60 + local.minute
    if start_min <= end_min:
        return start_min <= now_min < end_min
    # wraps past midnight
    return now_min >= start_min or now_min < end_min


def light_level(payload: Mapping[str, Any]) -> float | None:
    value = payload.get(LIGHT_FIELD)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def is_dark(payload: Mapping[str, Any], threshold: float) -> bool | None:
    lux = light_level(payload)
    if lux is None:
        return None
    return lux < threshold


def decide(config: DeviceConfig, record: TelemetryRecord, now: datetime) -> int | None:
    """Desired state for the automation pin, or None when automation has nothing to say."""
    if not config.automation_active:
        return None
    dark = is_dark(record.payload, config.light_threshold)
    if dark is None:
        return None

    if config.schedule_enabled and config.threshold_enabled:
        on = within_schedule(now, config.schedule_start, config.schedule_end, config.utc_offset_hours) and dark
    elif config.schedule_enabled:
        on = within_schedule(now, config.schedule_start, config.schedule_end, config.utc_offset_hours)
    else:
        on = dark
    return 1 if on else 0
