from datetime import datetime, timezone

from esp_receiver.models import Source
from esp_receiver.policy import decide, is_dark, within_schedule
from esp_receiver.schemas import DeviceConfig
from esp_receiver.telemetry import normalize


def _utc(hh, mm):
    return datetime(2026, 10, 19, hh, mm, tzinfo=timezone.utc)


def _record(**payload):
    return normalize(payload, Source.HTTP)


def test_schedule_wraps_past_midnight():
    # UTC+2: 21:30 UTC is 23:30 local
    assert within_schedule(_utc(21, 30), "22:00", "07:00", 2) is True
    assert within_schedule(_utc(10, 0), "22:00", "07:00", 2) is False
    assert within_schedule(_utc(3, 0), "22:00", "07:00", 2) is True


def test_schedule_end_is_exclusive():
    assert within_schedule(_utc(5, 0), "07:00", "22:00", 2) is True
    assert within_schedule(_utc(20, 0), "07:00", "22:00", 2) is False
    assert within_schedule(_utc(19, 59), "07:00", "22:00", 2) is True


def test_schedule_uses_configured_offset():
    assert within_schedule(_utc(6, 30), "07:00", "22:00", 0) is False
    assert within_schedule(_utc(6, 30), "07:00", "22:00", 1) is True


def test_malformed_schedule_counts_as_inside():
    assert within_schedule(_utc(12, 0), "7:00", "22:00") is True
    assert within_schedule(_utc(12, 0), "07:00", None) is True
    assert within_schedule(_utc(12, 0), "25:00", "07:00") is True


def test_empty_window_when_start_equals_end():
    assert within_schedule(_utc(12, 0), "08:00", "08:00", 0) is False


def test_naive_now_is_treated_as_utc():
    assert within_schedule(datetime(2026, 10, 19, 21, 30), "22:00", "07:00", 2) is True


def test_threshold_boundary_counts_as_light():
    assert is_dark({"lux": 39.9}, 40) is True
    assert is_dark({"lux": 40}, 40) is False
    assert is_dark({"lux": 41}, 40) is False


def test_missing_or_non_numeric_lux_is_unknown():
    assert is_dark({}, 40) is None
    assert is_dark({"lux": "dark"}, 40) is None
    assert is_dark({"lux": True}, 40) is None


def test_disabled_automation_is_noop():
    cfg = DeviceConfig()
    assert decide(cfg, _record(lux=1), _utc(12, 0)) is None


def test_threshold_only():
    cfg = DeviceConfig(threshold_enabled=True, light_threshold=40)
    assert decide(cfg, _record(lux=10), _utc(12, 0)) == 1
    for lux in (40, 40.0, 41, 500):
        assert decide(cfg, _record(lux=lux), _utc(12, 0)) == 0


def test_schedule_only_ignores_light_level_but_needs_it_present():
    cfg = DeviceConfig(schedule_enabled=True, schedule_start="22:00", schedule_end="07:00")
    assert decide(cfg, _record(lux=1000), _utc(21, 30)) == 1
    assert decide(cfg, _record(lux=1000), _utc(10, 0)) == 0
    assert decide(cfg, _record(temperature_aht_c=21.5), _utc(21, 30)) is None


def test_both_rules_must_agree():
    cfg = DeviceConfig(
        schedule_enabled=True, threshold_enabled=True, light_threshold=40,
        schedule_start="07:00", schedule_end="22:00",
    )
    assert decide(cfg, _record(lux=10), _utc(10, 0)) == 1
    assert decide(cfg, _record(lux=100), _utc(10, 0)) == 0
    assert decide(cfg, _record(lux=10), _utc(22, 0)) == 0


def test_decision_is_repeatable():
    cfg = DeviceConfig(threshold_enabled=True)
    rec = _record(lux=12)
    now = _utc(8, 15)
    assert decide(cfg, rec, now) == decide(cfg, rec, now) == 1
