import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import InvalidConfig, StorageError
from .schemas import CONFIG_SCHEMA_VERSION, DeviceConfig

log = logging.getLogger("config")

def _upgrade_wifi(value: Any) -> list[dict]:
    # v1 files held a single {ssid, password} object
    if isinstance(value, list):
        return [
            {"ssid": w.get("ssid") or "", "password": w.get("password") or "", "enabled": bool(w.get("enabled"))}
            for w in value
            if isinstance(w, dict)
        ]
    if isinstance(value, dict):
        return [{"ssid": value.get("ssid") or "", "password": value.get("password") or "", "enabled": True}]
    return []

def merge_config(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """
    Overlay `updates` onto `base` key by key. Keys unknown to `base` are dropped
    and the nested `mqtt` object is merged on its own, so a partial `mqtt`
    update keeps the remaining broker settings.
    """
    merged = dict(base)
    for key, value in (updates or {}).items():
        if key not in merged:
            continue
        if key == "mqtt":
            if isinstance(value, dict):
                merged["mqtt"] = {**merged["mqtt"], **{k: v for k, v in value.items() if k in merged["mqtt"]}}
        elif key == "wifi":
            merged["wifi"] = _upgrade_wifi(value)
        else:
            merged[key] = value
    return merged

def _write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    os.replace(tmp_path, path)

class ConfigStore:
    """Owner of the persisted device configuration; every mutation is written through."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()
        self._config = DeviceConfig()

    def load(self) -> DeviceConfig:
        with self._lock:
            if not self.path.exists():
                self._config = DeviceConfig()
                self._persist(self._config)
                log.info("[Config] default configuration created at %s", self.path)
                return self._config
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
                if not isinstance(raw, dict):
                    raise ValueError("config root is not an object")
                data = merge_config(DeviceConfig().wire(), raw)
                data["schemaVersion"] = CONFIG_SCHEMA_VERSION
                self._config = DeviceConfig.model_validate(data)
            except (OSError, ValueError) as e:
                # ValidationError is a ValueError
                log.error("[Config] failed to load %s, using defaults: %s", self.path, e)
                self._config = DeviceConfig()
            log.info("[Config] configuration loaded from %s", self.path)
            return self._config

    def get(self) -> DeviceConfig:
        with self._lock:
            return self._config.model_copy(deep=True)

    def update(self, patch: dict[str, Any]) -> tuple[DeviceConfig, DeviceConfig]:
        """Apply a partial update; returns (previous, current)."""
        if not isinstance(patch, dict):
            raise InvalidConfig("config update must be a JSON object")
        with self._lock:
            previous = self._config
            data = merge_config(previous.wire(), patch)
            try:
                current = DeviceConfig.model_validate(data)
            except ValidationError as e:
                raise InvalidConfig(str(e)) from e
            self._persist(current)
            self._config = current
            log.info("[Config] configuration persisted")
            return previous.model_copy(deep=True), current.model_copy(deep=True)

    def disable_automation(self) -> bool:
        """Clear both automation flags. False when they were already off."""
        with self._lock:
            if not self._config.automation_active:
                return False
            current = self._config.model_copy(update={"schedule_enabled": False, "threshold_enabled": False})
            self._persist(current)
            self._config = current
            return True

    def _persist(self, config: DeviceConfig) -> None:
        try:
            _write_json_atomic(self.path, config.wire())
        except OSError as e:
            log.error("[Config] failed to write %s: %s", self.path, e)
            raise StorageError(f"failed to write config: {e}") from e
