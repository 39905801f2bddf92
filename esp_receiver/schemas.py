from pydantic import BaseModel, ConfigDict, Field
from typing import Any

# Bump when fields are added; older files are upgraded by config_store.merge_config.
CONFIG_SCHEMA_VERSION = 2

class _WireModel(BaseModel):
    # camelCase names are what the device firmware and dashboard read
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

class MqttSettings(_WireModel):
    enabled: bool = False
    broker_url: str = Field("mqtts://mqtt-dashboard.com:8883", alias="brokerUrl")
    username: str = ""
    password: str = ""
    base_topic: str = Field("esp_device", alias="baseTopic")

class WifiNetwork(_WireModel):
    ssid: str = ""
    password: str = ""
    enabled: bool = False

class DeviceConfig(_WireModel):
    schema_version: int = Field(CONFIG_SCHEMA_VERSION, alias="schemaVersion")
    schedule_enabled: bool = Field(False, alias="enableAutoLight")
    threshold_enabled: bool = Field(False, alias="enableLightThreshold")
    light_threshold: float = Field(40, alias="lightThreshold")
    upload_interval_seconds: int = Field(30, alias="uploadIntervalSeconds")
    schedule_start: str = Field("07:00", alias="autoLightStartTime")
    schedule_end: str = Field("22:00", alias="autoLightEndTime")
    utc_offset_hours: float = Field(2, alias="utcOffsetHours")
    automation_pin: str = Field("pin12", alias="automationPin", pattern=r"^pin\d+$")
    last_saved_local_time: str | None = Field(None, alias="lastSavedLocalTime")
    wifi: list[WifiNetwork] = Field(default_factory=list)
    send_addresses: list[str] = Field(default_factory=list, alias="sendAddresses")
    device_name: str = Field("", alias="deviceName")
    mqtt: MqttSettings = Field(default_factory=MqttSettings)

    @property
    def automation_active(self) -> bool:
        return self.schedule_enabled or self.threshold_enabled

    def wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

    def device_payload(self) -> dict[str, Any]:
        """Config as pushed to the device: everything except the broker credentials."""
        data = self.wire()
        data.pop("mqtt", None)
        return data

class PinCommand(BaseModel):
    state: Any = None

class PinResponse(BaseModel):
    status: str
    pin: str
    state: int
    sentToEsp: bool

class UploadResponse(BaseModel):
    status: str
    uploadIntervalSeconds: int

class UploadOut(BaseModel):
    id: str
    time: str
    source: str
    data: dict[str, Any]

class UploadPage(BaseModel):
    items: list[UploadOut]
    total: int
    page: int
    limit: int

class StatusOut(BaseModel):
    mqttConnected: bool
    lastKnownDeviceAddress: str | None
    subscribers: int
