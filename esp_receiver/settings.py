from pydantic import BaseModel
import os

class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./esp_receiver.db")
    config_path: str = os.getenv("CONFIG_PATH", "config.json")
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "http://localhost:4173,http://localhost:5173").split(",")

    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "80"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    mqtt_client_id: str | None = os.getenv("MQTT_CLIENT_ID") or None

    relay_timeout_seconds: float = float(os.getenv("RELAY_TIMEOUT_SECONDS", "3"))

    sse_keepalive_seconds: float = float(os.getenv("SSE_KEEPALIVE_SECONDS", "15"))
    subscriber_buffer: int = int(os.getenv("SUBSCRIBER_BUFFER", "64"))

settings = Settings()
