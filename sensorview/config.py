"""
Application configuration using pydantic-settings.
Loads from environment variables with sensible defaults.
"""
from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings for a single station viewer."""

    # Application
    app_name: str = "Sensor Viewer"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"

    # HTTP server
    http_host: str = "0.0.0.0"
    http_port: int = 8080

    # MQTT sensor feed (port 0 disables the subscription)
    mqtt_host: str = "localhost"
    mqtt_port: int = 0
    mqtt_topic: str = "iwasaki/location001/sensor/notify"

    # HLS stream (unset base URL means this server)
    video_dir: str = "/var/video"
    stream_base_url: Optional[str] = None
    playlist_path: str = "/stream/index.m3u8"
    ffmpeg_path: str = "ffmpeg"
    frame_path: str = "/tmp/sensorview/frame.jpg"
    snapshot_timeout_s: float = 20.0

    # Sensor polling (unset URL means this server's /api/sensor)
    sensor_url: Optional[str] = None
    polling_period_ms: int = 1000
    fetch_timeout_s: float = 5.0
    cycle_timeout_s: float = 10.0

    # Timestamp label
    display_timezone: str = "Asia/Tokyo"

    @model_validator(mode='after')
    def check_stream_settings(self):
        """Reject settings the coordinator cannot run with."""
        if not self.playlist_path.startswith("/"):
            raise ValueError("PLAYLIST_PATH must be an absolute path (e.g. /stream/index.m3u8)")
        if self.polling_period_ms <= 0:
            raise ValueError("POLLING_PERIOD_MS must be positive")
        return self

    # Resolved on read so a --http override also moves the self-referencing URLs

    @property
    def local_base_url(self) -> str:
        return f"http://localhost:{self.http_port}"

    @property
    def resolved_stream_base_url(self) -> str:
        return self.stream_base_url or self.local_base_url

    @property
    def resolved_sensor_url(self) -> str:
        return self.sensor_url or f"{self.local_base_url}/api/sensor"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
