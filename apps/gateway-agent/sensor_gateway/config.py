"""Runtime configuration for the sensor gateway."""
from __future__ import annotations

from functools import lru_cache
from typing import Optional
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_INTERVAL_SECONDS = 0.05
MAX_INTERVAL_SECONDS = 3600.0


def _clamp_interval_seconds(value: float, *, field: str) -> float:
    try:
        parsed = float(value)
    except Exception as exc:
        raise ValueError(f"{field} must be a number") from exc
    if parsed != parsed:  # NaN
        raise ValueError(f"{field} must be a real number")
    return max(MIN_INTERVAL_SECONDS, min(parsed, MAX_INTERVAL_SECONDS))


class Settings(BaseSettings):
    """Environment driven settings for the gateway process."""

    gateway_id: str = Field(default="sensor-gateway", description="Prefix for MQTT client identifiers")
    service_version: str = "0.1.0"
    log_level: str = "INFO"
    otel_enabled: bool = False
    otel_service_name: str = "sensor-gateway"
    otel_exporter_otlp_endpoint: str = "http://127.0.0.1:4317"
    otel_exporter_otlp_headers: Optional[str] = None
    otel_sample_ratio: float = 1.0

    mqtt_url: str = Field(default="mqtt://mqtt.eclipseprojects.io:1883", description="MQTT broker URL")
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    node_update_topic: str = "nodes/update"
    sensor_update_topic: str = "nodes/sensors/update"
    sensor_availability_topic: str = "nodes/sensors/availability"
    samples_topic: str = "nodes/sensors/samples"
    status_topic: str = "nodes/status"
    update_qos: int = Field(default=1, ge=0, le=2)
    sample_qos: int = Field(default=2, ge=0, le=2)
    status_qos: int = Field(default=1, ge=0, le=2)

    store_url: str = Field(default="http://localhost:1880", description="Node-RED store base URL")
    store_nodes_path: str = "/node-cloud/nodes/"
    store_sensors_path: str = "/node-cloud/sensors/"
    store_timeout_seconds: float = Field(default=10.0, gt=0)

    sample_interval_seconds: float = 5.0
    node_heartbeat_interval_seconds: float = 30.0
    publish_retries: int = Field(default=2, ge=0)
    publish_retry_delay_seconds: float = Field(default=1.0, ge=0)
    listener_retry_seconds: float = Field(default=2.0, ge=0)
    simulation_seed: Optional[int] = None

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("sample_interval_seconds")
    @classmethod
    def _clamp_sample_interval(cls, value: float) -> float:
        return _clamp_interval_seconds(value, field="sample_interval_seconds")

    @field_validator("node_heartbeat_interval_seconds")
    @classmethod
    def _clamp_heartbeat(cls, value: float) -> float:
        return _clamp_interval_seconds(value, field="node_heartbeat_interval_seconds")

    @property
    def mqtt_host(self) -> str:
        return _parsed_mqtt(self.mqtt_url).hostname or "127.0.0.1"

    @property
    def mqtt_port(self) -> int:
        return _parsed_mqtt(self.mqtt_url).port or 1883

    @property
    def store_nodes_url(self) -> str:
        return self.store_url.rstrip("/") + "/" + self.store_nodes_path.lstrip("/")

    @property
    def store_sensors_url(self) -> str:
        return self.store_url.rstrip("/") + "/" + self.store_sensors_path.lstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


@lru_cache(maxsize=32)
def _parsed_mqtt(url: str):
    return urlparse(url)
