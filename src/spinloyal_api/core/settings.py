from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./spinloyal.db"
    log_level: str = "INFO"

    # Tracing
    tracing_enabled: bool = True
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None

    # Application URLs
    frontend_url: str = "http://localhost:3000"

    # Staff integrations (scanner devices, dashboard backend)
    staff_api_key: str = ""

    # Wheel
    max_wheel_segments: int = Field(default=8, ge=1)
    min_wheel_segments: int = Field(default=6, ge=1)
    coupon_ttl_hours: int = Field(default=24, ge=1)

    # Loyalty defaults applied when a merchant leaves a value unset
    default_welcome_points: int = Field(default=50, ge=0)
    default_points_per_purchase: int = Field(default=10, ge=0)
    default_purchase_amount_threshold: int = Field(default=1000, gt=0)
    redemption_code_ttl_days: int = Field(default=30, ge=0)

    # Redemption expiry sweep
    redemption_expiry_worker_enabled: bool = False
    redemption_expiry_interval_seconds: int = 300

    # Notifications
    notification_worker_enabled: bool = True
    notification_webhook_url: str | None = None
    notification_timeout_seconds: float = 10.0
    notification_queue_size: int = 1000
    notification_event_types: list[str] = Field(default_factory=list)

    @field_validator("notification_event_types", mode="before")
    @classmethod
    def _parse_event_types(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
