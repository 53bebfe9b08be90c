from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_WEEK_STARTS = {"monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"}


class Settings(BaseSettings):
    app_name: str = "AgencyDesk API"
    app_version: str = "0.1.0"
    app_env: str = "local"
    app_debug: bool = False
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    database_url: str = "sqlite+pysqlite:///./agencydesk.db"
    jwt_secret: str = "replace-me"
    jwt_algorithm: str = "HS256"
    app_timezone: str = "UTC"
    week_start: str = "sunday"
    conversion_note_prefix: str = "Cliente convertido da oportunidade: "
    rate_limit_disabled: bool = False
    rate_limit_mutations_per_minute: int = 60
    metrics_enabled: bool = False
    otel_enabled: bool = False
    otel_service_name: str = "agencydesk-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_console_exporter: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    @field_validator("week_start")
    @classmethod
    def _known_week_start(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in _WEEK_STARTS:
            raise ValueError(f"week_start must be one of {sorted(_WEEK_STARTS)}")
        return normalized

    @field_validator("app_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone '{value}'") from exc
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
