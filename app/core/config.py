from functools import lru_cache
from typing import Annotated
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

UNKNOWN_EMAIL_POLICIES = frozenset({"reject", "book"})


class Settings(BaseSettings):
    app_name: str = "Swim Coach Scheduling API"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    allowed_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:8081",
        "http://localhost:19006",
        "http://127.0.0.1:8081",
    ]
    data_store: str = "mongodb"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "swim_coach_scheduling"
    mongodb_appointments_collection: str = "appointments"
    mongodb_coaches_collection: str = "coaches"
    mongodb_ingestions_collection: str = "email_ingestions"
    mongodb_system_collection: str = "system"
    mongodb_connect_timeout_ms: int = 2000
    webhook_secret: str = ""
    webhook_signature_header: str = "X-Vivi-Signature"
    business_timezone: str = "America/Los_Angeles"
    display_timezone: str = "America/Los_Angeles"
    past_grace_minutes: int = 10
    cancel_match_window_minutes: int = 2
    coach_scan_limit: int = 500
    unknown_email_policy: str = "reject"
    raw_text_max_chars: int = 2000
    ingestion_processing_timeout_seconds: int = 120
    ingestion_records_max_limit: int = 200

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("data_store", mode="before")
    @classmethod
    def normalize_data_store(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("unknown_email_policy", mode="before")
    @classmethod
    def normalize_unknown_email_policy(cls, value: str) -> str:
        normalized = str(value).strip().lower()
        if normalized not in UNKNOWN_EMAIL_POLICIES:
            return "reject"
        return normalized

    @field_validator("business_timezone", "display_timezone", mode="before")
    @classmethod
    def normalize_timezone(cls, value: str) -> str:
        cleaned = str(value).strip()
        try:
            ZoneInfo(cleaned)
        except (ZoneInfoNotFoundError, ValueError):
            return "America/Los_Angeles"
        return cleaned

    @field_validator("webhook_signature_header", mode="before")
    @classmethod
    def normalize_signature_header(cls, value: str) -> str:
        cleaned = str(value).strip()
        return cleaned or "X-Vivi-Signature"

    @field_validator("past_grace_minutes", "cancel_match_window_minutes", mode="before")
    @classmethod
    def normalize_non_negative_minutes(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value < 0:
            return 0
        return parsed_value

    @field_validator("coach_scan_limit", mode="before")
    @classmethod
    def normalize_coach_scan_limit(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 500
        return parsed_value

    @field_validator("raw_text_max_chars", mode="before")
    @classmethod
    def normalize_raw_text_max_chars(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 2000
        return parsed_value

    @field_validator("ingestion_processing_timeout_seconds", mode="before")
    @classmethod
    def normalize_processing_timeout(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 120
        return parsed_value


@lru_cache
def get_settings() -> Settings:
    return Settings()
