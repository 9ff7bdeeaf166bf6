from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"
    base_url: str = "http://localhost:8000"
    secret_key: str = "change-me"

    database_url: str = "sqlite:///./receipt_tracker.db"
    redis_url: str = "redis://localhost:6379/0"

    storage_backend: Literal["local", "s3"] = "local"
    local_storage_path: Path = Path(".local_storage")

    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_bucket: str = "receipt-tracker"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None

    gemini_api_key: str | None = None
    gemini_model: str = "gemini-2.5-pro"
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    model_timeout_seconds: float = 120.0

    extraction_response_schema_enabled: bool = True
    extraction_fallback_prompt_enabled: bool = True
    extraction_lease_seconds: int = 30 * 60

    download_url_expiry_seconds: int = 60 * 60
    max_upload_bytes: int = 20 * 1024 * 1024

    init_admin_email: str | None = None
    init_admin_password: str | None = None

    access_token_exp_minutes: int = 60 * 24


settings = Settings()
