# settings.py
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from dotenv import load_dotenv
import os

# Load variables from .env at import time
load_dotenv()

LOG_LEVELS = ("debug", "info", "warning", "error")

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def env_bool(name: str, default: bool) -> bool:
    """Read a boolean env var; unknown spellings fall back to the default."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    return default


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


class Settings(BaseModel):
    # Ideogram upstream
    ideogram_api_key: str = Field(default_factory=lambda: os.getenv("IDEOGRAM_API_KEY", ""))
    ideogram_api_base: str = Field(
        default_factory=lambda: os.getenv("IDEOGRAM_API_BASE", "https://api.ideogram.ai")
    )
    request_timeout_ms: int = Field(default_factory=lambda: env_int("REQUEST_TIMEOUT_MS", 30000))
    max_concurrent_requests: int = Field(
        default_factory=lambda: env_int("MAX_CONCURRENT_REQUESTS", 3)
    )

    # Logging
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "info"))

    # Image persistence ("local" or "r2")
    storage: str = Field(default_factory=lambda: os.getenv("STORAGE", "local").lower())
    local_save_dir: str = Field(
        default_factory=lambda: os.getenv("LOCAL_SAVE_DIR", "./ideogram_images")
    )
    enable_local_save: bool = Field(default_factory=lambda: env_bool("ENABLE_LOCAL_SAVE", True))
    r2_access_key_id: str = Field(default_factory=lambda: os.getenv("R2_ACCESS_KEY_ID", ""))
    r2_secret_access_key: str = Field(
        default_factory=lambda: os.getenv("R2_SECRET_ACCESS_KEY", "")
    )
    r2_endpoint_url: str = Field(default_factory=lambda: os.getenv("R2_ENDPOINT_URL", ""))
    r2_bucket: str = Field(default_factory=lambda: os.getenv("R2_BUCKET", "ideogram"))
    r2_public_base: str = Field(default_factory=lambda: os.getenv("R2_PUBLIC_BASE", ""))
    public_base_url: str = Field(
        default_factory=lambda: os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")
    )

    # Prediction queue
    prediction_max_queue_size: int = Field(
        default_factory=lambda: env_int("PREDICTION_MAX_QUEUE_SIZE", 100)
    )
    prediction_timeout_seconds: float = Field(
        default_factory=lambda: env_float("PREDICTION_TIMEOUT_SECONDS", 300.0)
    )
    prediction_cleanup_age_seconds: float = Field(
        default_factory=lambda: env_float("PREDICTION_CLEANUP_AGE_SECONDS", 24 * 60 * 60.0)
    )
    prediction_cleanup_interval_seconds: float = Field(
        default_factory=lambda: env_float("PREDICTION_CLEANUP_INTERVAL_SECONDS", 60 * 60.0)
    )
    prediction_auto_cleanup: bool = Field(
        default_factory=lambda: env_bool("PREDICTION_AUTO_CLEANUP", True)
    )

    # Service
    host: str = Field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"))
    port: int = Field(default_factory=lambda: env_int("PORT", 8000))
    debug: bool = Field(default_factory=lambda: env_bool("DEBUG", False))
    cors_origins: str = Field(default_factory=lambda: os.getenv("CORS_ORIGINS", "*"))

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.strip().lower()
        if v == "warn":
            v = "warning"
        if v not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")
        return v

    @field_validator("storage")
    @classmethod
    def validate_storage(cls, v: str) -> str:
        if v not in ("local", "r2"):
            raise ValueError("STORAGE must be 'local' or 'r2'")
        return v

    @field_validator("request_timeout_ms")
    @classmethod
    def validate_request_timeout(cls, v: int) -> int:
        if v < 1000:
            raise ValueError("REQUEST_TIMEOUT_MS must be at least 1000ms")
        if v > 300000:
            raise ValueError("REQUEST_TIMEOUT_MS cannot exceed 300000ms (5 minutes)")
        return v

    @field_validator("max_concurrent_requests")
    @classmethod
    def validate_max_concurrent(cls, v: int) -> int:
        if v < 1:
            raise ValueError("MAX_CONCURRENT_REQUESTS must be at least 1")
        if v > 10:
            raise ValueError("MAX_CONCURRENT_REQUESTS cannot exceed 10 to prevent rate limiting")
        return v

    @field_validator("prediction_max_queue_size")
    @classmethod
    def validate_queue_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("PREDICTION_MAX_QUEUE_SIZE must be at least 1")
        return v

    @field_validator(
        "prediction_timeout_seconds",
        "prediction_cleanup_age_seconds",
    )
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("prediction_cleanup_interval_seconds")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("PREDICTION_CLEANUP_INTERVAL_SECONDS must be positive")
        return v

    def masked_api_key(self) -> str:
        key = self.ideogram_api_key
        if len(key) <= 8:
            return "****"
        return f"{key[:4]}...{key[-4:]}"


def config_errors(**overrides) -> List[str]:
    """Return every validation problem as 'field: message' (empty when valid)."""
    try:
        Settings(**overrides)
    except ValidationError as e:
        return [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
    return []


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Settings for the running process, built on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
