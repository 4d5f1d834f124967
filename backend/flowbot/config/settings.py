# /flowbot/config/settings.py

from typing import List
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Runtime
    environment: str = Field(default="production")
    log_level: str = "INFO"
    api_version: str = "v1"
    api_key: str | None = None

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017/flowbot"
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = False

    # Redis
    redis_url: str = "redis://localhost:6379"

    # Backends ("memory" keeps everything in-process, useful for a single worker and tests)
    storage_backend: str = "memory"
    lock_backend: str = "local"
    lock_timeout_seconds: int = 30

    # Interpreter limits
    max_steps_per_event: int = 200
    max_node_visits_per_event: int = 100

    # Retention and background sweeps
    execution_retention_days: int = 7
    wait_timeout_sweep_seconds: int = 60
    run_scheduler_in_process: bool = True

    # Active version cache
    flow_cache_ttl_seconds: int = 300
    flow_cache_capacity: int = 256

    # Loyalty rules
    bonus_expiry_days: int = 365
    expiring_bonus_window_days: int = 30
    referral_link_base_url: str = "https://t.me/flowbot"

    # WhatsApp Cloud API (outbound messages)
    whatsapp_access_token: str | None = None
    whatsapp_phone_id: str | None = None
    whatsapp_api_base_url: str = "https://graph.facebook.com/v18.0"

    cors_allowed_origins: List[str] = Field(default_factory=list)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # ---------------- Validators ---------------- #

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def parse_cors_allowed_origins(cls, v):
        """Accept a comma-separated string as well as a list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("storage_backend")
    @classmethod
    def storage_backend_must_be_known(cls, v: str) -> str:
        if v not in ("memory", "mongo"):
            raise ValueError("STORAGE_BACKEND must be 'memory' or 'mongo'")
        return v

    @field_validator("lock_backend")
    @classmethod
    def lock_backend_must_be_known(cls, v: str) -> str:
        if v not in ("local", "redis"):
            raise ValueError("LOCK_BACKEND must be 'local' or 'redis'")
        return v

    @field_validator(
        "max_steps_per_event",
        "max_node_visits_per_event",
        "execution_retention_days",
        "flow_cache_capacity",
        "lock_timeout_seconds",
    )
    @classmethod
    def limits_must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Interpreter, cache and retention limits must be positive")
        return v

    @model_validator(mode="after")
    def node_visits_within_max_steps(self):
        if self.max_node_visits_per_event > self.max_steps_per_event:
            self.max_node_visits_per_event = self.max_steps_per_event
        return self

    @property
    def whatsapp_enabled(self) -> bool:
        return bool(self.whatsapp_access_token and self.whatsapp_phone_id)


settings = Settings()
