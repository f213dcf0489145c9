from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings

from .errors import ConfigError


class BudgetConfigItem(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)


class Settings(BaseSettings):
    # Server
    port: int = Field(default=3000, gt=0)
    log_level: str = "info"
    body_limit_bytes: int = Field(default=1048576, gt=0)
    request_timeout_ms: int = Field(default=15000, gt=0)

    # Bridge auth
    bridge_api_key: SecretStr

    # Actual
    actual_server_url: str
    actual_password: SecretStr
    actual_file_password: Optional[SecretStr] = None
    actual_data_dir: str = "/tmp/entrybridge-actual-data"
    upstream_timeout_ms: int = Field(default=15000, gt=0)

    # Budgets
    budget_discovery_mode: Literal["auto", "configured"] = "auto"
    budgets: List[BudgetConfigItem] = []

    # Writes
    lock_timeout_ms: int = Field(default=5000, gt=0)
    idempotency_ttl_ms: int = Field(default=86400000, gt=0)
    idempotency_max_records: int = Field(default=10000, gt=0)

    # Abuse guards
    auth_failure_window_ms: int = Field(default=60000, gt=0)
    auth_max_attempts: int = Field(default=10, gt=0)
    auth_block_ms: int = Field(default=300000, gt=0)
    auth_max_tracked_clients: int = Field(default=10000, gt=0)
    request_rate_limit_window_ms: int = Field(default=60000, gt=0)
    request_rate_limit_max_requests: int = Field(default=120, gt=0)
    rate_limit_state_ttl_ms: int = Field(default=300000, gt=0)
    rate_limit_max_tracked_clients: int = Field(default=10000, gt=0)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @field_validator("bridge_api_key", "actual_password")
    @classmethod
    def _not_blank(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value():
            raise ValueError("must not be empty")
        return value

    @field_validator("actual_server_url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return value.rstrip("/")

    @model_validator(mode="after")
    def _configured_mode_needs_budgets(self) -> "Settings":
        if self.budget_discovery_mode == "configured" and not self.budgets:
            raise ValueError("configured budget discovery mode requires BUDGETS")
        return self


def load_settings(**overrides) -> Settings:
    """Build settings from the environment, wrapping any problem as a ConfigError."""
    try:
        return Settings(**overrides)
    except ValueError as e:
        # pydantic's ValidationError and pydantic-settings' SettingsError are both ValueErrors
        raise ConfigError("Invalid environment configuration", {"reason": str(e)}) from e


@lru_cache()
def get_settings() -> Settings:
    return load_settings()
