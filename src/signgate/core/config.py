"""SignGate configuration: Pydantic model, load, and save."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from signgate.core.constants import (
    AUDIT_RETENTION_DAYS,
    CONFIG_FILENAME,
    DB_FILENAME,
    RATE_LIMIT_MAX_ENTRIES,
    RATE_LIMIT_MAX_REQUESTS,
    RATE_LIMIT_WINDOW_MS,
    SIGNGATE_DIR_NAME,
    VELOCITY_DAILY_LIMIT,
    VELOCITY_HOURLY_LIMIT,
    VELOCITY_WEEKLY_LIMIT,
)
from signgate.core.exceptions import ConfigError, ConfigNotFoundError, InvalidInputError
from signgate.core.models import SignPolicy


def signgate_dir() -> Path:
    """Return the SignGate data directory (~/.signgate), creating it if needed."""
    d = Path.home() / SIGNGATE_DIR_NAME
    d.mkdir(mode=0o700, parents=True, exist_ok=True)
    return d


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------


class DatabaseConfig(BaseModel):
    path: str = ""  # empty → use default


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "text"  # "text" | "json"
    file: str = ""  # empty → stderr only

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v.lower() not in ("text", "json"):
            raise ValueError("Log format must be 'text' or 'json'")
        return v.lower()


class RateLimitConfig(BaseModel):
    window_ms: int = RATE_LIMIT_WINDOW_MS
    max_requests: int = RATE_LIMIT_MAX_REQUESTS
    max_entries: int = RATE_LIMIT_MAX_ENTRIES

    @field_validator("window_ms", "max_requests", "max_entries")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("rate limit values must be >= 1")
        return v


class VelocityConfig(BaseModel):
    enabled: bool = True
    hourly: int = VELOCITY_HOURLY_LIMIT
    daily: int = VELOCITY_DAILY_LIMIT
    weekly: int = VELOCITY_WEEKLY_LIMIT

    @field_validator("hourly", "daily", "weekly")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("velocity limits must be >= 1")
        return v

    @model_validator(mode="after")
    def limits_widen(self) -> VelocityConfig:
        if not (self.hourly <= self.daily <= self.weekly):
            raise ValueError("velocity limits must satisfy hourly <= daily <= weekly")
        return self


class AuditConfig(BaseModel):
    retention_days: int = AUDIT_RETENTION_DAYS
    hmac_key: str = ""  # empty → plain SHA-256 chain; may be a keyring: placeholder

    @field_validator("retention_days")
    @classmethod
    def validate_retention(cls, v: int) -> int:
        if not (1 <= v <= 3650):
            raise ValueError("retention_days must be between 1 and 3650")
        return v


class PolicyConfig(BaseModel):
    global_sign_policy: SignPolicy = SignPolicy.BASIC

    @field_validator("global_sign_policy", mode="before")
    @classmethod
    def parse_policy(cls, v: Any) -> Any:
        """Accept both the policy name and its ordinal."""
        if isinstance(v, str):
            try:
                return SignPolicy.parse(v)
            except InvalidInputError as exc:
                raise ValueError(str(exc)) from exc
        return v


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------


class SignGateConfig(BaseModel):
    """Root SignGate configuration model."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    velocity: VelocityConfig = Field(default_factory=VelocityConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)

    # Computed paths (not stored in config file)
    _config_path: Path | None = None

    @property
    def db_path(self) -> Path:
        if self.database.path:
            return Path(self.database.path).expanduser()
        return signgate_dir() / DB_FILENAME

    @property
    def log_path(self) -> Path | None:
        if self.logging.file:
            return Path(self.logging.file).expanduser()
        return None


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def _config_file_path() -> Path:
    if env_path := os.environ.get("SIGNGATE_CONFIG"):
        return Path(env_path)
    return signgate_dir() / CONFIG_FILENAME


def load_config(path: Path | None = None) -> SignGateConfig:
    """
    Load SignGateConfig from TOML file, overlaid with environment variables.

    Priority (highest to lowest):
      1. Environment variables (SIGNGATE_*)
      2. Config file (~/.signgate/config.toml)
    """
    import tomllib

    cfg_path = path or _config_file_path()

    if not cfg_path.exists():
        raise ConfigNotFoundError(f"Config file not found: {cfg_path}")

    try:
        with open(cfg_path, "rb") as f:
            data = tomllib.load(f)
    except Exception as exc:
        raise ConfigError(f"Cannot read config file {cfg_path}: {exc}") from exc

    _apply_env_overrides(data)

    try:
        config = SignGateConfig.model_validate(data)
    except Exception as exc:
        raise ConfigError(f"Invalid config at {cfg_path}: {exc}") from exc

    config._config_path = cfg_path
    return config


def load_config_or_default(path: Path | None = None) -> SignGateConfig:
    """Like load_config, but a missing file yields defaults plus env overrides."""
    try:
        return load_config(path)
    except ConfigNotFoundError:
        data: dict[str, Any] = {}
        _apply_env_overrides(data)
        try:
            return SignGateConfig.model_validate(data)
        except Exception as exc:
            raise ConfigError(f"Invalid SIGNGATE_* environment override: {exc}") from exc


def _apply_env_overrides(data: dict[str, Any]) -> None:
    """Overlay SIGNGATE_* environment variables onto the parsed TOML data."""
    if db := os.environ.get("SIGNGATE_DB_PATH"):
        data.setdefault("database", {})["path"] = db
    if level := os.environ.get("SIGNGATE_LOG_LEVEL"):
        data.setdefault("logging", {})["level"] = level
    if key := os.environ.get("SIGNGATE_AUDIT_HMAC_KEY"):
        data.setdefault("audit", {})["hmac_key"] = key
    if policy := os.environ.get("SIGNGATE_SIGN_POLICY"):
        data.setdefault("policy", {})["global_sign_policy"] = policy


def save_config(config_data: dict[str, Any], path: Path | None = None) -> Path:
    """Write config dict to TOML file with secure permissions (0600)."""
    import tomli_w

    cfg_path = path or _config_file_path()
    cfg_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    tmp_path = cfg_path.with_suffix(".tmp")
    try:
        with open(tmp_path, "wb") as f:
            tomli_w.dump(config_data, f)
        tmp_path.rename(cfg_path)
    except Exception as exc:
        tmp_path.unlink(missing_ok=True)
        raise ConfigError(f"Cannot write config to {cfg_path}: {exc}") from exc

    cfg_path.chmod(0o600)
    return cfg_path
