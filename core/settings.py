"""Centralised ledger configuration and environment validation."""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping, Optional, Tuple

from pydantic import AliasChoices, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.db.postgres import mask_dsn

logger = logging.getLogger("settings")


_SECRET_FIELDS = {
    "DATABASE_URL",
}

_LEDGER_BACKENDS = {"postgres", "memory"}
_SSL_MODES = {"disable", "allow", "prefer", "require", "verify-ca", "verify-full"}


def _mask(value: Optional[str]) -> str:
    if not value:
        return ""
    text = str(value).strip()
    if "://" in text:
        try:
            return mask_dsn(text)
        except Exception:
            return "***"
    if len(text) <= 4:
        return text
    return f"***{text[-4:]}"


class Settings(BaseSettings):
    """Ledger settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        populate_by_name=True,
    )

    DATABASE_URL: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL", "POSTGRES_DSN"),
    )
    LEDGER_BACKEND: str = Field(default="postgres")
    FORBID_MEMORY_DB: bool = Field(default=False)
    APP_ENV: str = Field(default="prod")

    LOG_LEVEL: str = Field(default="INFO")
    LOG_JSON: bool = Field(default=True)
    MAX_IN_LOG_BODY: int = Field(default=2048, ge=256, le=65536)

    PG_POOL_MIN: int = Field(default=1, ge=0, le=100)
    PG_POOL_MAX: int = Field(default=10, ge=1, le=200)
    PG_POOL_MAX_IDLE: int = Field(default=30, ge=0, le=3600)
    PG_POOL_TIMEOUT: float = Field(default=10.0, ge=0.5, le=120.0)
    PG_STATEMENT_TIMEOUT_MS: int = Field(default=15_000, ge=100, le=600_000)
    PG_SSLMODE: str = Field(default="require")
    PG_APPLICATION_NAME: str = Field(default="credit-ledger")

    DB_RETRY_ATTEMPTS: int = Field(default=3, ge=1, le=10)
    DB_RETRY_BACKOFF: float = Field(default=0.2, ge=0.0, le=5.0)

    GUEST_FREE_PAGES: int = Field(default=2, ge=0, le=10_000)
    DEFAULT_SIGNUP_PAGES: int = Field(default=2, ge=0, le=10_000)
    EARLY_ADOPTER_PAGES: int = Field(default=50, ge=0, le=10_000)
    EARLY_ADOPTER_LIMIT: int = Field(default=30, ge=0, le=1_000_000)
    MAX_PAGES_PER_ACTION: int = Field(default=500, ge=1, le=1_000_000)
    TEMP_DEVICE_PREFIXES: str = Field(default="google_,email_")

    @field_validator("DATABASE_URL", mode="before")
    def _strip_optional(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("LOG_LEVEL", mode="before")
    def _normalize_level(cls, value: Any) -> str:
        if value is None:
            return "INFO"
        text = str(value).strip().upper()
        if text not in logging._nameToLevel:  # type: ignore[attr-defined]
            return "INFO"
        return text

    @field_validator("LEDGER_BACKEND", mode="before")
    def _normalize_backend(cls, value: Any) -> str:
        text = str(value or "postgres").strip().lower()
        if text not in _LEDGER_BACKENDS:
            raise ValueError(
                f"LEDGER_BACKEND must be one of {sorted(_LEDGER_BACKENDS)}, got '{text}'"
            )
        return text

    @field_validator("PG_SSLMODE", mode="before")
    def _normalize_sslmode(cls, value: Any) -> str:
        text = str(value or "require").strip().lower()
        if text not in _SSL_MODES:
            raise ValueError(f"PG_SSLMODE '{text}' is not a libpq sslmode")
        return text

    @field_validator("APP_ENV", "PG_APPLICATION_NAME", mode="before")
    def _strip_required(cls, value: Any) -> str:
        return str(value or "").strip()

    @model_validator(mode="after")
    def _post_init(self) -> "Settings":
        if self.PG_POOL_MIN > self.PG_POOL_MAX:
            msg = (
                f"PG_POOL_MIN ({self.PG_POOL_MIN}) must not exceed "
                f"PG_POOL_MAX ({self.PG_POOL_MAX})"
            )
            logger.error(msg)
            raise RuntimeError(msg)

        if self.LEDGER_BACKEND == "memory" and self.FORBID_MEMORY_DB:
            msg = "LEDGER_BACKEND=memory is forbidden by FORBID_MEMORY_DB"
            logger.error(msg)
            raise RuntimeError(msg)

        if not self.APP_ENV:
            self.APP_ENV = "prod"
        if not self.PG_APPLICATION_NAME:
            self.PG_APPLICATION_NAME = "credit-ledger"
        return self

    @property
    def temp_device_prefixes(self) -> Tuple[str, ...]:
        parts = (item.strip() for item in self.TEMP_DEVICE_PREFIXES.split(","))
        return tuple(part for part in parts if part)

    def configuration_summary(self) -> Mapping[str, Any]:
        keys: MutableMapping[str, Any] = {
            "APP_ENV": self.APP_ENV,
            "LEDGER_BACKEND": self.LEDGER_BACKEND,
            "PG_POOL_MIN": self.PG_POOL_MIN,
            "PG_POOL_MAX": self.PG_POOL_MAX,
            "PG_SSLMODE": self.PG_SSLMODE,
            "GUEST_FREE_PAGES": self.GUEST_FREE_PAGES,
            "DEFAULT_SIGNUP_PAGES": self.DEFAULT_SIGNUP_PAGES,
            "EARLY_ADOPTER_PAGES": self.EARLY_ADOPTER_PAGES,
            "EARLY_ADOPTER_LIMIT": self.EARLY_ADOPTER_LIMIT,
        }
        for secret in sorted(_SECRET_FIELDS):
            value = getattr(self, secret, None)
            keys[secret] = _mask(value)
        return keys

    def critical_variables(self) -> Mapping[str, str]:
        data: MutableMapping[str, str] = {}
        for field in ("DATABASE_URL", "LEDGER_BACKEND", "APP_ENV"):
            value = getattr(self, field, "") or ""
            data[field] = _mask(value) if field in _SECRET_FIELDS else str(value)
        return data


def _load_settings() -> Settings:
    try:
        return Settings()
    except ValidationError as exc:  # pragma: no cover - fail fast
        errors = []
        for entry in exc.errors():
            loc = "::".join(str(part) for part in entry.get("loc", ()))
            msg = entry.get("msg", "invalid value")
            errors.append(f"{loc}: {msg}")
        message = "Invalid configuration: " + ", ".join(errors)
        logger.error(message)
        raise RuntimeError(message) from exc


settings = _load_settings()


def reload_settings() -> Settings:
    """Reload settings from the environment and update module globals."""

    global settings
    settings = _load_settings()
    return settings


__all__ = [
    "Settings",
    "settings",
    "reload_settings",
]
