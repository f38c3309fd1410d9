"""Configuration utilities for the analytics core."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import InvalidConfiguration
from .risk import DEFAULT_RISK_WEIGHTS, validate_weights


load_dotenv()

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"}


class Settings(BaseSettings):
    """Environment-backed settings; every field reads ``THREATCORE_<NAME>``."""

    model_config = SettingsConfigDict(
        env_prefix="THREATCORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = Field(default="INFO")
    random_seed: Optional[int] = Field(default=None)

    anomaly_interval_seconds: float = Field(default=15.0, gt=0)
    event_interval_seconds: float = Field(default=20.0, gt=0)
    correlation_interval_seconds: float = Field(default=30.0, gt=0)
    risk_interval_seconds: float = Field(default=300.0, gt=0)

    anomaly_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    anomaly_admission_rate: float = Field(default=0.2, ge=0.0, le=1.0)
    anomaly_min_history: int = Field(default=10, ge=1)
    anomaly_history_size: int = Field(default=1000, ge=1)
    anomaly_retention: int = Field(default=100, ge=1)

    event_buffer_size: int = Field(default=1000, ge=1)
    correlation_retention: int = Field(default=50, ge=1)

    risk_prediction_jitter: float = Field(default=0.1, ge=0.0, le=1.0)
    risk_trend_retention: int = Field(default=100, ge=1)
    risk_weights: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_RISK_WEIGHTS))

    indicator_feed_url: Optional[str] = Field(default=None)
    indicator_cache_ttl: int = Field(default=900, ge=0)

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_level(cls, value):
        level = str(value).strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"Unknown log level {value!r}")
        return level

    @field_validator("risk_weights")
    @classmethod
    def check_risk_weights(cls, value):
        try:
            return validate_weights(value)
        except InvalidConfiguration as exc:
            raise ValueError(str(exc)) from exc

    @field_validator("indicator_feed_url", mode="before")
    @classmethod
    def optional_url(cls, value):
        if value in (None, ""):
            return None
        return str(value).strip()


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


__all__ = ["Settings", "configure_logging", "get_settings"]
