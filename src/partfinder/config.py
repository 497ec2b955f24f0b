"""
Configuration management for the voice parts finder.

Loads environment variables and provides a strongly-typed configuration object.
Validates value ranges at startup. A missing OpenAI key is not fatal: field
extraction simply reports failures and callers hear "no results".
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Tuple

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

DEFAULT_SPEECH_HINTS = "Toyota, Honda, Camry, Accord, brake pads, oil filter"


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    port: int = 4000
    log_level: str = "INFO"
    cors_origins: Tuple[str, ...] = ("*",)

    # OpenAI (field extraction)
    openai_api_key: str = ""
    openai_model: str = "gpt-3.5-turbo"
    extraction_timeout_seconds: float = 8.0

    # Catalog
    catalog_path: str = "products.json"

    # Call flow
    company_name: str = "Auto Parts Finder"
    speech_language: str = "en-US"
    speech_hints: str = DEFAULT_SPEECH_HINTS
    # Digits 9 and 0 are reserved for quote / hang up, so at most 8 choices.
    max_choices: int = 5
    digit_timeout_seconds: int = 12
    session_ttl_seconds: float = 3600.0

    def validate(self) -> None:
        """Validate configuration values."""
        problems = []

        if not 0 < self.port < 65536:
            problems.append(f"PORT must be between 1 and 65535, got {self.port}")
        if not 1 <= self.max_choices <= 8:
            problems.append(f"MAX_CHOICES must be between 1 and 8, got {self.max_choices}")
        if self.digit_timeout_seconds <= 0:
            problems.append("DIGIT_TIMEOUT_SECONDS must be positive")
        if self.extraction_timeout_seconds <= 0:
            problems.append("EXTRACTION_TIMEOUT_SECONDS must be positive")
        if self.session_ttl_seconds < 0:
            problems.append("SESSION_TTL_SECONDS must be zero (disabled) or positive")
        if not self.catalog_path:
            problems.append("CATALOG_PATH must not be empty")

        if problems:
            raise ConfigError(
                "Invalid configuration:\n" + "\n".join(f"- {p}" for p in problems)
            )

        if not self.openai_api_key:
            logger.warning(
                "OPENAI_API_KEY not set; speech requests will not find any parts",
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            port=self.port,
            log_level=self.log_level,
            openai_model=self.openai_model,
            openai_key_set=bool(self.openai_api_key),
            extraction_timeout_seconds=self.extraction_timeout_seconds,
            catalog_path=self.catalog_path,
            company_name=self.company_name,
            speech_language=self.speech_language,
            max_choices=self.max_choices,
            digit_timeout_seconds=self.digit_timeout_seconds,
            session_ttl_seconds=self.session_ttl_seconds,
            cors_origins=list(self.cors_origins),
        )


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_list(key: str, default: str) -> Tuple[str, ...]:
    raw = os.getenv(key, default)
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        port=_get_int("PORT", 4000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        cors_origins=_get_list("CORS_ORIGINS", "*"),

        # OpenAI
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-3.5-turbo"),
        extraction_timeout_seconds=_get_float("EXTRACTION_TIMEOUT_SECONDS", 8.0),

        # Catalog
        catalog_path=os.getenv("CATALOG_PATH", "products.json"),

        # Call flow
        company_name=os.getenv("COMPANY_NAME", "Auto Parts Finder"),
        speech_language=os.getenv("SPEECH_LANGUAGE", "en-US"),
        speech_hints=os.getenv("SPEECH_HINTS", DEFAULT_SPEECH_HINTS),
        max_choices=_get_int("MAX_CHOICES", 5),
        digit_timeout_seconds=_get_int("DIGIT_TIMEOUT_SECONDS", 12),
        session_ttl_seconds=_get_float("SESSION_TTL_SECONDS", 3600.0),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
