"""Centralised configuration using pydantic-settings.

All tunables (fuzzy thresholds, confidence factors, marker styling, logging)
are read through the Settings class. Consumers call ``get_settings()`` to
obtain a cached, validated instance. Tests construct ``Settings(_env_file=None,
...)`` or the sub-models directly for isolation.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# src/chatmarks/config.py  ->  parent x3  ->  project root
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


# ---------------------------------------------------------------------------
# Sub-models (one per configuration domain)
# ---------------------------------------------------------------------------
class AnchorConfig(BaseModel):
    """Anchor capture and resolution tuning.

    The fuzzy threshold and search window trade false positives against
    false negatives, so both are exposed rather than hard-coded.
    """

    context_length: int = Field(default=50, ge=0)

    # Capture-time confidence penalties
    tiny_selection_length: int = 4
    tiny_selection_penalty: float = 0.25
    short_selection_length: int = 20
    short_selection_penalty: float = 0.05
    long_selection_length: int = 1000
    long_selection_penalty: float = 0.1
    missing_path_penalty: float = 0.3
    missing_context_penalty: float = 0.1

    # Resolution-time confidence factors
    offset_factor: float = Field(default=0.85, gt=0, le=1)
    whitespace_factor: float = Field(default=0.95, gt=0, le=1)
    context_factor: float = Field(default=0.65, gt=0, le=1)
    approximate_factor: float = Field(default=0.5, gt=0, le=1)
    checksum_penalty: float = Field(default=0.9, gt=0, le=1)

    # Approximate matching bounds
    fuzzy_threshold: float = Field(default=0.8, gt=0, le=1)
    search_window: int = Field(default=500, ge=0)
    max_pattern_length: int = Field(default=256, ge=1)

    # Seconds the cascade may spend before giving up; None disables the budget
    max_resolution_time: float | None = Field(default=0.05, gt=0)
    metrics_history: int = Field(default=100, ge=1)

    @model_validator(mode="after")
    def _selection_lengths_ordered(self) -> AnchorConfig:
        if not (
            self.tiny_selection_length
            <= self.short_selection_length
            <= self.long_selection_length
        ):
            msg = "selection length thresholds must satisfy tiny <= short <= long"
            raise ValueError(msg)
        return self


class RenderConfig(BaseModel):
    """Highlight marker and renderer configuration."""

    marker_tag: str = "mark"
    base_class: str = "chatmarks-highlight"
    flash_class: str = "chatmarks-highlight-new"
    default_color: str = "#ffeb3b"
    flash_duration: float = Field(default=0.6, ge=0)
    metrics_history: int = Field(default=100, ge=1)
    container_attribute: str = "data-message-id"


class LoggingConfig(BaseModel):
    """Logging destinations for ``configure_logging``."""

    level: str = "INFO"
    log_dir: Path = Path("logs")
    file_logging: bool = False


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------
class Settings(BaseSettings):
    """Chatmarks settings with automatic .env loading and type validation.

    Environment variables use the ``CHATMARKS_`` prefix and a double-underscore
    delimiter for nesting: ``CHATMARKS_ANCHOR__FUZZY_THRESHOLD``,
    ``CHATMARKS_RENDER__FLASH_DURATION``, ``CHATMARKS_LOGGING__LEVEL``.
    """

    model_config = SettingsConfigDict(
        env_file=_PROJECT_ROOT / ".env",
        env_prefix="CHATMARKS_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    anchor: AnchorConfig = AnchorConfig()
    render: RenderConfig = RenderConfig()
    logging: LoggingConfig = LoggingConfig()


# ---------------------------------------------------------------------------
# Singleton access
# ---------------------------------------------------------------------------
@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance.

    Call ``get_settings.cache_clear()`` in tests to reset.
    """
    settings = Settings()

    env_file = settings.model_config.get("env_file")
    if env_file is not None and Path(str(env_file)).is_file():
        logger.info("Settings loaded .env from: %s", env_file)
    else:
        logger.debug("Settings: no .env file found, using env vars and defaults")

    return settings
