"""Shared pytest fixtures for chatmarks tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from chatmarks.config import AnchorConfig, RenderConfig, get_settings

if TYPE_CHECKING:
    from collections.abc import Generator


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> Generator[None]:
    """Each test sees settings built from its own environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def anchor_config() -> AnchorConfig:
    return AnchorConfig()


@pytest.fixture
def render_config() -> RenderConfig:
    # Short flash so timer tests finish quickly
    return RenderConfig(flash_duration=0.05)
