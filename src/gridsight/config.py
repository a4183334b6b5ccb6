"""Central Configuration System for GridSight.

This module is the single source of truth for engine configuration. Engine
components receive their settings by constructor injection; ``get_config()``
is only a convenience for whoever wires the system together.

The configuration system supports:
- Multi-source configuration (environment variables > config file > defaults)
- API key lookup (environment > system keyring)
- Per-quality-level atlas encoding settings

Example:
    >>> from gridsight.config import get_config
    >>> cfg = get_config()
    >>> cfg.atlas.threshold
    3

Config File Format (YAML):
    ```yaml
    model:
      model_name: gemini-2.0-flash
      temperature: 0.1
      max_retries: 3
      retry_base_delay: 1.0

    atlas:
      threshold: 3
      canvas_size: 1024
      format: webp
      max_file_size: 2097152

    cache:
      enabled: true
      default_ttl_seconds: 3600

    pricing:
      per_image_base_tokens: 765
      cost_per_token_usd: 0.00001

    max_images_per_request: 50
    log_level: INFO
    ```
"""

from __future__ import annotations

import functools
import logging
import os
from pathlib import Path
from typing import Any, Literal

import keyring
import keyring.errors
import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "gridsight"
KEYRING_USERNAME = "gemini_api_key"
API_KEY_ENV_VARS = ("GEMINI_API_KEY", "GOOGLE_API_KEY")


# =============================================================================
# Exceptions
# =============================================================================


class ConfigError(Exception):
    """Base exception for configuration errors."""

    pass


class ConfigFileError(ConfigError):
    """Raised when a config file exists but cannot be used."""

    pass


class APIKeyNotFoundError(ConfigError):
    """Raised when no API key is found in any configured source."""

    pass


# =============================================================================
# Configuration Models
# =============================================================================


class ModelConfig(BaseModel):
    """Settings for the vision model endpoint.

    Attributes:
        model_name: Gemini model identifier used for every call.
        temperature: Sampling temperature. Low keeps classifications stable.
        max_output_tokens: Maximum tokens in a model response.
        timeout_seconds: Per-request timeout handed to the SDK.
        max_retries: Total attempts per call (first try included).
        retry_base_delay: Base delay for exponential backoff, in seconds.
        low_detail_max_dim: Longest image side sent for detail level "low".
        high_detail_max_dim: Longest image side sent for detail level "high".
    """

    model_name: str = Field(default="gemini-2.0-flash", description="Vision model name.")
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    max_output_tokens: int = Field(default=2000, ge=100, le=32000)
    timeout_seconds: int = Field(default=120, ge=5, le=600)
    max_retries: int = Field(default=3, ge=1, le=10, description="Total attempts per call.")
    retry_base_delay: float = Field(default=1.0, ge=0.0, le=30.0)
    low_detail_max_dim: int = Field(default=512, ge=64)
    high_detail_max_dim: int = Field(default=2048, ge=64)


class AtlasSettings(BaseModel):
    """Settings for atlas construction and the atlas-vs-individual decision.

    Attributes:
        threshold: Minimum image count for which the atlas path is chosen.
        canvas_size: Nominal atlas edge in pixels. Cells are canvas_size // 3.
        cell_quality: JPEG quality for each resized cell, independent of
            the final atlas quality.
        background: RGB fill for unused cells.
        format: Encoding of the final atlas.
        max_file_size: Budget in bytes. Exceeding it triggers one recompression.
        max_concurrency: Upper bound on concurrent per-image fetch/resize.
        quality_levels: Atlas encoding quality per request quality level.
    """

    threshold: int = Field(default=3, ge=1)
    canvas_size: int = Field(default=1024, ge=96)
    cell_quality: int = Field(default=90, ge=1, le=100)
    background: tuple[int, int, int] = (240, 240, 240)
    format: Literal["jpeg", "webp"] = "webp"
    max_file_size: int = Field(default=2 * 1024 * 1024, ge=1)
    max_concurrency: int = Field(default=9, ge=1, le=9)
    quality_levels: dict[str, int] = Field(
        default_factory=lambda: {"fast": 70, "balanced": 85, "high": 95}
    )

    @property
    def cell_size(self) -> int:
        """Edge length of one grid cell in pixels."""
        return self.canvas_size // 3

    def quality_for(self, level: str) -> int:
        """Return the atlas encoding quality for a quality level (default 85)."""
        return self.quality_levels.get(level, self.quality_levels.get("balanced", 85))


class CacheSettings(BaseModel):
    """Settings for the in-process response cache."""

    enabled: bool = True
    default_ttl_seconds: int = Field(default=3600, ge=1)
    sweep_interval_seconds: int = Field(default=300, ge=1)


class PricingSettings(BaseModel):
    """Constants used to estimate what an all-individual run would have cost.

    Note: These are ESTIMATES only. Actual billing may differ.
    """

    per_image_base_tokens: int = Field(default=765, ge=1)
    cost_per_token_usd: float = Field(default=0.00001, ge=0.0)


class AppConfig(BaseSettings):
    """Top-level configuration.

    Configuration priority (highest wins):
    1. Environment variables (GRIDSIGHT_*, nested with ``__``)
    2. Config file (YAML), passed in as init values by ``load_config``
    3. In-code defaults
    """

    model: ModelConfig = Field(default_factory=ModelConfig)
    atlas: AtlasSettings = Field(default_factory=AtlasSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    pricing: PricingSettings = Field(default_factory=PricingSettings)
    max_images_per_request: int = Field(default=50, ge=1)
    debug: bool = False
    log_level: str = "INFO"

    model_config = {
        "env_prefix": "GRIDSIGHT_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
        "extra": "ignore",
        "protected_namespaces": (),
    }

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment first so it overrides file values passed as init kwargs.
        return (env_settings, init_settings, dotenv_settings, file_secret_settings)


# =============================================================================
# Loading
# =============================================================================


def _default_search_paths() -> list[Path]:
    return [
        Path("./gridsight.yaml"),
        Path("./gridsight.yml"),
        Path.home() / ".gridsight" / "config.yaml",
    ]


def _read_config_file(path: Path) -> dict[str, Any]:
    """Read a YAML config file into a dict.

    Raises:
        ConfigFileError: If the file cannot be read or is not a mapping.
    """
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigFileError(f"Failed to read config file {path}: {e}") from e

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigFileError(f"Config file {path} must contain a mapping")
    return loaded


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from file, environment, and defaults.

    If no config file is found, uses defaults and environment only. A
    malformed file logs a warning and is ignored.

    Args:
        path: Optional explicit config file. Searched before default locations.

    Returns:
        Fully-populated AppConfig instance.
    """
    search_paths = ([path] if path is not None else []) + _default_search_paths()
    config_file = next((p for p in search_paths if p.exists()), None)

    file_data: dict[str, Any] = {}
    if config_file is not None:
        try:
            file_data = _read_config_file(config_file)
            logger.debug(f"Loaded config file {config_file}")
        except ConfigFileError as e:
            logger.warning(f"{e}. Using defaults.")

    try:
        return AppConfig(**file_data)
    except ValueError as e:
        logger.warning(f"Error parsing config values: {e}. Using defaults.")
        return AppConfig()


@functools.lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Get the cached configuration singleton."""
    return load_config()


def reset_config() -> None:
    """Clear the configuration cache (used by tests)."""
    get_config.cache_clear()


def get_api_key() -> SecretStr:
    """Return the Gemini API key from the environment or the system keyring.

    Raises:
        APIKeyNotFoundError: If no API key is configured in any source.
    """
    for var in API_KEY_ENV_VARS:
        value = os.environ.get(var, "").strip()
        if value:
            return SecretStr(value)

    try:
        stored = keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
    except keyring.errors.KeyringError as e:
        logger.debug(f"Keyring lookup failed: {type(e).__name__}")
        stored = None

    if stored:
        return SecretStr(stored.strip())

    raise APIKeyNotFoundError(
        "No API key found. Set GEMINI_API_KEY or store one in the system keyring "
        f"under service '{KEYRING_SERVICE}'."
    )
