"""Configuration loading: JSON files with ${ENV} substitution, validated by pydantic."""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.circuit_breaker import DomainCircuitBreakerConfig
from utils.error_handling import ConfigurationError


class OrchestratorSettings(BaseModel):
    """Per-attempt behaviour of the scrape orchestrator."""

    model_config = ConfigDict(extra="forbid")

    post_load_delay_ms: int = Field(default=2_000, ge=0)
    navigation_timeout_ms: int = Field(default=30_000, gt=0)
    wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"] = "load"
    # None disables the per-attempt budget.
    attempt_timeout_ms: Optional[int] = Field(default=240_000, gt=0)
    max_retries: int = Field(default=2, ge=0)
    retry_base_delay_ms: int = Field(default=1_000, ge=0)
    concurrency: int = Field(default=3, gt=0)
    behavior_simulation: bool = False
    page_interaction: bool = False
    load_more_selector: Optional[str] = None


class ScraperSettings(BaseModel):
    """Top-level settings file.

    Interaction sections stay plain mappings here; they are clamped and
    checked when scrape options are built from them.
    """

    model_config = ConfigDict(extra="ignore")

    circuit_breaker: DomainCircuitBreakerConfig = Field(
        default_factory=DomainCircuitBreakerConfig
    )
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    network_idle: Dict[str, Any] = Field(default_factory=dict)
    scroll: Dict[str, Any] = Field(default_factory=dict)
    load_more: Dict[str, Any] = Field(default_factory=dict)
    captcha: Optional[Dict[str, Any]] = None
    captcha_fallback: Optional[Dict[str, Any]] = None
    browser_pooling: Dict[str, Any] = Field(default_factory=dict)
    playwright_options: Dict[str, Any] = Field(default_factory=dict)
    log_settings: Dict[str, Any] = Field(default_factory=dict)


class ConfigLoader:
    """Centralized configuration loader with caching and validation."""

    ENV_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._config_cache: Dict[str, Dict[str, Any]] = {}
        self._missing_env_vars: set[str] = set()

    def load_config(self, config_path: str) -> Dict[str, Any]:
        """Load and cache JSON configuration with unified error handling.

        Args:
            config_path: Path to configuration file

        Returns:
            Configuration dictionary

        Raises:
            ConfigurationError: If file not found or JSON invalid
        """
        config_path = str(config_path)
        if config_path in self._config_cache:
            return self._config_cache[config_path]

        config_file = Path(config_path)
        if not config_file.exists():
            error_msg = f"Configuration file not found: {config_path}"
            self.logger.error(error_msg)
            raise ConfigurationError(error_msg)

        try:
            with open(config_file, "r", encoding="utf-8") as f:
                config = json.load(f)
        except json.JSONDecodeError as e:
            error_msg = f"Invalid JSON in configuration {config_path}: {e}"
            self.logger.error(error_msg)
            raise ConfigurationError(error_msg) from e
        except OSError as e:
            error_msg = f"Error reading configuration {config_path}: {e}"
            self.logger.error(error_msg)
            raise ConfigurationError(error_msg) from e

        if not isinstance(config, dict):
            raise ConfigurationError(
                f"Configuration root must be an object: {config_path}"
            )

        config = self._substitute_env_variables(config)
        self._config_cache[config_path] = config
        self.logger.debug(f"Configuration loaded successfully: {config_path}")
        return config

    def load_settings(self, config_path: Optional[str] = None) -> ScraperSettings:
        """Load a settings file into ``ScraperSettings``; no path gives defaults."""
        raw = self.load_config(config_path) if config_path else {}
        return self.parse_settings(raw)

    def parse_settings(self, raw: Dict[str, Any]) -> ScraperSettings:
        try:
            return ScraperSettings.model_validate(raw)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()
            )
            error_msg = f"Invalid settings: {problems}"
            self.logger.error(error_msg)
            raise ConfigurationError(error_msg) from e

    def get_nested_value(
        self, config: Dict[str, Any], key_path: str, default: Any = None
    ) -> Any:
        """Get nested configuration value using dot notation.

        Example:
            >>> config = {'orchestrator': {'concurrency': 3}}
            >>> loader.get_nested_value(config, 'orchestrator.concurrency')
            3
        """
        value = config
        for key in key_path.split("."):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def clear_cache(self, config_path: Optional[str] = None) -> None:
        if config_path:
            self._config_cache.pop(str(config_path), None)
        else:
            self._config_cache.clear()
            self._missing_env_vars.clear()
        self.logger.debug(f"Configuration cache cleared: {config_path or 'all'}")

    def _substitute_env_variables(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: self._substitute_env_variables(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._substitute_env_variables(item) for item in value]
        if isinstance(value, str):

            def replace(match: re.Match[str]) -> str:
                env_name = match.group(1)
                env_value = os.getenv(env_name)
                if env_value is None:
                    if env_name not in self._missing_env_vars:
                        self.logger.warning(
                            "Environment variable %s is not set; substituting empty string",
                            env_name,
                        )
                        self._missing_env_vars.add(env_name)
                    return ""
                return env_value

            return self.ENV_PATTERN.sub(replace, value)
        return value


# Global instance for application-wide use
config_loader = ConfigLoader()


def load_config(config_path: str = "config/settings.json") -> Dict[str, Any]:
    return config_loader.load_config(config_path)


def load_settings(config_path: Optional[str] = None) -> ScraperSettings:
    return config_loader.load_settings(config_path)


def get_config_value(config: Dict[str, Any], key_path: str, default: Any = None) -> Any:
    return config_loader.get_nested_value(config, key_path, default)
