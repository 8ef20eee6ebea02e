"""Configuration management for artrelay.

Settings are loaded from multiple sources, lowest precedence first:
- Built-in defaults
- YAML/TOML configuration file
- Environment variables (``ARTRELAY_<SECTION>_<KEY>``, optionally from .env)

The core only reads these values; the caller owns them.
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import tomllib  # Python 3.11+
except ImportError:
    import tomli as tomllib  # type: ignore

import yaml
from dotenv import load_dotenv

from artrelay.core.data_models import AddressingMode
from artrelay.core.proxy import DEFAULT_PROXIES

ENV_PREFIX = "ARTRELAY_"

DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "file": "logs/artrelay.log",
        "json": False,
    },
    "api": {
        "base_url": "https://collectionapi.metmuseum.org/public/collection/v1",
        "request_timeout": 15.0,
        "user_agent": "artrelay/0.1",
    },
    "proxies": DEFAULT_PROXIES,
    "proxy": {
        "probe_url": "https://images.metmuseum.org/CRDImages/ep/web-large/DT1567.jpg",
        "probe_timeout": 3.0,
        "probe_interval": 300.0,
    },
    "retry": {
        "max_retries": 3,
        "base_delay": 1.0,
        "max_delay": 30.0,
        "jitter_factor": 0.3,
    },
    "cache": {
        "path": "artrelay-cache.db",
        "prefix": "artrelay",
        "version": "1",
        "max_static_items": 100,
        "max_cached_artworks": 50,
        "max_cached_images": 50,
        "media_max_bytes": 5 * 1024 * 1024,
        "refresh_batch": 5,
        "cleanup_interval": 3600.0,
    },
    "favorites": {
        "path": "artrelay-favorites.db",
        "max_favorites": 100,
        "thumbnail_max_size": 300,
        "thumbnail_quality": 0.85,
        "thumbnail_timeout": 5.0,
    },
    "bridge": {"reply_timeout": 2.0},
}


@dataclass
class ValidationResult:
    """Errors and warnings collected by ``Config.validate``."""

    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        """Record a problem and mark the result invalid."""
        self.errors.append(message)
        self.is_valid = False

    def add_warning(self, message: str) -> None:
        """Record a non-fatal problem."""
        self.warnings.append(message)

    def __str__(self) -> str:
        """Render errors and warnings as an indented list."""
        lines = []
        if self.errors:
            lines.append("Errors:")
            lines.extend(f"  - {e}" for e in self.errors)
        if self.warnings:
            lines.append("Warnings:")
            lines.extend(f"  - {w}" for w in self.warnings)
        if not lines:
            return "Configuration is valid."
        return "\n".join(lines)


def _coerce(raw: str, reference: Any) -> Any:
    """Convert an environment string to the type of the configured value."""
    if isinstance(reference, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(reference, int):
        try:
            return int(raw)
        except ValueError:
            return raw
    if isinstance(reference, float):
        try:
            return float(raw)
        except ValueError:
            return raw
    return raw


class Config:
    """Configuration manager for artrelay."""

    def __init__(
        self,
        config_file: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
        load_env_file: bool = True,
    ):
        """
        Initialize configuration.

        Args:
            config_file: YAML or TOML file; searched for when omitted
            overrides: Dot-notation values applied after loading, e.g.
                ``{"retry.max_retries": 5}``
            load_env_file: Whether to read a ``.env`` file from the working directory
        """
        self.logger = logging.getLogger(self.__class__.__name__)
        self._config: Dict[str, Any] = {}

        if load_env_file:
            env_path = Path(".env")
            if env_path.exists():
                load_dotenv(env_path)
                self.logger.info("Read environment overrides from %s", env_path)

        if config_file:
            self._load_config_file(config_file)
        else:
            self._auto_load_config()

        self._load_defaults()

        for key, value in (overrides or {}).items():
            self.set(key, value)

    def _load_config_file(self, config_file: str) -> None:
        """Read ``config_file``, picking the parser from its suffix."""
        config_path = Path(config_file)

        if not config_path.exists():
            self.logger.warning("Config file not found: %s", config_file)
            return

        try:
            with open(config_path, "rb") as f:
                if config_file.endswith((".yaml", ".yml")):
                    self._config = yaml.safe_load(f) or {}
                    self.logger.info("Loaded YAML config from %s", config_file)
                elif config_file.endswith(".toml"):
                    self._config = tomllib.load(f)
                    self.logger.info("Loaded TOML config from %s", config_file)
                else:
                    self.logger.error("Unsupported config format: %s", config_file)
        except (OSError, yaml.YAMLError, tomllib.TOMLDecodeError) as e:
            self.logger.error("Failed to load config file %s: %s", config_file, e)

    def _auto_load_config(self) -> None:
        """Load the first artrelay.{yaml,yml,toml} found in ./config or the working directory."""
        search_dirs = (Path("config"), Path("."))
        candidates = [
            directory / f"artrelay{suffix}"
            for directory in search_dirs
            for suffix in (".yaml", ".yml", ".toml")
        ]

        for candidate in candidates:
            if candidate.exists():
                self._load_config_file(str(candidate))
                return

        self.logger.debug("No artrelay config file found; using built-in defaults")

    def _load_defaults(self) -> None:
        """Merge defaults under the loaded config (loaded config takes precedence)."""
        for key, value in copy.deepcopy(DEFAULTS).items():
            if key not in self._config:
                self._config[key] = value
            elif isinstance(value, dict):
                self._config[key] = {**value, **(self._config.get(key) or {})}

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value.

        Supports dot notation for nested keys: "retry.max_retries".
        Environment variables take precedence and are coerced to the type
        of the configured value.

        Args:
            key: Dotted path such as ``"retry.max_retries"``
            default: Returned when the path is missing

        Returns:
            The (possibly env-overridden) value
        """
        value: Any = self._config
        found = True
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                found = False
                break

        env_value = os.getenv(ENV_PREFIX + key.upper().replace(".", "_"))
        if env_value is not None:
            return _coerce(env_value, value if found else default)

        return value if found else default

    def set(self, key: str, value: Any) -> None:
        """
        Override a value in memory, creating intermediate sections.

        Args:
            key: Dotted path such as ``"retry.max_retries"``
            value: Value to set
        """
        keys = key.split(".")
        config = self._config

        for k in keys[:-1]:
            if not isinstance(config.get(k), dict):
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value
        self.logger.debug("Set config %s = %r", key, value)

    def get_section(self, section: str) -> Dict[str, Any]:
        """
        Raw dict for one top-level section, without env overrides.

        Args:
            section: Section name (e.g., "cache", "retry")

        Returns:
            The section, or an empty dict
        """
        return self._config.get(section, {})

    def to_dict(self) -> Dict[str, Any]:
        """
        Deep copy of the merged settings.

        Returns:
            Nested dict of every section
        """
        return copy.deepcopy(self._config)

    def validate(self) -> ValidationResult:
        """
        Check ranges, proxy entries and paths.

        Returns:
            Everything found; ``is_valid`` is False if any error was recorded
        """
        result = ValidationResult(is_valid=True)

        log_level = str(self.get("logging.level", "INFO"))
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if log_level.upper() not in valid_levels:
            result.add_error(
                f"Invalid logging level '{log_level}'. Must be one of: {', '.join(valid_levels)}"
            )

        log_file = self.get("logging.file", "")
        if log_file:
            log_dir = Path(log_file).parent
            if not log_dir.exists():
                result.add_warning(f"Log directory {log_dir} will be created on first write")

        # Network
        if not self.get("api.base_url"):
            result.add_error("api.base_url must be set")
        for key in ("api.request_timeout", "proxy.probe_timeout", "bridge.reply_timeout"):
            value = self.get(key)
            if not isinstance(value, (int, float)) or value <= 0:
                result.add_error(f"{key} must be a positive number")

        proxies = self.get("proxies") or []
        if not proxies:
            result.add_warning("No proxies configured, requests go directly to the API")
        valid_modes = {mode.value for mode in AddressingMode}
        for index, proxy in enumerate(proxies):
            mode = proxy.get("mode", "query")
            if mode not in valid_modes:
                result.add_error(f"proxies[{index}].mode '{mode}' must be one of {sorted(valid_modes)}")
            if mode != "direct" and not proxy.get("url"):
                result.add_error(f"proxies[{index}].url must be set")

        # Retry
        max_retries = self.get("retry.max_retries", 3)
        if not isinstance(max_retries, int) or max_retries < 1:
            result.add_error("retry.max_retries must be a positive integer")
        base_delay = self.get("retry.base_delay", 1.0)
        max_delay = self.get("retry.max_delay", 30.0)
        if not isinstance(base_delay, (int, float)) or base_delay < 0:
            result.add_error("retry.base_delay must be a non-negative number")
        elif not isinstance(max_delay, (int, float)) or max_delay < base_delay:
            result.add_error("retry.max_delay must be a number >= retry.base_delay")
        jitter = self.get("retry.jitter_factor", 0.3)
        if not isinstance(jitter, (int, float)) or not 0 <= jitter < 1:
            result.add_error("retry.jitter_factor must be a number in [0, 1)")

        # Storage
        for key in (
            "cache.max_static_items",
            "cache.max_cached_artworks",
            "cache.max_cached_images",
            "cache.media_max_bytes",
            "cache.refresh_batch",
            "favorites.max_favorites",
            "favorites.thumbnail_max_size",
        ):
            value = self.get(key)
            if not isinstance(value, int) or value < 1:
                result.add_error(f"{key} must be a positive integer")

        quality = self.get("favorites.thumbnail_quality", 0.85)
        if not isinstance(quality, (int, float)) or not 0 < quality <= 1:
            result.add_error("favorites.thumbnail_quality must be a number in (0, 1]")

        for key in ("cache.path", "favorites.path"):
            db_path = self.get(key)
            if db_path:
                db_dir = Path(db_path).parent
                if str(db_dir) != "." and not db_dir.exists():
                    result.add_warning(f"Database directory {db_dir} is missing")

        if not result.is_valid:
            for error in result.errors:
                self.logger.error("Invalid setting: %s", error)
        for warning in result.warnings:
            self.logger.warning("Questionable setting: %s", warning)

        return result

    def validate_and_raise(self) -> None:
        """
        Like ``validate`` but fatal when any error was found.

        Raises:
            ValueError: listing every validation error
        """
        result = self.validate()
        if not result.is_valid:
            raise ValueError(f"Invalid configuration:\n{result}")
