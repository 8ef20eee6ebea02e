"""Tests for the configuration system."""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest
import yaml

from artrelay.core.config import DEFAULTS, Config, ValidationResult


class TestConfig:
    """Test the Config class."""

    @pytest.fixture
    def temp_yaml_config(self) -> str:
        """Create a temporary YAML config file."""
        config_data = {
            "logging": {"level": "DEBUG", "file": "test.log"},
            "retry": {"max_retries": 5, "base_delay": 0.5},
            "cache": {"version": "2"},
        }

        with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
            yaml.dump(config_data, f)
            temp_path = f.name

        yield temp_path

        Path(temp_path).unlink(missing_ok=True)

    def test_config_initialization(self) -> None:
        """Test that config initializes with defaults."""
        config = Config(load_env_file=False)

        assert config.get("logging.level") == "INFO"
        assert config.get("api.request_timeout") == 15.0
        assert config.get("retry.max_retries") == 3
        assert config.get("cache.media_max_bytes") == 5 * 1024 * 1024
        assert config.get("favorites.max_favorites") == 100
        assert config.get("bridge.reply_timeout") == 2.0

    def test_load_yaml_config(self, temp_yaml_config: str) -> None:
        """Test loading configuration from YAML file."""
        config = Config(temp_yaml_config, load_env_file=False)

        assert config.get("logging.level") == "DEBUG"
        assert config.get("retry.max_retries") == 5
        assert config.get("retry.base_delay") == 0.5
        # Unspecified keys in a given section keep their defaults
        assert config.get("retry.max_delay") == 30.0
        assert config.get("cache.version") == "2"
        assert config.get("cache.prefix") == "artrelay"

    def test_load_toml_config(self, tmp_path: Path) -> None:
        """Test loading configuration from TOML file."""
        config_file = tmp_path / "artrelay.toml"
        config_file.write_text('[api]\nrequest_timeout = 5.0\n\n[favorites]\nmax_favorites = 10\n')

        config = Config(str(config_file), load_env_file=False)

        assert config.get("api.request_timeout") == 5.0
        assert config.get("favorites.max_favorites") == 10

    def test_get_with_default(self) -> None:
        """Test getting config value with default."""
        config = Config(load_env_file=False)

        assert config.get("logging.level", "DEFAULT") == "INFO"
        assert config.get("nonexistent.key", "DEFAULT") == "DEFAULT"

    def test_set_config_value(self) -> None:
        """Test setting config value at runtime."""
        config = Config(load_env_file=False)

        config.set("retry.max_retries", 7)
        assert config.get("retry.max_retries") == 7

        config.set("new.nested.value", "test")
        assert config.get("new.nested.value") == "test"

    def test_overrides(self) -> None:
        """Test dot-notation overrides passed at construction."""
        config = Config(overrides={"cache.path": ":memory:", "retry.jitter_factor": 0.0}, load_env_file=False)

        assert config.get("cache.path") == ":memory:"
        assert config.get("retry.jitter_factor") == 0.0

    def test_environment_variable_override(self, monkeypatch) -> None:
        """Test that environment variables override config values and are coerced."""
        monkeypatch.setenv("ARTRELAY_RETRY_MAX_RETRIES", "6")
        monkeypatch.setenv("ARTRELAY_API_REQUEST_TIMEOUT", "2.5")
        monkeypatch.setenv("ARTRELAY_LOGGING_JSON", "true")

        config = Config(load_env_file=False)

        assert config.get("retry.max_retries") == 6
        assert config.get("api.request_timeout") == 2.5
        assert config.get("logging.json") is True

    def test_get_section(self) -> None:
        """Test getting entire config section."""
        config = Config(load_env_file=False)

        cache = config.get_section("cache")
        assert cache["prefix"] == "artrelay"
        assert cache["max_cached_images"] == 50

    def test_proxies_default(self) -> None:
        """Test that the default relay list has a query and a path endpoint."""
        config = Config(load_env_file=False)

        proxies = config.get("proxies")
        assert [proxy["mode"] for proxy in proxies] == ["query", "path"]

    def test_to_dict_is_a_copy(self) -> None:
        """Test converting config to dictionary."""
        config = Config(load_env_file=False)

        config_dict = config.to_dict()
        config_dict["retry"]["max_retries"] = 99

        assert config.get("retry.max_retries") == 3
        assert set(DEFAULTS).issubset(config_dict)

    def test_invalid_config_file(self) -> None:
        """Test handling of a missing config file."""
        config = Config("/nonexistent/path/config.yaml", load_env_file=False)

        assert config.get("logging.level") == "INFO"

    def test_malformed_yaml(self, tmp_path: Path) -> None:
        """Test that a malformed YAML file falls back to defaults."""
        config_file = tmp_path / "broken.yaml"
        config_file.write_text("retry: [unclosed\n")

        config = Config(str(config_file), load_env_file=False)

        assert config.get("retry.max_retries") == 3

    def test_unsupported_format(self, tmp_path: Path) -> None:
        """Test handling of unsupported config format."""
        config_file = tmp_path / "config.txt"
        config_file.write_text("retry.max_retries = 5")

        config = Config(str(config_file), load_env_file=False)

        assert config.get("retry.max_retries") == 3


class TestConfigValidation:
    """Test configuration validation."""

    def test_defaults_are_valid(self) -> None:
        """Test that the built-in defaults validate."""
        config = Config(load_env_file=False)

        result = config.validate()

        assert result.is_valid, str(result)

    def test_invalid_log_level(self) -> None:
        """Test that an unknown log level is an error."""
        config = Config(overrides={"logging.level": "LOUD"}, load_env_file=False)

        result = config.validate()

        assert not result.is_valid
        assert any("logging level" in error for error in result.errors)

    @pytest.mark.parametrize(
        "key,value",
        [
            ("api.request_timeout", 0),
            ("retry.max_retries", 0),
            ("retry.jitter_factor", 1.0),
            ("cache.max_cached_images", 0),
            ("favorites.thumbnail_quality", 1.5),
        ],
    )
    def test_out_of_range_values(self, key: str, value) -> None:
        """Test that out-of-range values are errors."""
        config = Config(overrides={key: value}, load_env_file=False)

        result = config.validate()

        assert not result.is_valid
        assert any(key in error for error in result.errors)

    def test_max_delay_below_base_delay(self) -> None:
        """Test that max_delay must not be below base_delay."""
        config = Config(
            overrides={"retry.base_delay": 10.0, "retry.max_delay": 5.0}, load_env_file=False
        )

        result = config.validate()

        assert any("max_delay" in error for error in result.errors)

    def test_unknown_proxy_mode(self) -> None:
        """Test that an unknown addressing mode is an error."""
        config = Config(
            overrides={"proxies": [{"name": "odd", "url": "https://relay.example", "mode": "tunnel"}]},
            load_env_file=False,
        )

        result = config.validate()

        assert any("mode" in error for error in result.errors)

    def test_no_proxies_is_a_warning(self) -> None:
        """Test that an empty proxy list only warns."""
        config = Config(overrides={"proxies": []}, load_env_file=False)

        result = config.validate()

        assert result.is_valid
        assert any("No proxies" in warning for warning in result.warnings)

    def test_validate_and_raise(self) -> None:
        """Test that validate_and_raise raises on errors."""
        config = Config(overrides={"retry.max_retries": -1}, load_env_file=False)

        with pytest.raises(ValueError, match="Invalid configuration"):
            config.validate_and_raise()

    def test_validation_result_str(self) -> None:
        """Test ValidationResult formatting."""
        result = ValidationResult(is_valid=True)
        assert str(result) == "Configuration is valid."

        result.add_warning("careful")
        result.add_error("broken")

        text = str(result)
        assert not result.is_valid
        assert "Errors:" in text and "broken" in text
        assert "Warnings:" in text and "careful" in text
