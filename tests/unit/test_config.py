"""Tests for configuration loading."""

import pytest
import yaml

from recordops.config import Config, RetryConfig, load_config
from recordops.errors import ConfigurationError
from recordops.models import StatusCode


def _write(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data))
    return path


class TestDefaults:
    """Tests for default configuration values."""

    def test_defaults(self):
        config = Config()

        assert config.batch.max_batch_size == 200
        assert config.retry.budget == 3
        assert config.logging.log_format == "console"
        assert StatusCode.NOT_FOUND not in config.retry.retryable_codes
        assert StatusCode.VALIDATION_ERROR in config.retry.retryable_codes

    def test_budget_must_be_positive(self):
        with pytest.raises(ValueError):
            RetryConfig(budget=0)


class TestLoadConfig:
    """Tests for load_config."""

    def test_load_file(self, tmp_path):
        path = _write(
            tmp_path / "settings.yaml",
            {
                "batch": {"max_batch_size": 25},
                "store": {"required_fields": {"account": ["name"]}},
            },
        )

        config = load_config(path)

        assert config.batch.max_batch_size == 25
        assert config.store.required_fields == {"account": ["name"]}

    def test_load_directory(self, tmp_path):
        _write(tmp_path / "recordops.yaml", {"retry": {"budget": 5, "retryable_codes": ["store_unavailable"]}})

        config = load_config(tmp_path)

        assert config.retry.budget == 5
        assert config.retry.retryable_codes == {StatusCode.STORE_UNAVAILABLE}

    def test_environment_overlay(self, tmp_path):
        """Test environment file values win over the main file."""
        _write(
            tmp_path / "recordops.yaml",
            {"environment": "production", "logging": {"log_level": "DEBUG", "log_format": "console"}},
        )
        _write(tmp_path / "environments" / "production.yaml", {"logging": {"log_format": "json"}})

        config = load_config(tmp_path)

        assert config.environment == "production"
        assert config.logging.log_format == "json"
        assert config.logging.log_level == "DEBUG"

    def test_empty_directory_gives_defaults(self, tmp_path):
        assert load_config(tmp_path) == Config()

    def test_missing_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.yaml")

    def test_invalid_values(self, tmp_path):
        path = _write(tmp_path / "recordops.yaml", {"batch": {"max_batch_size": 0}})

        with pytest.raises(ConfigurationError) as exc_info:
            load_config(path)

        assert exc_info.value.details["errors"]

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "recordops.yaml"
        path.write_text("batch: [unclosed")

        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "recordops.yaml"
        path.write_text("- one\n- two\n")

        with pytest.raises(ConfigurationError):
            load_config(path)
