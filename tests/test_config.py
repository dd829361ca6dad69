"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for monitor configs.
"""

import os
import shutil
import tempfile
from unittest.mock import patch

import pytest
import yaml

from tokenwatch.config.loader import (
    MonitorConfig,
    default_config_path,
    load_config,
)
from tokenwatch.core.pricing import CostMode


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_path = self._write_config({
            "data_paths": ["/data/a", "/data/b"],
            "session_duration_hours": 3,
            "cost_mode": "Calculate",
            "offline": True,
            "refresh_interval_seconds": 5,
            "timezone": "Europe/Berlin",
            "start_of_week": "Monday",
            "log_level": "debug",
        })

        config = load_config(config_path)

        assert config.data_paths == ("/data/a", "/data/b")
        assert config.session_duration_hours == 3
        assert config.cost_mode is CostMode.CALCULATE
        assert config.offline is True
        assert config.refresh_interval_seconds == 5
        assert config.timezone == "Europe/Berlin"
        assert config.start_of_week == "monday"
        assert config.log_level == "DEBUG"

    def test_single_data_path_string(self):
        """Test that a single path string is accepted."""
        config = load_config(self._write_config({"data_paths": "/data/a"}))
        assert config.data_paths == ("/data/a",)

    def test_empty_file_uses_defaults(self):
        """Test that an empty file yields the defaults."""
        path = os.path.join(self.temp_dir, "empty.yaml")
        open(path, 'w').close()
        assert load_config(path) == MonitorConfig()

    def test_missing_explicit_file_raises_error(self):
        """Test error for a missing explicitly named file."""
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_config(os.path.join(self.temp_dir, "nope.yaml"))

    def test_missing_default_file_uses_defaults(self):
        """Test that a missing default file is not an error."""
        with patch.dict(os.environ, {"XDG_CONFIG_HOME": self.temp_dir}):
            assert str(default_config_path()).startswith(self.temp_dir)
            assert load_config() == MonitorConfig()

    def test_default_file_is_read(self):
        """Test that the XDG default location is used."""
        config_dir = os.path.join(self.temp_dir, "tokenwatch")
        os.makedirs(config_dir)
        self._write_config({"session_duration_hours": 2}, filename="tokenwatch/config.yaml")

        with patch.dict(os.environ, {"XDG_CONFIG_HOME": self.temp_dir}):
            config = load_config()

        assert config.session_duration_hours == 2

    def test_invalid_yaml_raises_error(self):
        """Test error for malformed YAML."""
        path = os.path.join(self.temp_dir, "bad.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            f.write("key: [unclosed\n")
        with pytest.raises(yaml.YAMLError, match="Invalid YAML"):
            load_config(path)

    def test_non_mapping_raises_error(self):
        """Test error for a top-level list."""
        with pytest.raises(ValueError, match="must be a mapping"):
            load_config(self._write_config(["a", "b"]))

    def test_unknown_keys_raise_error(self):
        """Test error for unknown keys."""
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_config(self._write_config({"budget": 10}))

    def test_wrong_type_raises_error(self):
        """Test error for mistyped values."""
        with pytest.raises(ValueError, match="must be of type"):
            load_config(self._write_config({"file_concurrency": "many"}))

    def test_boolean_number_rejected(self):
        """Test that booleans are not accepted as numbers."""
        with pytest.raises(ValueError, match="must not be a boolean"):
            load_config(self._write_config({"session_duration_hours": True}))

    def test_invalid_cost_mode(self):
        """Test error for unknown cost modes."""
        with pytest.raises(ValueError, match="cost_mode"):
            load_config(self._write_config({"cost_mode": "guess"}))

    def test_empty_data_path_rejected(self):
        """Test that empty path entries are rejected."""
        with pytest.raises(ValueError, match="data_paths"):
            load_config(self._write_config({"data_paths": ["/a", ""]}))

    def test_project_aliases_loaded(self):
        """Test that project aliases load as a mapping."""
        config = load_config(self._write_config({"project_aliases": {"app": "Tracker"}}))
        assert config.project_aliases == {"app": "Tracker"}
        assert MonitorConfig().project_aliases == {}

    def test_invalid_project_aliases_rejected(self):
        """Test that aliases must map names to non-empty strings."""
        with pytest.raises(ValueError, match="project_aliases"):
            load_config(self._write_config({"project_aliases": {"app": ""}}))
        with pytest.raises(ValueError, match="project_aliases"):
            load_config(self._write_config({"project_aliases": ["app=Tracker"]}))


class TestMonitorConfigValidation:
    """Test value range validation."""

    def test_defaults(self):
        """Test default values."""
        config = MonitorConfig()
        assert config.session_duration_hours == 5
        assert config.cost_mode is CostMode.AUTO
        assert config.retention_hours == 24
        assert config.file_concurrency == 5
        assert config.log_level == "WARNING"

    @pytest.mark.parametrize("kwargs", [
        {"session_duration_hours": 0},
        {"refresh_interval_seconds": 0},
        {"refresh_interval_seconds": 61},
        {"status_refresh_interval_seconds": 0},
        {"retention_hours": -1},
        {"file_concurrency": 0},
        {"start_of_week": "someday"},
        {"log_level": "LOUD"},
        {"timezone": "Nowhere/Special"},
    ])
    def test_out_of_range_values(self, kwargs):
        """Test that invalid values are rejected."""
        with pytest.raises(ValueError):
            MonitorConfig(**kwargs)
