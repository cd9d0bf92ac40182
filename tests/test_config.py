"""
Tests for the configuration module.

Tests YAML loading, validation of known keys, and building typed settings.
"""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from cherishly_sync.config import ConfigError, ConfigLoader, SyncSettings
from cherishly_sync.config.settings import DEFAULT_PULL_BATCH_SIZE, DEFAULT_REMOTE_APP


class TestConfigLoaderInit:
    """Tests for ConfigLoader initialization."""

    def test_explicit_config_dir(self, tmp_path):
        loader = ConfigLoader(config_dir=tmp_path)
        assert loader.config_dir == tmp_path
        assert loader.config_file == "config.yaml"

    def test_config_dir_from_env(self, tmp_path):
        with patch.dict(os.environ, {"CHERISHLY_SYNC_CONFIG_DIR": str(tmp_path)}):
            loader = ConfigLoader()
        assert loader.config_dir == tmp_path


class TestConfigLoading:
    """Tests for loading configuration files."""

    def test_missing_file_returns_empty(self, tmp_path):
        assert ConfigLoader(config_dir=tmp_path).load() == {}

    def test_empty_file_returns_empty(self, tmp_path):
        (tmp_path / "config.yaml").write_text("")
        assert ConfigLoader(config_dir=tmp_path).load() == {}

    def test_loads_yaml(self, tmp_path):
        (tmp_path / "config.yaml").write_text(
            "user_id: user-1\nremote_base_url: https://temerio.example\npush_batch_size: 50\n"
        )
        config = ConfigLoader(config_dir=tmp_path).load_and_validate()
        assert config == {
            "user_id": "user-1",
            "remote_base_url": "https://temerio.example",
            "push_batch_size": 50,
        }

    def test_invalid_yaml_raises(self, tmp_path):
        (tmp_path / "config.yaml").write_text("user_id: [unclosed\n")
        with pytest.raises(ConfigError, match="parse YAML"):
            ConfigLoader(config_dir=tmp_path).load()

    def test_non_dict_raises(self, tmp_path):
        (tmp_path / "config.yaml").write_text("- one\n- two\n")
        with pytest.raises(ConfigError, match="YAML dictionary"):
            ConfigLoader(config_dir=tmp_path).load()

    def test_load_from_custom_file(self, tmp_path):
        path = tmp_path / "other.yaml"
        path.write_text("verbose: true\n")
        assert ConfigLoader(config_dir=tmp_path).load_from_file(path) == {"verbose": True}


class TestConfigValidation:
    """Tests for validate()."""

    @pytest.fixture
    def loader(self, tmp_path):
        return ConfigLoader(config_dir=tmp_path)

    def test_unknown_keys_ignored(self, loader):
        loader.validate({"some_future_key": 1})

    def test_wrong_type(self, loader):
        with pytest.raises(ConfigError, match="expected int"):
            loader.validate({"push_batch_size": "ten"})

    def test_bool_is_not_a_number(self, loader):
        with pytest.raises(ConfigError, match="got bool"):
            loader.validate({"pull_batch_size": True})

    def test_float_keys_accept_ints(self, loader):
        loader.validate({"api_timeout": 10})

    @pytest.mark.parametrize(
        "config",
        [
            {"push_batch_size": 0},
            {"pairing_code_ttl_minutes": -1},
            {"remote_people_cache_ttl": -5},
            {"api_initial_retry_delay": 0},
        ],
    )
    def test_out_of_range(self, loader, config):
        with pytest.raises(ConfigError):
            loader.validate(config)

    def test_url_scheme_required(self, loader):
        with pytest.raises(ConfigError, match="http"):
            loader.validate({"remote_base_url": "temerio.example"})

    def test_blank_user_id(self, loader):
        with pytest.raises(ConfigError, match="user_id"):
            loader.validate({"user_id": "  "})


class TestSyncSettings:
    """Tests for SyncSettings.from_dict()."""

    def test_defaults(self, tmp_path):
        settings = SyncSettings.from_dict({}, tmp_path)

        assert settings.user_id is None
        assert settings.db_path == tmp_path / "sync.db"
        assert settings.local_app == "cherishly"
        assert settings.remote_app == DEFAULT_REMOTE_APP
        assert settings.pull_batch_size == DEFAULT_PULL_BATCH_SIZE
        assert settings.log_dir is None

    def test_values_from_config(self, tmp_path):
        settings = SyncSettings.from_dict(
            {
                "user_id": "user-1",
                "db_path": "~/sync/custom.db",
                "remote_base_url": "https://temerio.example",
                "api_timeout": 5,
                "log_dir": "/tmp/logs",
            },
            tmp_path,
        )

        assert settings.user_id == "user-1"
        assert settings.db_path == Path("~/sync/custom.db").expanduser()
        assert settings.api_timeout == 5.0
        assert isinstance(settings.api_timeout, float)
        assert settings.log_dir == Path("/tmp/logs")
