"""Tests for settings loading and logging setup."""

import logging

import pytest

from common.logging_utils import configure_logging
from config import Settings, load_settings
from constants import Constants
from errors import ConfigError
from polypin import PackageManager
from transaction.producer import CallableProducer


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Run each test in an empty directory without POLYPIN_* variables."""
    for var in (Constants.ENV_CONFIG, Constants.ENV_STORE_ROOT, Constants.ENV_LOG_LEVEL,
                Constants.ENV_LOCK_TIMEOUT, Constants.ENV_STAGING_WORKERS):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


class TestLoadSettings:
    """Precedence: defaults < file < environment < explicit overrides."""

    def test_defaults(self):
        settings = load_settings()
        assert settings == Settings()
        assert settings.lock_timeout == Constants.DEFAULT_LOCK_TIMEOUT_SEC
        assert settings.prefer_active_transitive is False

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "custom.yml"
        path.write_text("store_root: /srv/pkgs\nstaging_workers: 8\nprefer_active_transitive: true\n",
                        encoding="utf-8")
        settings = load_settings(path)
        assert settings.store_root == "/srv/pkgs"
        assert settings.staging_workers == 8
        assert settings.prefer_active_transitive is True

    def test_polypin_section(self, tmp_path):
        (tmp_path / "polypin.yml").write_text("polypin:\n  lock_timeout: 2.5\n", encoding="utf-8")
        assert load_settings().lock_timeout == 2.5

    def test_config_from_env_var(self, tmp_path, monkeypatch):
        path = tmp_path / "elsewhere.yaml"
        path.write_text("max_resolution_steps: 10\n", encoding="utf-8")
        monkeypatch.setenv(Constants.ENV_CONFIG, str(path))
        assert load_settings().max_resolution_steps == 10

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        (tmp_path / "polypin.yml").write_text("staging_workers: 8\n", encoding="utf-8")
        monkeypatch.setenv(Constants.ENV_STAGING_WORKERS, "3")
        monkeypatch.setenv(Constants.ENV_STORE_ROOT, "/tmp/polypin")
        settings = load_settings()
        assert settings.staging_workers == 3
        assert settings.store_root == "/tmp/polypin"

    def test_explicit_overrides_win(self, monkeypatch):
        monkeypatch.setenv(Constants.ENV_LOCK_TIMEOUT, "9")
        assert load_settings(lock_timeout=1).lock_timeout == 1.0

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "c.yml"
        path.write_text("color: blue\n", encoding="utf-8")
        assert load_settings(path) == Settings()

    def test_json_file(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text('{"stale_tmp_seconds": 60}', encoding="utf-8")
        assert load_settings(path).stale_tmp_seconds == 60.0


class TestInvalidSettings:
    """Invalid values raise ConfigError."""

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_settings(tmp_path / "absent.yml")

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "c.yml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_settings(path)

    def test_bad_number(self, monkeypatch):
        monkeypatch.setenv(Constants.ENV_LOCK_TIMEOUT, "soon")
        with pytest.raises(ConfigError):
            load_settings()

    def test_out_of_range(self, tmp_path):
        path = tmp_path / "c.yml"
        path.write_text("staging_workers: 0\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="staging_workers"):
            load_settings(path)

    def test_bad_bool(self, tmp_path):
        path = tmp_path / "c.yml"
        path.write_text("prefer_active_transitive: maybe\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_settings(path)

    def test_broken_yaml(self, tmp_path):
        path = tmp_path / "c.yml"
        path.write_text("store_root: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_settings(path)


class TestConfigureLogging:
    """Root logging is configured only when a caller asks for it."""

    @pytest.fixture(autouse=True)
    def restore_root_level(self):
        root = logging.getLogger()
        level = root.level
        yield
        root.setLevel(level)

    def test_explicit_level(self):
        configure_logging("DEBUG")
        assert logging.getLogger().level == logging.DEBUG

    def test_level_from_env(self, monkeypatch):
        monkeypatch.setenv(Constants.ENV_LOG_LEVEL, "warning")
        configure_logging()
        assert logging.getLogger().level == logging.WARNING

    def test_package_manager_leaves_root_logger_alone(self, tmp_path, make_catalog):
        root = logging.getLogger()
        level, handlers = root.level, list(root.handlers)
        manager = PackageManager(make_catalog({"lib": {"1.0.0": {}}}), CallableProducer(lambda n, v: b"x"),
                                 settings=Settings(store_root=str(tmp_path / "store"), log_level="DEBUG"))
        manager.close()
        assert root.level == level
        assert root.handlers == handlers
