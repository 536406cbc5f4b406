# -*- coding: utf-8 -*-
"""
test_config.py - 配置加载测试

覆盖:
- YAML 配置文件解析与各节映射
- 配置文件查找优先级（--config > ASSETMEND_CONFIG > 默认路径）
- 环境变量覆盖
- 无效值 / 结构错误
"""

import logging
import textwrap

import pytest

from assetmend.reconcile.config import (
    ENV_BATCH_SIZE,
    ENV_CONFIG_PATH,
    ENV_ERROR_THRESHOLD,
    ENV_EXPECTED_MISSING,
    ENV_PG_DSN,
    ENV_STATE_DIR,
    Config,
    ContainerConfig,
    LoggingConfig,
    MatchingSettings,
    MigrationSettings,
    configure_logging,
    find_config_file,
    load_config,
)
from assetmend.reconcile.errors import (
    ConfigError,
    ConfigNotFoundError,
    ConfigParseError,
    ConfigValueError,
)

SAMPLE_CONFIG = textwrap.dedent(
    """
    migration:
      batch_size: 25
      error_threshold: 40
      expected_missing_file_count: 20
    matching:
      fuzzy_min_confidence: 0.8
    duplicates:
      priority_folder_patterns: [originals, masters]
    containers:
      - {id: 1, name: Images, handle: images, backend: local, root: /srv/assets, prefix: images}
      - {id: 3, name: Quarantine, handle: quarantine, root: /srv/quarantine}
    target:
      container: images
      parent_path: library
    quarantine:
      container: quarantine
    state:
      dir: /var/lib/assetmend
    """
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (ENV_CONFIG_PATH, ENV_BATCH_SIZE, ENV_ERROR_THRESHOLD, ENV_EXPECTED_MISSING, ENV_STATE_DIR, ENV_PG_DSN):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("assetmend.reconcile.config.DEFAULT_CONFIG_PATHS", [])


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(SAMPLE_CONFIG, encoding="utf-8")
    return path


class TestLoadConfig:
    def test_sections_mapped(self, config_file):
        config = load_config(str(config_file))

        assert config.source_path == str(config_file)
        assert config.migration.batch_size == 25
        assert config.migration.error_threshold == 40
        assert config.migration.expected_missing_file_count == 20
        # 未指定的键保留默认值
        assert config.migration.checkpoint_every_batches == 1
        assert config.matching.fuzzy_min_confidence == 0.8
        assert config.duplicates.priority_folder_patterns == ["originals", "masters"]
        assert [c.handle for c in config.containers] == ["images", "quarantine"]
        assert config.container("images").prefix == "images"
        assert config.target_container == "images"
        assert config.target_parent_path == "library"
        assert config.quarantine_container == "quarantine"
        assert config.state_dir == "/var/lib/assetmend"
        assert config.postgres is None

    def test_defaults_without_file(self):
        config = load_config()

        assert config.source_path is None
        assert config.migration == MigrationSettings()
        assert config.containers == []

    def test_env_config_path(self, config_file, monkeypatch):
        monkeypatch.setenv(ENV_CONFIG_PATH, str(config_file))

        assert find_config_file() == config_file

    def test_explicit_path_beats_env(self, config_file, tmp_path, monkeypatch):
        other = tmp_path / "other.yaml"
        other.write_text("migration: {batch_size: 7}\n", encoding="utf-8")
        monkeypatch.setenv(ENV_CONFIG_PATH, str(config_file))

        assert load_config(str(other)).migration.batch_size == 7

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("migration: [unclosed\n", encoding="utf-8")

        with pytest.raises(ConfigParseError):
            load_config(str(path))

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")

        with pytest.raises(ConfigParseError):
            load_config(str(path))

    def test_unknown_key_is_parse_error(self, tmp_path):
        path = tmp_path / "unknown.yaml"
        path.write_text("migration: {batch_sise: 10}\n", encoding="utf-8")

        with pytest.raises(ConfigParseError):
            load_config(str(path))


class TestEnvOverrides:
    def test_scalar_overrides(self, config_file, monkeypatch):
        monkeypatch.setenv(ENV_BATCH_SIZE, "10")
        monkeypatch.setenv(ENV_EXPECTED_MISSING, "5")
        monkeypatch.setenv(ENV_STATE_DIR, "/tmp/state")
        monkeypatch.setenv(ENV_PG_DSN, "postgresql://localhost/assets")

        config = load_config(str(config_file))

        assert config.migration.batch_size == 10
        assert config.migration.expected_missing_file_count == 5
        assert config.state_dir == "/tmp/state"
        assert config.postgres.dsn == "postgresql://localhost/assets"

    def test_non_integer(self, monkeypatch):
        monkeypatch.setenv(ENV_BATCH_SIZE, "ten")

        with pytest.raises(ConfigValueError):
            load_config()

    def test_override_is_validated(self, monkeypatch):
        monkeypatch.setenv(ENV_BATCH_SIZE, "0")

        with pytest.raises(ConfigError):
            load_config()


class TestValidation:
    def test_batch_size_must_be_positive(self):
        with pytest.raises(ConfigError):
            MigrationSettings(batch_size=0)

    def test_expected_missing_may_be_zero(self):
        assert MigrationSettings(expected_missing_file_count=0).expected_missing_file_count == 0

    def test_negative_retries(self):
        with pytest.raises(ConfigError):
            MigrationSettings(max_retries=-1)

    def test_confidence_range(self):
        with pytest.raises(ConfigError):
            MatchingSettings(fuzzy_min_confidence=1.5)

    def test_object_container_needs_bucket(self):
        with pytest.raises(ConfigError):
            ContainerConfig(id=1, name="S3", handle="s3", backend="object")

    def test_invalid_backend(self):
        with pytest.raises(ConfigError):
            ContainerConfig(id=1, name="X", handle="x", backend="ftp")

    def test_duplicate_container_ids(self):
        data = {
            "containers": [
                {"id": 1, "name": "A", "handle": "a"},
                {"id": 1, "name": "B", "handle": "b"},
            ]
        }
        with pytest.raises(ConfigError):
            Config.from_dict(data)

    def test_unknown_container_handle(self):
        with pytest.raises(ConfigError):
            Config().container("images")


class TestConfigureLogging:
    def test_verbose_uses_debug(self, monkeypatch):
        calls = []
        monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))

        configure_logging(LoggingConfig(level="WARNING"), verbose=True)
        configure_logging(LoggingConfig(level="WARNING", file="/tmp/assetmend.log"))

        assert calls[0]["level"] == logging.DEBUG
        assert calls[1]["level"] == logging.WARNING
        assert calls[1]["filename"] == "/tmp/assetmend.log"
