"""
assetmend.reconcile.config - 配置管理模块

支持:
- CLI --config 参数覆盖
- 环境变量 ASSETMEND_CONFIG 指定配置文件路径
- YAML 格式配置文件
- 标量参数的环境变量覆盖（ASSETMEND_BATCH_SIZE 等）

优先级: --config > ASSETMEND_CONFIG > ./.assetmend/config.yaml > ~/.assetmend/config.yaml

配置示例:
    migration:
      batch_size: 100
      error_threshold: 50
      expected_missing_file_count: 20
      auto_expected_missing: true
    containers:
      - {id: 1, name: Images, handle: images, backend: local, root: /srv/images}
      - {id: 2, name: Quarantine, handle: quarantine, backend: local, root: /srv/quarantine}
    target: {container: images}
    quarantine: {container: quarantine}
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError, ConfigNotFoundError, ConfigParseError, ConfigValueError

logger = logging.getLogger(__name__)

# 环境变量名称
ENV_CONFIG_PATH = "ASSETMEND_CONFIG"
ENV_BATCH_SIZE = "ASSETMEND_BATCH_SIZE"
ENV_ERROR_THRESHOLD = "ASSETMEND_ERROR_THRESHOLD"
ENV_EXPECTED_MISSING = "ASSETMEND_EXPECTED_MISSING"
ENV_STATE_DIR = "ASSETMEND_STATE_DIR"
ENV_PG_DSN = "ASSETMEND_PG_DSN"

# 默认配置文件搜索路径（按优先级）
DEFAULT_CONFIG_PATHS = [
    Path("./.assetmend/config.yaml"),
    Path.home() / ".assetmend" / "config.yaml",
]

DEFAULT_STATE_DIR = "./.assetmend/state"

VALID_BACKENDS = {"local", "object"}


# === 规范化配置对象 ===


@dataclass
class MigrationSettings:
    """批处理、检查点、错误预算与迁移锁参数"""

    batch_size: int = 100
    checkpoint_every_batches: int = 1
    changelog_flush_every: int = 5
    max_retries: int = 3
    retry_delay_ms: int = 1000
    checkpoint_retention_hours: int = 72
    error_threshold: int = 50
    critical_error_threshold: int = 20
    expected_missing_file_count: int = 0
    # 开始时把分析出的断链数作为预期缺失数（取与配置值中较大者）
    auto_expected_missing: bool = True
    missing_file_slack: int = 10
    lock_timeout_seconds: int = 43200
    lock_acquire_timeout_seconds: int = 3
    lock_refresh_interval_seconds: int = 60
    progress_report_interval: int = 50

    def __post_init__(self):
        for key in (
            "batch_size",
            "checkpoint_every_batches",
            "changelog_flush_every",
            "error_threshold",
            "critical_error_threshold",
            "lock_timeout_seconds",
            "progress_report_interval",
        ):
            value = getattr(self, key)
            if not isinstance(value, int) or value <= 0:
                raise ConfigError(
                    f"配置项 [migration].{key} 必须为正整数: {value}",
                    {"section": "migration", "key": key, "value": value},
                )
        for key in (
            "max_retries",
            "retry_delay_ms",
            "checkpoint_retention_hours",
            "expected_missing_file_count",
            "missing_file_slack",
            "lock_acquire_timeout_seconds",
            "lock_refresh_interval_seconds",
        ):
            value = getattr(self, key)
            if not isinstance(value, int) or value < 0:
                raise ConfigError(
                    f"配置项 [migration].{key} 不能为负数: {value}",
                    {"section": "migration", "key": key, "value": value},
                )


@dataclass
class MatchingSettings:
    """链接修复匹配参数"""

    fuzzy_min_confidence: float = 0.70
    fuzzy_max_distance: int = 5
    low_confidence_warning: float = 0.90
    size_similarity_threshold: float = 0.5

    def __post_init__(self):
        for key in ("fuzzy_min_confidence", "low_confidence_warning", "size_similarity_threshold"):
            value = getattr(self, key)
            if not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
                raise ConfigError(
                    f"配置项 [matching].{key} 必须在 0-1 之间: {value}",
                    {"section": "matching", "key": key, "value": value},
                )


@dataclass
class DuplicateSettings:
    """重复解析参数"""

    # 主记录优先目录模式（大小写不敏感子串匹配）
    priority_folder_patterns: List[str] = field(default_factory=lambda: ["originals"])
    quarantine_temp_prefix: str = "temp"


@dataclass
class ContainerConfig:
    """存储容器（卷）配置"""

    id: int
    name: str
    handle: str
    backend: str = "local"
    root: str = ""
    bucket: Optional[str] = None
    endpoint: Optional[str] = None
    region: Optional[str] = None
    prefix: str = ""

    def __post_init__(self):
        if self.backend not in VALID_BACKENDS:
            raise ConfigError(
                f"无效的容器后端: {self.backend}，有效值: {', '.join(sorted(VALID_BACKENDS))}",
                {"section": "containers", "key": "backend", "value": self.backend},
            )
        if not self.handle:
            raise ConfigError(
                "配置项 [containers].handle 不能为空",
                {"section": "containers", "key": "handle", "container_id": self.id},
            )
        if self.backend == "object" and not self.bucket:
            raise ConfigError(
                f"对象存储容器 '{self.handle}' 缺少 bucket",
                {"section": "containers", "key": "bucket", "handle": self.handle},
            )


@dataclass
class PostgresConfig:
    """PostgreSQL 配置（可选）"""

    dsn: str

    def __post_init__(self):
        if not self.dsn:
            raise ConfigError(
                "配置项 [postgres].dsn 不能为空",
                {"section": "postgres", "key": "dsn"},
            )


@dataclass
class LoggingConfig:
    """日志配置"""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: Optional[str] = None


@dataclass
class Config:
    """顶层配置"""

    migration: MigrationSettings = field(default_factory=MigrationSettings)
    matching: MatchingSettings = field(default_factory=MatchingSettings)
    duplicates: DuplicateSettings = field(default_factory=DuplicateSettings)
    containers: List[ContainerConfig] = field(default_factory=list)
    target_container: Optional[str] = None
    target_parent_path: str = ""
    quarantine_container: Optional[str] = None
    state_dir: str = DEFAULT_STATE_DIR
    postgres: Optional[PostgresConfig] = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    source_path: Optional[str] = None

    def container(self, handle: str) -> ContainerConfig:
        for item in self.containers:
            if item.handle == handle:
                return item
        raise ConfigError(
            f"未配置的容器: {handle}",
            {"handle": handle, "known": [c.handle for c in self.containers]},
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """从配置字典构造（未知键忽略）"""
        try:
            migration = MigrationSettings(**(data.get("migration") or {}))
            matching = MatchingSettings(**(data.get("matching") or {}))
            duplicates = DuplicateSettings(**(data.get("duplicates") or {}))
            containers = [ContainerConfig(**item) for item in (data.get("containers") or [])]
            logging_cfg = LoggingConfig(**(data.get("logging") or {}))
        except TypeError as e:
            raise ConfigParseError(f"配置项结构无效: {e}", {"error": str(e)})

        seen_ids = set()
        for item in containers:
            if item.id in seen_ids:
                raise ConfigError(
                    f"容器 id 重复: {item.id}",
                    {"section": "containers", "key": "id", "value": item.id},
                )
            seen_ids.add(item.id)

        postgres_section = data.get("postgres") or {}
        postgres = PostgresConfig(**postgres_section) if postgres_section.get("dsn") else None

        target = data.get("target") or {}
        quarantine = data.get("quarantine") or {}
        state = data.get("state") or {}

        return cls(
            migration=migration,
            matching=matching,
            duplicates=duplicates,
            containers=containers,
            target_container=target.get("container"),
            target_parent_path=target.get("parent_path", ""),
            quarantine_container=quarantine.get("container"),
            state_dir=state.get("dir", DEFAULT_STATE_DIR),
            postgres=postgres,
            logging=logging_cfg,
        )


# === 加载 ===


def find_config_file(config_path: Optional[str] = None) -> Optional[Path]:
    """
    按优先级查找配置文件

    Raises:
        ConfigNotFoundError: 显式指定的路径不存在
    """
    explicit = config_path or os.environ.get(ENV_CONFIG_PATH)
    if explicit:
        path = Path(explicit)
        if not path.is_file():
            raise ConfigNotFoundError(
                f"配置文件不存在: {explicit}",
                {"path": str(path), "source": "--config" if config_path else ENV_CONFIG_PATH},
            )
        return path

    for candidate in DEFAULT_CONFIG_PATHS:
        if candidate.is_file():
            return candidate
    return None


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigParseError(
            f"配置文件解析失败: {path}",
            {"path": str(path), "error": str(e)},
        )
    if not isinstance(data, dict):
        raise ConfigParseError(
            f"配置文件顶层必须为映射: {path}",
            {"path": str(path), "type": type(data).__name__},
        )
    return data


def _env_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ConfigValueError(
            f"环境变量 {name} 必须为整数: {raw}",
            {"env": name, "value": raw},
        )


def apply_env_overrides(config: Config) -> Config:
    """应用环境变量覆盖"""
    batch_size = _env_int(ENV_BATCH_SIZE)
    if batch_size is not None:
        config.migration.batch_size = batch_size
    error_threshold = _env_int(ENV_ERROR_THRESHOLD)
    if error_threshold is not None:
        config.migration.error_threshold = error_threshold
    expected_missing = _env_int(ENV_EXPECTED_MISSING)
    if expected_missing is not None:
        config.migration.expected_missing_file_count = expected_missing

    state_dir = os.environ.get(ENV_STATE_DIR)
    if state_dir:
        config.state_dir = state_dir
    dsn = os.environ.get(ENV_PG_DSN)
    if dsn:
        config.postgres = PostgresConfig(dsn=dsn)

    # 覆盖后重新校验
    config.migration.__post_init__()
    return config


def load_config(config_path: Optional[str] = None) -> Config:
    """
    加载配置

    Args:
        config_path: 显式配置文件路径（--config）

    Returns:
        Config 实例（无配置文件时使用默认值）
    """
    path = find_config_file(config_path)
    if path is None:
        logger.debug("未找到配置文件，使用默认配置")
        config = Config()
    else:
        config = Config.from_dict(_read_yaml(path))
        config.source_path = str(path)
    return apply_env_overrides(config)


def add_config_argument(parser) -> None:
    """为 argparse 解析器添加 --config 参数"""
    parser.add_argument(
        "--config",
        "-c",
        dest="config_path",
        metavar="PATH",
        help=f"配置文件路径（也可通过 {ENV_CONFIG_PATH} 环境变量指定）",
    )


def configure_logging(logging_config: LoggingConfig, verbose: bool = False) -> None:
    """根据配置初始化日志（仅 CLI 入口调用）"""
    level = logging.DEBUG if verbose else getattr(logging, logging_config.level.upper(), logging.INFO)
    kwargs: Dict[str, Any] = {"level": level, "format": logging_config.format}
    if logging_config.file:
        kwargs["filename"] = logging_config.file
    logging.basicConfig(**kwargs)
