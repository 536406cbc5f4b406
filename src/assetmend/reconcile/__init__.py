"""
assetmend.reconcile - 对账修复引擎

约定:
- CLI 输出为结构化 JSON（stdout），人读信息输出到 stderr
- 错误时返回非 0 exit code
- 支持 --config 参数和 ASSETMEND_CONFIG 环境变量配置

模块:
- config / errors / io: 配置、错误定义、CLI I/O
- gateway / record_store / db: 存储网关、记录库、PostgreSQL 连接
- inventory / search_index / matcher / link_repair: 清单、检索索引、分层匹配、断链修复
- duplicate_store / duplicates: 物理文件重复解析
- nesting / strategy: 网关嵌套检测与复制策略
- file_ops / consolidation / quarantine: 记录移动、整理与隔离
- checkpoint / error_budget / run_context / lock / audit / retry: 可恢复执行
- rollback / runner / cli: 回滚、运行驱动、命令行入口
"""

__version__ = "0.1.0"

from .config import ENV_CONFIG_PATH, Config, add_config_argument, load_config
from .errors import (
    CheckpointError,
    ConfigError,
    ErrorCode,
    ExitCode,
    GatewayError,
    GatewayUnreachableError,
    LockNotAcquiredError,
    ReconcileError,
    RunHaltedError,
    UnsafeDeletionError,
    ValidationError,
)
from .models import (
    AlreadyDone,
    DuplicateGroupRecord,
    Failed,
    FileEntry,
    Location,
    MatchResult,
    Outcome,
    Phase,
    RecordEntry,
    Skipped,
    Success,
)

__all__ = [
    "__version__",
    "ENV_CONFIG_PATH",
    "Config",
    "add_config_argument",
    "load_config",
    "CheckpointError",
    "ConfigError",
    "ErrorCode",
    "ExitCode",
    "GatewayError",
    "GatewayUnreachableError",
    "LockNotAcquiredError",
    "ReconcileError",
    "RunHaltedError",
    "UnsafeDeletionError",
    "ValidationError",
    "AlreadyDone",
    "DuplicateGroupRecord",
    "Failed",
    "FileEntry",
    "Location",
    "MatchResult",
    "Outcome",
    "Phase",
    "RecordEntry",
    "Skipped",
    "Success",
]
