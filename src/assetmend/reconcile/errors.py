"""
assetmend.reconcile.errors - 错误定义模块

定义对账/修复引擎可能抛出的异常类型，统一错误码和错误消息格式。

退出码约定:
    0   - 成功
    1   - 通用错误 (RECONCILE_ERROR)
    2   - 配置错误 (CONFIG_ERROR)
    3   - 数据库错误 (DATABASE_ERROR)
    4   - 哈希计算错误 (HASHING_ERROR)
    5   - I/O 错误 (IO_ERROR)
    6   - 校验错误 (VALIDATION_ERROR)
    8   - 存储网关错误 (GATEWAY_ERROR)
    9   - 检查点错误 (CHECKPOINT_ERROR)
    10  - 迁移锁错误 (LOCK_ERROR)
    20  - 运行被错误预算熔断 (RUN_HALTED)

错误分类:
    - 预期错误（源文件缺失）: 计入错误预算，不单独导致中止
    - 可恢复错误（单条记录 I/O/持久化失败）: 记录后继续批次
    - 严重错误（网关不可达、记录库不可达、检查点写入失败、预算超限）: 中止整个运行
"""

from typing import Any, Dict, Optional

# =============================================================================
# 错误码常量（用于审计日志 / 错误预算 op_type 字段归一化）
# =============================================================================


class ErrorCode:
    """
    统一操作类型常量，用于错误预算和审计日志。

    MISSING_SOURCE_FILE 是唯一的"预期"错误类型，其余全部计入严重错误。
    """

    MISSING_SOURCE_FILE = "missing_source_file"

    CONSOLIDATE_ASSET = "consolidate_asset"
    QUARANTINE_FILE = "quarantine_file"
    QUARANTINE_FILE_MISSING = "quarantine_file_missing"
    QUARANTINE_ASSET = "quarantine_asset"
    COPY_FILE = "copy_file"
    FIX_BROKEN_LINK = "fix_broken_link"
    STAGE_DUPLICATE = "stage_duplicate"
    RESOLVE_DUPLICATE = "resolve_duplicate"
    CLEANUP_TEMP = "cleanup_temp"

    # 预期错误类型集合
    EXPECTED = frozenset({MISSING_SOURCE_FILE})


# =============================================================================
# 退出码枚举
# =============================================================================


class ExitCode:
    """退出码常量"""

    SUCCESS = 0
    RECONCILE_ERROR = 1
    CONFIG_ERROR = 2
    DATABASE_ERROR = 3
    HASHING_ERROR = 4
    IO_ERROR = 5
    VALIDATION_ERROR = 6
    GATEWAY_ERROR = 8
    CHECKPOINT_ERROR = 9
    LOCK_ERROR = 10
    RUN_HALTED = 20


# =============================================================================
# 基础异常类
# =============================================================================


class ReconcileError(Exception):
    """assetmend.reconcile 基础异常类"""

    exit_code: int = ExitCode.RECONCILE_ERROR
    error_type: str = "RECONCILE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """
        转换为可序列化的字典格式

        格式: {ok: false, code: str, message: str, detail: dict}
        """
        return {
            "ok": False,
            "code": self.error_type,
            "message": self.message,
            "detail": self.details,
        }


# =============================================================================
# 配置相关错误 (exit_code = 2)
# =============================================================================


class ConfigError(ReconcileError):
    """配置相关错误"""

    exit_code = ExitCode.CONFIG_ERROR
    error_type = "CONFIG_ERROR"


class ConfigNotFoundError(ConfigError):
    """配置文件未找到"""

    error_type = "CONFIG_NOT_FOUND"


class ConfigParseError(ConfigError):
    """配置文件解析错误"""

    error_type = "CONFIG_PARSE_ERROR"


class ConfigValueError(ConfigError):
    """配置值无效"""

    error_type = "CONFIG_VALUE_ERROR"


# =============================================================================
# 数据库相关错误 (exit_code = 3)
# =============================================================================


class DatabaseError(ReconcileError):
    """数据库相关错误"""

    exit_code = ExitCode.DATABASE_ERROR
    error_type = "DATABASE_ERROR"


class DbConnectionError(DatabaseError):
    """数据库连接失败"""

    error_type = "DB_CONNECTION_ERROR"


class QueryError(DatabaseError):
    """SQL 执行失败"""

    error_type = "QUERY_ERROR"


class RecordStoreError(DatabaseError):
    """记录库访问失败（属于严重错误）"""

    error_type = "RECORD_STORE_ERROR"


# =============================================================================
# 哈希 / I/O 错误 (exit_code = 4, 5)
# =============================================================================


class HashingError(ReconcileError):
    """哈希计算错误"""

    exit_code = ExitCode.HASHING_ERROR
    error_type = "HASHING_ERROR"


class ReconcileIOError(ReconcileError):
    """I/O 错误"""

    exit_code = ExitCode.IO_ERROR
    error_type = "IO_ERROR"


# =============================================================================
# 校验错误 (exit_code = 6)
# =============================================================================


class ValidationError(ReconcileError):
    """数据校验错误"""

    exit_code = ExitCode.VALIDATION_ERROR
    error_type = "VALIDATION_ERROR"


class InvalidRunIdError(ValidationError):
    """运行 ID 格式无效（只允许 [a-zA-Z0-9_-]）"""

    error_type = "INVALID_RUN_ID"


class PathTraversalError(ValidationError):
    """路径穿越尝试"""

    error_type = "PATH_TRAVERSAL"


class UnsafeDeletionError(ValidationError):
    """仍有未备份的重复组时尝试执行破坏性操作"""

    error_type = "UNSAFE_DELETION"


# =============================================================================
# 存储网关错误 (exit_code = 8)
# =============================================================================


class GatewayError(ReconcileError):
    """存储网关操作失败"""

    exit_code = ExitCode.GATEWAY_ERROR
    error_type = "GATEWAY_ERROR"


class GatewayUnreachableError(GatewayError):
    """网关不可达（扫描阶段出现时属于严重错误）"""

    error_type = "GATEWAY_UNREACHABLE"


class ObjectNotFoundError(GatewayError):
    """对象不存在"""

    error_type = "OBJECT_NOT_FOUND"


class GatewayWriteError(GatewayError):
    """写入对象失败"""

    error_type = "GATEWAY_WRITE_ERROR"


# =============================================================================
# 检查点 / 锁错误 (exit_code = 9, 10)
# =============================================================================


class CheckpointError(ReconcileError):
    """检查点读写失败（属于严重错误）"""

    exit_code = ExitCode.CHECKPOINT_ERROR
    error_type = "CHECKPOINT_ERROR"


class LockError(ReconcileError):
    """迁移锁错误"""

    exit_code = ExitCode.LOCK_ERROR
    error_type = "LOCK_ERROR"


class LockNotAcquiredError(LockError):
    """迁移锁被其他进程持有"""

    error_type = "LOCK_NOT_ACQUIRED"


# =============================================================================
# 运行熔断 (exit_code = 20)
# =============================================================================


class RunHaltedError(ReconcileError):
    """
    错误预算超限导致的主动停止

    这是一次有意的停止而非崩溃：消息中包含最近一次检查点标识
    以及可直接执行的恢复命令。
    """

    exit_code = ExitCode.RUN_HALTED
    error_type = "RUN_HALTED"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        checkpoint_id: Optional[str] = None,
        resume_command: Optional[str] = None,
    ):
        details = dict(details or {})
        if checkpoint_id is not None:
            details.setdefault("checkpoint_id", checkpoint_id)
        if resume_command is not None:
            details.setdefault("resume_command", resume_command)
        super().__init__(message, details)
        self.checkpoint_id = checkpoint_id
        self.resume_command = resume_command


# =============================================================================
# 结果构造
# =============================================================================


def make_success_result(**kwargs) -> Dict[str, Any]:
    """
    构造成功结果

    格式: {ok: true, ...}
    """
    result: Dict[str, Any] = {"ok": True}
    result.update(kwargs)
    return result


def make_error_result(
    code: str, message: str, detail: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    构造错误结果

    格式: {ok: false, code, message, detail}
    """
    return {
        "ok": False,
        "code": code,
        "message": message,
        "detail": detail or {},
    }
