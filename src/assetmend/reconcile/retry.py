# -*- coding: utf-8 -*-
"""
retry.py - 调用点有界重试模块

存储网关 I/O 与记录库查询都是同步调用，失败时在调用点做有界重试（指数退避），
而不是并行化。

错误分类策略：
- 致命错误（FATAL）：不重试，立即抛出
  - 消息包含 does not exist / permission denied / access denied / invalid / constraint violation
  - 对象不存在、路径穿越、数据校验错误
- 严重错误（CRITICAL）：运行级错误，原样抛出且不重试
  - 运行熔断、检查点写入失败、迁移锁错误、数据库不可达
- 临时性错误（TRANSIENT）：按 delay_ms * 2^(attempt-1) 退避后重试
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

from .errors import (
    CheckpointError,
    DbConnectionError,
    LockError,
    ObjectNotFoundError,
    ReconcileError,
    RunHaltedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 1000


class ErrorCategory(str, Enum):
    """错误类别枚举"""

    FATAL = "fatal"  # 不应重试
    CRITICAL = "critical"  # 运行级错误
    TRANSIENT = "transient"  # 可重试


# 致命错误关键词（小写子串匹配）
FATAL_ERROR_PATTERNS = [
    "does not exist",
    "permission denied",
    "access denied",
    "invalid",
    "constraint violation",
]

# 致命错误类型
FATAL_ERROR_TYPES = (ObjectNotFoundError, ValidationError, PermissionError, FileNotFoundError)

# 运行级错误类型
CRITICAL_ERROR_TYPES = (RunHaltedError, CheckpointError, LockError, DbConnectionError)


def classify_error(error: BaseException) -> ErrorCategory:
    """对异常进行分类"""
    if isinstance(error, CRITICAL_ERROR_TYPES):
        return ErrorCategory.CRITICAL
    if isinstance(error, FATAL_ERROR_TYPES):
        return ErrorCategory.FATAL
    message = str(error).lower()
    for pattern in FATAL_ERROR_PATTERNS:
        if pattern in message:
            return ErrorCategory.FATAL
    return ErrorCategory.TRANSIENT


class RetryExhaustedError(ReconcileError):
    """重试次数用尽"""

    error_type = "RETRY_EXHAUSTED"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, cause: Optional[BaseException] = None):
        super().__init__(message, details)
        self.cause = cause


class RetryManager:
    """
    有界重试管理器

    Args:
        max_retries: 最大尝试次数
        delay_ms: 首次重试前的等待毫秒数
        sleep: 等待函数（测试可注入）
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        delay_ms: int = DEFAULT_RETRY_DELAY_MS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_retries = max(1, max_retries)
        self.delay_ms = delay_ms
        self._sleep = sleep
        self._retry_count: Dict[str, int] = {}

    def backoff_seconds(self, attempt: int) -> float:
        """第 attempt 次失败后的等待秒数"""
        return self.delay_ms / 1000.0 * (2 ** (attempt - 1))

    def retry_operation(self, operation: Callable[[], T], operation_id: str) -> T:
        """
        执行操作，失败时按策略重试

        Raises:
            原始异常: 致命 / 严重错误
            RetryExhaustedError: 临时性错误重试用尽
        """
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                result = operation()
                self._retry_count.pop(operation_id, None)
                return result
            except Exception as e:
                last_error = e
                self._retry_count[operation_id] = self._retry_count.get(operation_id, 0) + 1
                category = classify_error(e)
                if category != ErrorCategory.TRANSIENT:
                    raise
                if attempt < self.max_retries:
                    delay = self.backoff_seconds(attempt)
                    logger.warning(
                        "操作 %s 第 %s 次失败，%.2fs 后重试: %s", operation_id, attempt, delay, e
                    )
                    self._sleep(delay)

        raise RetryExhaustedError(
            f"Operation failed after {self.max_retries} attempts: {last_error}",
            {"operation_id": operation_id, "attempts": self.max_retries, "error": str(last_error)},
            cause=last_error,
        )

    def get_retry_stats(self) -> Dict[str, int]:
        return {
            "total_retries": sum(self._retry_count.values()),
            "operations_retried": len(self._retry_count),
        }
