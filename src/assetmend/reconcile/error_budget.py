"""
assetmend.reconcile.error_budget - 错误预算

按操作类型记录错误（消息、上下文、时间戳），并派生两个总数:
    expected  预期错误（目前只有 missing_source_file）
    critical  其余所有类型

熔断条件（任一满足即应停止运行）:
    1. critical >= critical_threshold
    2. missing > max(expected_missing + missing_slack, error_threshold)
    3. critical + max(0, missing - expected_missing) >= error_threshold

计数只在进程启动时清零，运行中不会被静默重置。
计数器的递增由锁保护，允许多个工作线程共享同一个预算对象。
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import ErrorCode

logger = logging.getLogger(__name__)


@dataclass
class ErrorEntry:
    """单条错误记录"""

    operation: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp,
        }


class ErrorBudget:
    """
    错误预算计数器

    Args:
        error_threshold: 非预期错误总阈值
        critical_threshold: 严重错误阈值
        expected_missing_count: 预期的缺失源文件数量
        missing_slack: 缺失文件数的容差
        error_log_path: 错误日志文件（每条错误追加一行）
    """

    def __init__(
        self,
        error_threshold: int = 50,
        critical_threshold: int = 20,
        expected_missing_count: int = 0,
        missing_slack: int = 10,
        error_log_path: Optional[Union[str, Path]] = None,
    ):
        self.error_threshold = error_threshold
        self.critical_threshold = critical_threshold
        self.expected_missing_count = expected_missing_count
        self.missing_slack = missing_slack
        self.error_log_path = Path(error_log_path) if error_log_path else None
        self._errors: Dict[str, List[ErrorEntry]] = {}
        self._lock = threading.Lock()

    # ---------- 记录 ----------

    def record(self, operation: str, message: str, context: Optional[Dict[str, Any]] = None) -> ErrorEntry:
        """记录一条错误"""
        entry = ErrorEntry(
            operation=operation,
            message=message,
            context=dict(context or {}),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        with self._lock:
            self._errors.setdefault(operation, []).append(entry)

        if operation in ErrorCode.EXPECTED:
            logger.warning("操作 '%s' 预期错误: %s", operation, message)
        else:
            logger.error("操作 '%s' 错误: %s | context=%s", operation, message, entry.context)
        self._append_log(entry)
        return entry

    def _append_log(self, entry: ErrorEntry) -> None:
        if self.error_log_path is None:
            return
        line = "[{}] {}: {} | Context: {}\n".format(
            entry.timestamp,
            entry.operation,
            entry.message,
            json.dumps(entry.context, ensure_ascii=False, default=str),
        )
        try:
            self.error_log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.error_log_path, "a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            logger.error("写入错误日志失败: %s (原始错误: %s)", e, entry.message)

    # ---------- 统计 ----------

    def count(self, operation: str) -> int:
        with self._lock:
            return len(self._errors.get(operation, []))

    @property
    def missing_total(self) -> int:
        return self.count(ErrorCode.MISSING_SOURCE_FILE)

    @property
    def expected_total(self) -> int:
        with self._lock:
            return sum(len(v) for k, v in self._errors.items() if k in ErrorCode.EXPECTED)

    @property
    def critical_total(self) -> int:
        with self._lock:
            return sum(len(v) for k, v in self._errors.items() if k not in ErrorCode.EXPECTED)

    @property
    def total(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._errors.values())

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return {k: len(v) for k, v in self._errors.items()}

    def entries(self, operation: Optional[str] = None) -> List[ErrorEntry]:
        with self._lock:
            if operation is not None:
                return list(self._errors.get(operation, []))
            return [e for entries in self._errors.values() for e in entries]

    # ---------- 熔断判断 ----------

    def check(self) -> Optional[str]:
        """
        判断是否超出预算

        Returns:
            超出时返回原因描述，否则 None
        """
        missing = self.missing_total
        critical = self.critical_total
        unexpected = critical + max(0, missing - self.expected_missing_count)
        log_hint = f" Error log: {self.error_log_path}" if self.error_log_path else ""

        if critical >= self.critical_threshold:
            return (
                f"Critical error threshold exceeded ({critical} unexpected errors). "
                f"Run halted for safety.{log_hint}"
            )

        max_missing = max(self.expected_missing_count + self.missing_slack, self.error_threshold)
        if missing > max_missing:
            return (
                f"Missing file errors ({missing}) exceed expected count "
                f"({self.expected_missing_count}). This may indicate a configuration issue.{log_hint}"
            )

        if unexpected >= self.error_threshold:
            return (
                f"Error threshold exceeded ({unexpected} unexpected errors). "
                f"Run halted for safety.{log_hint}"
            )
        return None

    def summary(self) -> Dict[str, Any]:
        return {
            "counts": self.counts(),
            "expected": self.expected_total,
            "critical": self.critical_total,
            "total": self.total,
            "thresholds": {
                "error_threshold": self.error_threshold,
                "critical_threshold": self.critical_threshold,
                "expected_missing_count": self.expected_missing_count,
                "missing_slack": self.missing_slack,
            },
        }
