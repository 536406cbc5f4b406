"""
assetmend.reconcile.audit - 变更审计日志

每次对记录或物理文件的修改都追加一条变更，格式为 JSONL（每行一个 JSON 对象），
按 sequence 单调递增排序:

    {"sequence": 12, "type": "moved_asset", "timestamp": "...", "phase": "consolidate",
     "asset_id": 42, "from_container": 1, "to_container": 3, ...}

写入是缓冲的: 缓冲达到 flush_every 条、切换阶段或显式 flush 时落盘。
核心流程不会读取审计日志，读取只发生在回滚与诊断中。
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .checkpoint import validate_run_id
from .errors import ReconcileIOError

logger = logging.getLogger(__name__)

CHANGES_DIRNAME = "changes"
CHANGES_SUFFIX = ".jsonl"


class AuditLog:
    """
    变更审计日志

    Args:
        state_dir: 状态目录
        run_id: 运行 ID（恢复运行时 sequence 从已有日志继续）
        flush_every: 缓冲条数
    """

    def __init__(self, state_dir: Union[str, Path], run_id: str, flush_every: int = 5):
        self.state_dir = Path(state_dir)
        self.run_id = validate_run_id(run_id)
        self.flush_every = max(1, flush_every)
        self.phase: Optional[str] = None
        self._buffer: List[Dict[str, Any]] = []
        self._lock = threading.Lock()
        self._sequence = self._last_sequence()

    @property
    def path(self) -> Path:
        return self.state_dir / CHANGES_DIRNAME / f"{self.run_id}{CHANGES_SUFFIX}"

    def _last_sequence(self) -> int:
        last = 0
        for change in self._read(self.path):
            last = max(last, int(change.get("sequence") or 0))
        return last

    def log_change(self, change_type: str, **fields: Any) -> Dict[str, Any]:
        """记录一次变更"""
        with self._lock:
            self._sequence += 1
            change = {
                "sequence": self._sequence,
                "type": change_type,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "phase": self.phase,
            }
            change.update(fields)
            self._buffer.append(change)
            should_flush = len(self._buffer) >= self.flush_every
        if should_flush:
            self.flush()
        return change

    def set_phase(self, phase: str) -> None:
        """切换阶段（先落盘上一阶段的缓冲）"""
        self.flush()
        self.phase = phase

    def flush(self) -> int:
        """
        落盘缓冲

        写入失败时缓冲保留，下次 flush 重试。

        Raises:
            ReconcileIOError: 写入失败
        """
        with self._lock:
            if not self._buffer:
                return 0
            lines = "".join(
                json.dumps(change, ensure_ascii=False, default=str) + "\n" for change in self._buffer
            )
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(lines)
            except OSError as e:
                raise ReconcileIOError(
                    f"写入审计日志失败: {self.path}",
                    {"path": str(self.path), "pending": len(self._buffer), "error": str(e)},
                )
            written = len(self._buffer)
            self._buffer = []
        logger.debug("审计日志已写入 %s 条", written)
        return written

    @property
    def pending(self) -> int:
        return len(self._buffer)

    # ---------- 读取 ----------

    @staticmethod
    def _read(path: Path) -> List[Dict[str, Any]]:
        if not path.is_file():
            return []
        changes = []
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    changes.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning("审计日志第 %s 行无法解析，已跳过: %s", lineno, path)
        return changes

    def load_changes(self, phase: Optional[str] = None) -> List[Dict[str, Any]]:
        """读取已落盘的变更（按 sequence 升序）"""
        changes = self._read(self.path)
        if phase is not None:
            changes = [c for c in changes if c.get("phase") == phase]
        changes.sort(key=lambda c: int(c.get("sequence") or 0))
        return changes

    @classmethod
    def list_runs(cls, state_dir: Union[str, Path]) -> List[Dict[str, Any]]:
        """列出有变更日志的运行"""
        directory = Path(state_dir) / CHANGES_DIRNAME
        if not directory.is_dir():
            return []
        runs = []
        for path in sorted(directory.glob(f"*{CHANGES_SUFFIX}")):
            changes = cls._read(path)
            phases = sorted({c.get("phase") for c in changes if c.get("phase")})
            runs.append(
                {
                    "run_id": path.name[: -len(CHANGES_SUFFIX)],
                    "changes": len(changes),
                    "phases": phases,
                    "last_timestamp": changes[-1].get("timestamp") if changes else None,
                }
            )
        return runs
