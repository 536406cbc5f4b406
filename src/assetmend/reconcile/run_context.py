"""
assetmend.reconcile.run_context - 运行上下文

把一次运行需要共享的状态集中到一个对象中，显式传给各个编排器:
    - 运行 ID 与当前阶段
    - 检查点存储（已处理 id 集合 + 完整检查点）
    - 错误预算
    - 迁移锁心跳
    - 变更审计日志
    - 协作式停止标记（只在批次之间检查）
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterable, Optional, Set

from .audit import AuditLog
from .checkpoint import CheckpointStore, ProcessedId
from .error_budget import ErrorBudget
from .errors import RunHaltedError
from .lock import LockHeartbeat

logger = logging.getLogger(__name__)

RESUME_COMMAND_TEMPLATE = "assetmend run --resume {run_id}"


class RunContext:
    """单次运行的共享上下文"""

    def __init__(
        self,
        run_id: str,
        checkpoints: CheckpointStore,
        budget: ErrorBudget,
        heartbeat: Optional[LockHeartbeat] = None,
        audit: Optional[AuditLog] = None,
    ):
        self.run_id = run_id
        self.checkpoints = checkpoints
        self.budget = budget
        self.heartbeat = heartbeat
        self.audit = audit
        self.phase: Optional[str] = None
        self.last_checkpoint_id: Optional[str] = None
        self._processed: Set[ProcessedId] = set()
        self._stop_event = threading.Event()
        self._lock = threading.Lock()

    @property
    def resume_command(self) -> str:
        return RESUME_COMMAND_TEMPLATE.format(run_id=self.run_id)

    # ---------- 阶段与已处理集合 ----------

    def start_phase(self, phase: str) -> None:
        """进入阶段: 载入该阶段的已处理集合并切换审计阶段"""
        self.phase = phase
        with self._lock:
            self._processed = set(self.checkpoints.load_processed_ids(phase))
        if self.audit is not None:
            self.audit.set_phase(phase)
        if self._processed:
            logger.info("阶段 %s 恢复: 已处理 %s 条，将跳过", phase, len(self._processed))

    def is_processed(self, item_id: ProcessedId) -> bool:
        with self._lock:
            return item_id in self._processed

    @property
    def processed_count(self) -> int:
        with self._lock:
            return len(self._processed)

    def mark_processed(self, ids: Iterable[ProcessedId]) -> None:
        """将 ids 并入已处理集合并立即持久化"""
        ids = [i for i in ids if not self.is_processed(i)]
        if not ids:
            return
        self.checkpoints.update_processed_ids(self._require_phase(), ids)
        with self._lock:
            self._processed.update(ids)

    def _require_phase(self) -> str:
        if self.phase is None:
            raise RuntimeError("RunContext.start_phase() 尚未调用")
        return self.phase

    # ---------- 检查点 ----------

    def save_checkpoint(self, payload: Optional[Dict[str, Any]] = None) -> str:
        """保存完整检查点（附带错误统计），返回检查点标识"""
        data = dict(payload or {})
        data.setdefault("errors", self.budget.counts())
        self.last_checkpoint_id = self.checkpoints.save(self._require_phase(), data)
        if self.audit is not None:
            self.audit.flush()
        return self.last_checkpoint_id

    # ---------- 错误预算 ----------

    def record_error(self, operation: str, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        context = dict(context or {})
        if self.phase:
            context.setdefault("phase", self.phase)
        self.budget.record(operation, message, context)

    def check_budget(self) -> None:
        """
        检查错误预算

        Raises:
            RunHaltedError: 超出预算；消息包含最近检查点标识与恢复命令
        """
        reason = self.budget.check()
        if reason is None:
            return
        checkpoint_id = self.last_checkpoint_id
        if checkpoint_id is None:
            latest = self.checkpoints.latest()
            checkpoint_id = latest["checkpoint_id"] if latest else None
        logger.error("运行熔断: %s", reason)
        raise RunHaltedError(
            f"{reason} Last checkpoint: {checkpoint_id or 'none'}. "
            f"Resume with: {self.resume_command}",
            {"run_id": self.run_id, "phase": self.phase, "errors": self.budget.counts()},
            checkpoint_id=checkpoint_id,
            resume_command=self.resume_command,
        )

    # ---------- 协作式停止 / 锁续租 ----------

    def request_stop(self) -> None:
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def maybe_refresh_lock(self) -> bool:
        if self.heartbeat is None:
            return False
        return self.heartbeat.maybe_refresh()

    def log_change(self, change_type: str, **fields: Any) -> None:
        if self.audit is not None:
            self.audit.log_change(change_type, **fields)
