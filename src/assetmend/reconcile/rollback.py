"""
assetmend.reconcile.rollback - 基于变更日志的回滚

按 sequence 倒序读取审计日志，为可逆的变更生成反向操作:

    moved_asset / quarantined_unused_asset  记录与物理文件移回原位置（原文件名）
    quarantined_orphaned_file               文件从隔离区复制回原路径并删除隔离副本

阶段选择:
    mode="only"  只回滚 phases 中列出的阶段
    mode="from"  回滚 phases 中最早阶段及其之后的所有阶段

其余变更类型（删除记录、复制文件等）不可逆，计入 irreversible。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .audit import AuditLog
from .errors import ValidationError
from .file_ops import same_physical_file
from .gateway import ContainerRegistry
from .models import Phase, join_path
from .record_store import RecordStore
from .retry import CRITICAL_ERROR_TYPES

logger = logging.getLogger(__name__)

MODE_ONLY = "only"
MODE_FROM = "from"

ACTION_MOVE_RECORD_BACK = "move_record_back"
ACTION_RESTORE_ORPHAN = "restore_orphaned_file"

REVERSIBLE_CHANGES = {
    "moved_asset": ACTION_MOVE_RECORD_BACK,
    "quarantined_unused_asset": ACTION_MOVE_RECORD_BACK,
    "quarantined_orphaned_file": ACTION_RESTORE_ORPHAN,
}


@dataclass
class RollbackStep:
    sequence: int
    change_type: str
    phase: Optional[str]
    action: str
    change: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "change_type": self.change_type,
            "phase": self.phase,
            "action": self.action,
            "asset_id": self.change.get("asset_id"),
        }


@dataclass
class RollbackPlan:
    run_id: str
    steps: List[RollbackStep] = field(default_factory=list)
    irreversible: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "steps": [s.to_dict() for s in self.steps],
            "irreversible": self.irreversible,
        }


def _selected_phases(phases: Optional[Iterable[str]], mode: str) -> Optional[set]:
    if mode not in (MODE_ONLY, MODE_FROM):
        raise ValidationError(f"无效的回滚模式: {mode}", {"mode": mode, "valid": [MODE_ONLY, MODE_FROM]})
    if not phases:
        return None
    phases = list(phases)
    unknown = [p for p in phases if p not in Phase.ORDER]
    if unknown:
        raise ValidationError(f"未知阶段: {unknown}", {"phases": unknown, "valid": list(Phase.ORDER)})
    if mode == MODE_ONLY:
        return set(phases)
    first = min(Phase.ORDER.index(p) for p in phases)
    return set(Phase.ORDER[first:])


class RollbackEngine:
    """回滚引擎"""

    def __init__(self, audit_log: AuditLog, record_store: RecordStore, registry: ContainerRegistry):
        self.audit_log = audit_log
        self.record_store = record_store
        self.registry = registry

    def plan(self, phases: Optional[Iterable[str]] = None, mode: str = MODE_ONLY) -> RollbackPlan:
        """生成回滚计划（sequence 倒序）"""
        selected = _selected_phases(phases, mode)
        plan = RollbackPlan(run_id=self.audit_log.run_id)
        for change in reversed(self.audit_log.load_changes()):
            if selected is not None and change.get("phase") not in selected:
                continue
            change_type = change.get("type")
            action = REVERSIBLE_CHANGES.get(change_type)
            if action is None:
                plan.irreversible += 1
                continue
            plan.steps.append(
                RollbackStep(
                    sequence=int(change.get("sequence") or 0),
                    change_type=change_type,
                    phase=change.get("phase"),
                    action=action,
                    change=change,
                )
            )
        logger.info("回滚计划: %s 步，不可逆变更 %s 条", len(plan.steps), plan.irreversible)
        return plan

    def execute(self, plan: RollbackPlan, dry_run: bool = False) -> Dict[str, Any]:
        """执行回滚计划"""
        result: Dict[str, Any] = {
            "run_id": plan.run_id,
            "planned": len(plan.steps),
            "applied": 0,
            "skipped": 0,
            "failed": 0,
            "irreversible": plan.irreversible,
            "dry_run": dry_run,
            "failures": [],
        }
        if dry_run:
            return result

        for step in plan.steps:
            try:
                if step.action == ACTION_MOVE_RECORD_BACK:
                    applied = self._move_record_back(step.change)
                else:
                    applied = self._restore_orphan(step.change)
            except CRITICAL_ERROR_TYPES:
                raise
            except Exception as e:
                message = getattr(e, "message", None) or str(e)
                logger.warning("回滚步骤 %s (%s) 失败: %s", step.sequence, step.change_type, message)
                result["failed"] += 1
                result["failures"].append({"sequence": step.sequence, "error": message})
                continue
            result["applied" if applied else "skipped"] += 1
        logger.info(
            "回滚完成: 应用 %s，跳过 %s，失败 %s", result["applied"], result["skipped"], result["failed"]
        )
        return result

    def _move_record_back(self, change: Dict[str, Any]) -> bool:
        asset_id = change["asset_id"]
        original_name = change["filename"]
        current_name = change.get("new_filename") or original_name
        from_container = change["from_container"]
        from_parent_path = change.get("from_parent_path") or ""
        to_container = change["to_container"]
        to_parent_path = change.get("to_parent_path") or ""

        current_path = join_path(to_parent_path, current_name)
        original_path = join_path(from_parent_path, original_name)
        current_gateway = self.registry.gateway(to_container)
        original_gateway = self.registry.gateway(from_container)

        delete_after_commit = False
        with self.record_store.transaction():
            record = self.record_store.get(asset_id)
            if record is None:
                logger.info("资产 %s 已不存在，跳过回滚", asset_id)
                return False
            if record.container_id == from_container and record.path == original_path:
                return False

            self.record_store.update_location(
                asset_id, from_container, change.get("from_parent_id"), from_parent_path, original_name
            )
            if same_physical_file(current_gateway, current_path, original_gateway, original_path):
                return True
            if current_gateway.exists(current_path):
                if original_gateway.exists(original_path):
                    # 原位置的文件在移动时被保留
                    delete_after_commit = True
                elif from_container == to_container:
                    current_gateway.move(current_path, original_path)
                else:
                    original_gateway.write(original_path, current_gateway.read(current_path))
                    delete_after_commit = True

        if delete_after_commit and current_gateway.exists(current_path):
            current_gateway.delete(current_path)
        return True

    def _restore_orphan(self, change: Dict[str, Any]) -> bool:
        quarantine_gateway = self.registry.gateway(change["target_container"])
        source_gateway = self.registry.gateway(change["source_container"])
        target_path = change["target_path"]
        source_path = change["source_path"]
        if not quarantine_gateway.exists(target_path):
            return False
        if not source_gateway.exists(source_path):
            source_gateway.write(source_path, quarantine_gateway.read(target_path))
        quarantine_gateway.delete(target_path)
        return True
