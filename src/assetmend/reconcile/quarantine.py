"""
assetmend.reconcile.quarantine - 隔离

- quarantine_orphaned_files: 没有记录引用的物理文件复制到隔离容器 orphaned/ 目录后删除源文件
- quarantine_unused_records: 零引用的记录连同文件跨容器移动到隔离容器根目录

孤立文件的已处理 id 形如 "<container_id>::<path>"。只有隔离成功的条目进入已处理集合，
每个批次持久化一次。
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List

from .errors import ErrorCode
from .file_ops import FileOperations, unique_filename
from .gateway import Container, ContainerRegistry
from .models import Failed, FileEntry, Location, Outcome, RecordEntry, Success, join_path
from .retry import CRITICAL_ERROR_TYPES

logger = logging.getLogger(__name__)

ORPHANED_DIR = "orphaned"


def orphan_id(entry: FileEntry) -> str:
    return f"{entry.container_id}::{entry.path}"


class QuarantineOrchestrator:
    """隔离编排器"""

    def __init__(
        self,
        file_ops: FileOperations,
        registry: ContainerRegistry,
        quarantine: Container,
        ctx,
        batch_size: int = 100,
        checkpoint_every_batches: int = 1,
    ):
        self.file_ops = file_ops
        self.registry = registry
        self.quarantine = quarantine
        self.ctx = ctx
        self.batch_size = max(1, batch_size)
        self.checkpoint_every_batches = max(1, checkpoint_every_batches)

    def _batches(self, items: List[Any]):
        batch_number = 0
        for start in range(0, len(items), self.batch_size):
            if self.ctx.stop_requested:
                logger.warning("收到停止请求，隔离在批次边界停止")
                return
            self.ctx.maybe_refresh_lock()
            batch_number += 1
            yield batch_number, items[start:start + self.batch_size]

    # =========================================================================
    # 孤立文件
    # =========================================================================

    def quarantine_orphaned_files(self, files: Iterable[FileEntry]) -> Dict[str, int]:
        stats = {"quarantined": 0, "missing": 0, "failed": 0, "skipped_processed": 0}
        pending = []
        for entry in files:
            if self.ctx.is_processed(orphan_id(entry)):
                stats["skipped_processed"] += 1
            else:
                pending.append(entry)

        for batch_number, batch in self._batches(pending):
            done: List[str] = []
            try:
                for entry in batch:
                    outcome = self.quarantine_file(entry)
                    if outcome.kind == "success":
                        stats["quarantined"] += 1
                        done.append(orphan_id(entry))
                    elif outcome.reason == "file_not_found":
                        stats["missing"] += 1
                    else:
                        stats["failed"] += 1
                    self.ctx.check_budget()
            finally:
                self.ctx.mark_processed(done)
            if batch_number % self.checkpoint_every_batches == 0:
                self.ctx.save_checkpoint({"status": "in_progress", "orphaned": dict(stats)})
        logger.info("孤立文件隔离完成: %s", stats)
        return stats

    def quarantine_file(self, entry: FileEntry) -> Outcome:
        """把单个孤立文件移入隔离区"""
        gateway = entry.gateway or self.registry.gateway(entry.container_id)
        try:
            if not gateway.exists(entry.path):
                self.ctx.record_error(
                    ErrorCode.QUARANTINE_FILE_MISSING,
                    f"Orphaned file disappeared before quarantine: {entry.container_name}::{entry.path}",
                    {"container": entry.container_name, "path": entry.path},
                )
                return Failed("file_not_found", {"path": entry.path})

            data = gateway.read(entry.path)
            target_gateway = self.quarantine.gateway
            name = unique_filename(target_gateway, ORPHANED_DIR, entry.name)
            target_path = join_path(ORPHANED_DIR, name)
            target_gateway.write(target_path, data)
            gateway.delete(entry.path)
        except CRITICAL_ERROR_TYPES:
            raise
        except Exception as e:
            message = getattr(e, "message", None) or str(e)
            self.ctx.record_error(
                ErrorCode.QUARANTINE_FILE,
                message,
                {"container": entry.container_name, "path": entry.path, "error_type": type(e).__name__},
            )
            return Failed("error", {"path": entry.path, "error": message})

        change = {
            "source_container": entry.container_id,
            "source_path": entry.path,
            "target_container": self.quarantine.id,
            "target_path": target_path,
            "size": len(data),
        }
        self.ctx.log_change("quarantined_orphaned_file", **change)
        return Success("quarantined", change)

    # =========================================================================
    # 未使用记录
    # =========================================================================

    def quarantine_unused_records(self, records: Iterable[RecordEntry]) -> Dict[str, int]:
        stats = {"quarantined": 0, "already_done": 0, "failed": 0, "skipped_processed": 0}
        pending = []
        for record in records:
            if self.ctx.is_processed(record.id):
                stats["skipped_processed"] += 1
            else:
                pending.append(record)

        destination = Location(self.quarantine.id, None, "")
        for batch_number, batch in self._batches(pending):
            done: List[int] = []
            try:
                for record in batch:
                    outcome = self.file_ops.apply_move(
                        record.id,
                        destination,
                        operation=ErrorCode.QUARANTINE_ASSET,
                        change_type="quarantined_unused_asset",
                    )
                    if outcome.kind == "success":
                        stats["quarantined"] += 1
                    elif outcome.kind == "already_done":
                        stats["already_done"] += 1
                    else:
                        stats["failed"] += 1
                    if outcome.ok:
                        done.append(record.id)
                    self.ctx.check_budget()
            finally:
                self.ctx.mark_processed(done)
            if batch_number % self.checkpoint_every_batches == 0:
                self.ctx.save_checkpoint({"status": "in_progress", "unused": dict(stats)})
        logger.info("未使用记录隔离完成: %s", stats)
        return stats
