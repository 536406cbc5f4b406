"""
assetmend.reconcile.link_repair - 断链修复

为期望路径上没有物理文件的记录寻找替代文件，并复制到记录的期望路径。

每条记录的处理:
    - 期望文件已存在于记录所在网关    -> AlreadyDone，不复制
    - 七层匹配均未命中（或模糊匹配被拒绝） -> missing_source_file 错误 + broken_link_not_fixed 审计
    - 命中                          -> copy_file_to_record + fixed_broken_link 审计
                                       置信度低于 low_confidence_warning 时记录 WARNING

批次结束时持久化已修复（或已存在）的记录 id，未修复的记录留给下次运行；
每 checkpoint_every_batches 个批次保存一次完整检查点；
每条记录之后检查错误预算。
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from .errors import ErrorCode, ReconcileIOError
from .file_ops import FileOperations
from .gateway import ContainerRegistry
from .matcher import LinkRepairMatcher
from .models import AlreadyDone, Failed, FileEntry, MatchResult, Outcome, RecordEntry
from .progress import ProgressCallback, ProgressReporter
from .retry import CRITICAL_ERROR_TYPES
from .search_index import SearchIndexes, build_search_indexes

logger = logging.getLogger(__name__)

MISSING_REPORT_FIELDS = [
    "asset_id",
    "filename",
    "container",
    "parent_path",
    "rejected_candidate",
    "rejected_confidence",
]


class LinkRepairService:
    """断链修复服务"""

    def __init__(
        self,
        file_ops: FileOperations,
        matcher: LinkRepairMatcher,
        registry: ContainerRegistry,
        ctx,
        batch_size: int = 100,
        checkpoint_every_batches: int = 1,
        low_confidence_warning: float = 0.90,
        progress_callback: Optional[ProgressCallback] = None,
        progress_interval: int = 50,
    ):
        self.file_ops = file_ops
        self.matcher = matcher
        self.registry = registry
        self.ctx = ctx
        self.batch_size = max(1, batch_size)
        self.checkpoint_every_batches = max(1, checkpoint_every_batches)
        self.low_confidence_warning = low_confidence_warning
        self.progress_callback = progress_callback
        self.progress_interval = progress_interval
        self.missing: List[Dict[str, Any]] = []
        self.stats: Dict[str, int] = {
            "fixed": 0,
            "already_present": 0,
            "already_copied": 0,
            "not_found": 0,
            "failed": 0,
            "skipped_processed": 0,
        }

    def fix_broken_links(
        self,
        broken_records: Sequence[RecordEntry],
        files: List[FileEntry],
        indexes: Optional[SearchIndexes] = None,
    ) -> Dict[str, Any]:
        """
        修复断链

        Args:
            broken_records: 期望路径上没有文件的记录
            files: 文件清单
            indexes: 预先构建的检索索引（为 None 时按 files 构建）

        Returns:
            统计字典

        Raises:
            RunHaltedError: 错误预算超限
        """
        if indexes is None:
            indexes = build_search_indexes(files)

        pending = []
        for record in broken_records:
            if self.ctx.is_processed(record.id):
                self.stats["skipped_processed"] += 1
            else:
                pending.append(record)
        logger.info(
            "断链修复: 待处理 %s 条，已处理跳过 %s 条", len(pending), self.stats["skipped_processed"]
        )

        progress = ProgressReporter("link repair", len(pending), self.progress_callback, self.progress_interval)
        batch_number = 0
        for start in range(0, len(pending), self.batch_size):
            if self.ctx.stop_requested:
                logger.warning("收到停止请求，断链修复在批次边界停止")
                break
            self.ctx.maybe_refresh_lock()
            batch = pending[start:start + self.batch_size]
            batch_number += 1
            done: List[int] = []
            try:
                for record in batch:
                    progress.increment()
                    outcome = self.repair_record(record, files, indexes)
                    # 未修复的记录留待下次运行重试
                    if outcome.ok:
                        done.append(record.id)
                    self.ctx.check_budget()
            finally:
                self.ctx.mark_processed(done)
            if batch_number % self.checkpoint_every_batches == 0:
                self.ctx.save_checkpoint({"status": "in_progress", "stats": dict(self.stats)})
            logger.info("断链修复批次 %s 完成: %s", batch_number, self.stats)

        return dict(self.stats, missing=len(self.missing))

    def repair_record(self, record: RecordEntry, files: List[FileEntry], indexes: SearchIndexes) -> Outcome:
        """修复单条记录"""
        try:
            container = self.registry.get(record.container_id)
            if container.gateway.exists(record.path):
                self.stats["already_present"] += 1
                return AlreadyDone("already_present", {"asset_id": record.id})

            match = self.matcher.find_file_for_record(record, files, indexes)
            if not match.found or match.file is None:
                return self._not_fixed(record, container.name, match)

            outcome = self.file_ops.copy_file_to_record(match.file, record)
        except CRITICAL_ERROR_TYPES:
            raise
        except Exception as e:
            message = getattr(e, "message", None) or str(e)
            self.stats["failed"] += 1
            self.ctx.record_error(
                ErrorCode.FIX_BROKEN_LINK,
                message,
                {"asset_id": record.id, "filename": record.name, "error_type": type(e).__name__},
            )
            return Failed("error", {"asset_id": record.id, "error": message})

        if outcome.kind == "success":
            self.stats["fixed"] += 1
            if match.confidence < self.low_confidence_warning:
                logger.warning(
                    "低置信度匹配: 资产 %s '%s' -> '%s' (%s, %.0f%%)",
                    record.id,
                    record.name,
                    match.file.path,
                    match.strategy,
                    match.confidence * 100,
                )
            self.ctx.log_change(
                "fixed_broken_link",
                asset_id=record.id,
                filename=record.name,
                source_container=match.file.container_name,
                source_path=match.file.path,
                target_path=record.path,
                strategy=match.strategy,
                confidence=round(match.confidence, 4),
            )
        elif outcome.reason == "already_copied":
            self.stats["already_copied"] += 1
        elif outcome.reason == "missing_source_file":
            self.stats["not_found"] += 1
            self._remember_missing(record, container.name, match)
        else:
            self.stats["failed"] += 1
        return outcome

    def _not_fixed(self, record: RecordEntry, container_name: str, match: MatchResult) -> Failed:
        self.stats["not_found"] += 1
        rejected = match.rejected_candidate.path if match.rejected_candidate is not None else None
        self.ctx.record_error(
            ErrorCode.MISSING_SOURCE_FILE,
            f"No replacement file found for asset {record.id} ({record.name})",
            {
                "asset_id": record.id,
                "filename": record.name,
                "container": container_name,
                "rejected_candidate": rejected,
                "rejected_confidence": match.rejected_confidence,
            },
        )
        self.ctx.log_change(
            "broken_link_not_fixed",
            asset_id=record.id,
            filename=record.name,
            container=container_name,
            parent_path=record.parent_path,
            rejected_candidate=rejected,
            rejected_confidence=match.rejected_confidence,
        )
        self._remember_missing(record, container_name, match)
        return Failed("missing_source_file", {"asset_id": record.id})

    def _remember_missing(self, record: RecordEntry, container_name: str, match: Optional[MatchResult]) -> None:
        rejected = match.rejected_candidate if match is not None else None
        self.missing.append(
            {
                "asset_id": record.id,
                "filename": record.name,
                "container": container_name,
                "parent_path": record.parent_path,
                "rejected_candidate": rejected.path if rejected is not None else "",
                "rejected_confidence": (
                    f"{match.rejected_confidence:.4f}"
                    if match is not None and match.rejected_confidence is not None
                    else ""
                ),
            }
        )

    def write_missing_report(self, path: Union[str, Path]) -> Path:
        """把未能修复的记录写成 CSV"""
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8", newline="") as f:
                writer = csv.DictWriter(f, fieldnames=MISSING_REPORT_FIELDS)
                writer.writeheader()
                for row in self.missing:
                    writer.writerow(row)
        except OSError as e:
            raise ReconcileIOError(f"无法写入缺失文件报告: {e}", {"path": str(path), "error": str(e)})
        logger.info("缺失文件报告已写入: %s (%s 条)", path, len(self.missing))
        return path
