"""
assetmend.reconcile.consolidation - 记录整理

把被引用但不在目标位置的记录（连同物理文件）移动到目标容器的目标目录。

- 已处理 id 在开始前过滤，重复执行不会重复移动
- 已在目标位置的记录计为 skipped 并标记为已处理
- 只有成功（或已完成）的记录进入已处理集合，失败的记录在恢复运行时重试
- 已处理 id 每个批次持久化一次
- 停止请求只在批次之间检查，单条记录的事务总会完成
- 每条记录之后检查错误预算，超限时抛出 RunHaltedError
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from .errors import ErrorCode
from .file_ops import FileOperations, same_location
from .models import Location, RecordEntry
from .progress import ProgressCallback, ProgressReporter

logger = logging.getLogger(__name__)


class ConsolidationOrchestrator:
    """整理编排器"""

    def __init__(
        self,
        file_ops: FileOperations,
        ctx,
        batch_size: int = 100,
        checkpoint_every_batches: int = 1,
        progress_callback: Optional[ProgressCallback] = None,
        progress_interval: int = 50,
    ):
        self.file_ops = file_ops
        self.ctx = ctx
        self.batch_size = max(1, batch_size)
        self.checkpoint_every_batches = max(1, checkpoint_every_batches)
        self.progress_callback = progress_callback
        self.progress_interval = progress_interval

    def consolidate(self, records: Iterable[RecordEntry], target: Location) -> Dict[str, Any]:
        """
        整理记录到 target

        Returns:
            {moved, already_done, skipped, failed, skipped_processed, stopped}
        """
        stats: Dict[str, Any] = {
            "moved": 0,
            "already_done": 0,
            "skipped": 0,
            "failed": 0,
            "skipped_processed": 0,
            "stopped": False,
        }

        pending: List[RecordEntry] = []
        for record in records:
            if self.ctx.is_processed(record.id):
                stats["skipped_processed"] += 1
            else:
                pending.append(record)
        logger.info(
            "整理到 %s: 待处理 %s 条，已处理跳过 %s 条",
            target.describe(),
            len(pending),
            stats["skipped_processed"],
        )

        progress = ProgressReporter("consolidate", len(pending), self.progress_callback, self.progress_interval)
        batch_number = 0
        for start in range(0, len(pending), self.batch_size):
            if self.ctx.stop_requested:
                logger.warning("收到停止请求，整理在批次边界停止")
                stats["stopped"] = True
                break
            self.ctx.maybe_refresh_lock()
            batch = pending[start:start + self.batch_size]
            batch_number += 1

            done: List[int] = []
            try:
                for record in batch:
                    progress.increment()
                    if same_location(record, target):
                        stats["skipped"] += 1
                        done.append(record.id)
                        continue
                    outcome = self.file_ops.apply_move(
                        record.id, target, operation=ErrorCode.CONSOLIDATE_ASSET, change_type="moved_asset"
                    )
                    if outcome.kind == "success":
                        stats["moved"] += 1
                    elif outcome.kind == "already_done":
                        stats["already_done"] += 1
                    else:
                        stats["failed"] += 1
                    # 失败的记录留待下次运行重试
                    if outcome.ok:
                        done.append(record.id)
                    self.ctx.check_budget()
            finally:
                self.ctx.mark_processed(done)

            if batch_number % self.checkpoint_every_batches == 0:
                self.ctx.save_checkpoint({"status": "in_progress", "stats": dict(stats)})
            logger.info("整理批次 %s 完成: %s", batch_number, stats)

        self.ctx.save_checkpoint({"status": "in_progress", "stats": dict(stats)})
        return stats
