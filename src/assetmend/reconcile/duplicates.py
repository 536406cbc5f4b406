"""
assetmend.reconcile.duplicates - 重复解析引擎

处理多个记录指向同一物理文件的情况。流程按组状态推进，任何破坏性操作之前
都要求组状态证明上一阶段的安全门已经通过:

    analyze_file_duplicates    按 容器 handle + 规范化相对路径 分组，>= 2 条记录的组持久化为 pending
    stage_files_to_quarantine  备份物理文件到隔离区 temp/<run_id>/<md5(file_key)>/<basename>，-> staged
    verify_file_safety         检查所有组都已备份；ensure_safe() 在存在不安全组时拒绝继续
    determine_active_records   选出主记录（只设置一次），-> analyzed
    resolve_groups             引用转移到主记录，必要时升级主记录文件，删除其余记录，-> completed
    delete_unused_duplicates   删除零引用的非主记录
    cleanup_quarantine         只清理 completed 组的备份

另外提供按文件名的重复合并 resolve_filename_duplicates（pick_winner 选出保留记录）。
"""

from __future__ import annotations

import logging
import posixpath
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .config import DuplicateSettings
from .duplicate_store import DuplicateGroupStore
from .errors import ErrorCode, UnsafeDeletionError
from .file_ops import FileOperations, same_physical_file
from .gateway import Container, ContainerRegistry, normalize_path
from .hashing import md5
from .lock import default_owner
from .models import DuplicateGroupRecord, GroupStatus, RecordEntry
from .record_store import RecordStore
from .retry import CRITICAL_ERROR_TYPES

logger = logging.getLogger(__name__)


def build_file_key(handle: str, path: str) -> str:
    """重复组键: <容器 handle>::<规范化相对路径>"""
    return f"{handle}::{normalize_path(path)}"


def pick_winner(records: Sequence[RecordEntry]) -> RecordEntry:
    """
    同名记录中选出保留者

    依次比较: 引用数、文件大小、最后修改时间、id（较大者优先）
    """

    def key(record: RecordEntry):
        updated = record.date_updated.timestamp() if record.date_updated else 0.0
        return (record.reference_count, record.size or 0, updated, record.id)

    return max(records, key=key)


class DuplicateResolutionEngine:
    """
    重复解析引擎

    Args:
        record_store: 记录库
        registry: 容器注册表
        group_store: 重复组存储
        quarantine: 隔离区容器（备份目的地）
        ctx: 运行上下文
        file_ops: 文件操作服务（用于共享文件检查）
        settings: 主记录优先目录等参数
    """

    def __init__(
        self,
        record_store: RecordStore,
        registry: ContainerRegistry,
        group_store: DuplicateGroupStore,
        quarantine: Container,
        ctx,
        file_ops: Optional[FileOperations] = None,
        settings: Optional[DuplicateSettings] = None,
        owner: Optional[str] = None,
    ):
        self.record_store = record_store
        self.registry = registry
        self.group_store = group_store
        self.quarantine = quarantine
        self.ctx = ctx
        self.file_ops = file_ops or FileOperations(record_store, registry, ctx)
        self.settings = settings or DuplicateSettings()
        self.owner = owner or default_owner()

    @property
    def run_id(self) -> str:
        return self.ctx.run_id

    def _reload(self, groups: Optional[Iterable[DuplicateGroupRecord]]) -> List[DuplicateGroupRecord]:
        if groups is None:
            return self.group_store.list(self.run_id)
        reloaded = []
        for group in groups:
            current = self.group_store.get(group.run_id, group.file_key)
            reloaded.append(current if current is not None else group)
        return reloaded

    def _record_failure(self, operation: str, group: DuplicateGroupRecord, error: Exception, **context: Any) -> None:
        message = getattr(error, "message", None) or str(error)
        self.ctx.record_error(
            operation,
            message,
            dict(context, file_key=group.file_key, error_type=type(error).__name__),
        )

    def _stop_before_group(self, stats: Dict[str, Any], step: str) -> bool:
        """每个组开始前检查停止请求并按需续租迁移锁"""
        if self.ctx.stop_requested:
            logger.warning("收到停止请求，重复组%s在组边界停止", step)
            stats["stopped"] = True
            return True
        self.ctx.maybe_refresh_lock()
        return False

    # =========================================================================
    # 分组
    # =========================================================================

    def analyze_file_duplicates(self, records: Iterable[RecordEntry]) -> List[DuplicateGroupRecord]:
        """按物理文件分组，持久化 >= 2 条记录的组"""
        buckets: "OrderedDict[str, List[RecordEntry]]" = OrderedDict()
        containers: Dict[str, Container] = {}
        for record in records:
            container = self.registry.find(record.container_id)
            if container is None:
                continue
            key = build_file_key(container.handle, record.path)
            buckets.setdefault(key, []).append(record)
            containers[key] = container

        groups = []
        for key, members in buckets.items():
            if len(members) < 2:
                continue
            container = containers[key]
            group = self.group_store.upsert(
                DuplicateGroupRecord(
                    run_id=self.run_id,
                    file_key=key,
                    original_path=normalize_path(members[0].path),
                    container_name=container.name,
                    container_handle=container.handle,
                    asset_ids=[r.id for r in members],
                )
            )
            groups.append(group)
        logger.info("发现 %s 个物理文件重复组", len(groups))
        return groups

    # =========================================================================
    # 备份
    # =========================================================================

    def temp_path_for(self, group: DuplicateGroupRecord) -> str:
        basename = posixpath.basename(group.original_path)
        return f"{self.settings.quarantine_temp_prefix}/{self.run_id}/{md5(group.file_key)}/{basename}"

    def stage_files_to_quarantine(self, groups: Optional[Iterable[DuplicateGroupRecord]] = None) -> Dict[str, Any]:
        """把每个 pending 组的物理文件备份到隔离区"""
        stats = {"staged": 0, "skipped": 0, "missing": 0, "errors": 0, "stopped": False}
        for group in self._reload(groups):
            if self._stop_before_group(stats, "备份"):
                break
            if GroupStatus.at_least(group.status, GroupStatus.STAGED):
                stats["skipped"] += 1
                continue
            if not self.group_store.claim(group.run_id, group.file_key, self.owner):
                logger.info("重复组已被其他执行者认领，跳过: %s", group.file_key)
                stats["skipped"] += 1
                continue
            try:
                gateway = self.registry.by_handle(group.container_handle).gateway
                if not gateway.exists(group.original_path):
                    stats["missing"] += 1
                    self.ctx.record_error(
                        ErrorCode.MISSING_SOURCE_FILE,
                        f"Duplicate group source missing: {group.file_key}",
                        {"file_key": group.file_key, "asset_ids": group.asset_ids},
                    )
                    continue
                data = gateway.read(group.original_path)
                temp_path = self.temp_path_for(group)
                self.quarantine.gateway.write(temp_path, data)
                group.temp_path = temp_path
                group.physical_file_hash = md5(data)
                group.file_size = len(data)
                group.advance(GroupStatus.STAGED)
                self.group_store.save(group)
                self.ctx.log_change(
                    "staged_duplicate_file",
                    file_key=group.file_key,
                    temp_path=temp_path,
                    hash=group.physical_file_hash,
                    size=group.file_size,
                )
                stats["staged"] += 1
            except CRITICAL_ERROR_TYPES:
                raise
            except Exception as e:
                stats["errors"] += 1
                self._record_failure(ErrorCode.STAGE_DUPLICATE, group, e)
            finally:
                self.group_store.release(group.run_id, group.file_key, self.owner)
            self.ctx.check_budget()
        logger.info("重复组备份完成: %s", stats)
        return stats

    # =========================================================================
    # 安全门
    # =========================================================================

    def verify_file_safety(self, groups: Optional[Iterable[DuplicateGroupRecord]] = None) -> Dict[str, Any]:
        """
        检查每个组的备份状态

        - staged / analyzed: 隔离区中 temp_path 存在才安全
        - completed: 安全
        - pending 或组记录丢失: 不安全
        """
        result: Dict[str, Any] = {"safe": 0, "unsafe": 0, "total": 0, "details": []}
        for group in groups if groups is not None else self.group_store.list(self.run_id):
            result["total"] += 1
            current = self.group_store.get(group.run_id, group.file_key)
            if current is None:
                safe, reason = False, "group_record_missing"
            elif current.status == GroupStatus.COMPLETED:
                safe, reason = True, "completed"
            elif current.status in (GroupStatus.STAGED, GroupStatus.ANALYZED):
                if current.temp_path and self.quarantine.gateway.exists(current.temp_path):
                    safe, reason = True, "backup_present"
                else:
                    safe, reason = False, "backup_missing"
            else:
                safe, reason = False, "not_staged"
            result["safe" if safe else "unsafe"] += 1
            result["details"].append(
                {
                    "file_key": group.file_key,
                    "status": current.status if current else None,
                    "safe": safe,
                    "reason": reason,
                }
            )
        return result

    def ensure_safe(self, groups: Optional[Iterable[DuplicateGroupRecord]] = None) -> Dict[str, Any]:
        """
        Raises:
            UnsafeDeletionError: 存在未备份的组
        """
        report = self.verify_file_safety(groups)
        if report["unsafe"] > 0:
            unsafe = [d for d in report["details"] if not d["safe"]]
            raise UnsafeDeletionError(
                f"{report['unsafe']} duplicate group(s) are not safely backed up; refusing destructive step",
                {"unsafe": report["unsafe"], "total": report["total"], "groups": unsafe[:20]},
            )
        return report

    # =========================================================================
    # 主记录
    # =========================================================================

    def _matches_priority(self, value: str) -> bool:
        lowered = (value or "").lower()
        return any(p.lower() in lowered for p in self.settings.priority_folder_patterns if p)

    def select_primary_record(self, records: Sequence[RecordEntry]) -> RecordEntry:
        """
        选出主记录

        1. 所在目录匹配优先模式
        2. 所在容器名称匹配优先模式
        3. 引用数最多（相同时取先出现者）
        """
        if not records:
            raise ValueError("records 不能为空")
        for record in records:
            if self._matches_priority(record.parent_path):
                return record
        for record in records:
            container = self.registry.find(record.container_id)
            if container is not None and self._matches_priority(container.name):
                return record
        best = records[0]
        for record in records[1:]:
            if record.reference_count > best.reference_count:
                best = record
        return best

    def determine_active_records(self, groups: Optional[Iterable[DuplicateGroupRecord]] = None) -> Dict[str, Any]:
        """为 staged 组选出主记录，-> analyzed"""
        stats = {"analyzed": 0, "skipped": 0, "stopped": False}
        for group in self._reload(groups):
            if self._stop_before_group(stats, "主记录选择"):
                break
            if group.status == GroupStatus.PENDING:
                logger.warning("重复组尚未备份，不能选择主记录: %s", group.file_key)
                stats["skipped"] += 1
                continue
            if GroupStatus.at_least(group.status, GroupStatus.ANALYZED) and group.primary_asset_id is not None:
                stats["skipped"] += 1
                continue
            members = [r for r in (self.record_store.get(i) for i in group.asset_ids) if r is not None]
            if not members:
                stats["skipped"] += 1
                continue
            if group.primary_asset_id is None:
                group.primary_asset_id = self.select_primary_record(members).id
            group.advance(GroupStatus.ANALYZED)
            self.group_store.save(group)
            stats["analyzed"] += 1
        return stats

    # =========================================================================
    # 解析
    # =========================================================================

    def resolve_groups(self, groups: Optional[Iterable[DuplicateGroupRecord]] = None) -> Dict[str, Any]:
        """合并 analyzed 组：引用转移到主记录并删除其余记录"""
        current = self._reload(groups)
        self.ensure_safe(current)
        stats = {
            "groups_completed": 0,
            "records_deleted": 0,
            "references_moved": 0,
            "upgraded": 0,
            "errors": 0,
            "stopped": False,
        }

        for group in current:
            if self._stop_before_group(stats, "解析"):
                break
            if group.status != GroupStatus.ANALYZED or group.primary_asset_id is None:
                continue
            if not self.group_store.claim(group.run_id, group.file_key, self.owner):
                continue
            try:
                primary = self.record_store.get(group.primary_asset_id)
                if primary is None:
                    stats["errors"] += 1
                    self.ctx.record_error(
                        ErrorCode.RESOLVE_DUPLICATE,
                        f"Primary asset {group.primary_asset_id} no longer exists",
                        {"file_key": group.file_key},
                    )
                    continue
                failed = 0
                for asset_id in group.asset_ids:
                    if asset_id == primary.id:
                        continue
                    try:
                        self._merge_into_primary(asset_id, primary, group, stats)
                    except CRITICAL_ERROR_TYPES:
                        raise
                    except Exception as e:
                        failed += 1
                        stats["errors"] += 1
                        self._record_failure(ErrorCode.RESOLVE_DUPLICATE, group, e, asset_id=asset_id)
                if failed == 0:
                    group.advance(GroupStatus.COMPLETED)
                    self.group_store.save(group)
                    stats["groups_completed"] += 1
            finally:
                self.group_store.release(group.run_id, group.file_key, self.owner)
            self.ctx.check_budget()
        logger.info("重复组解析完成: %s", stats)
        return stats

    def _merge_into_primary(
        self, asset_id: int, primary: RecordEntry, group: DuplicateGroupRecord, stats: Dict[str, int]
    ) -> None:
        with self.record_store.transaction():
            loser = self.record_store.get(asset_id)
            if loser is None:
                return
            moved = self.record_store.transfer_references(loser.id, primary.id)
            stats["references_moved"] += moved

            primary_gateway = self.registry.gateway(primary.container_id)
            loser_gateway = self.registry.gateway(loser.container_id)
            distinct_file = not same_physical_file(loser_gateway, loser.path, primary_gateway, primary.path)

            if distinct_file and loser_gateway.exists(loser.path):
                data = loser_gateway.read(loser.path)
                primary_size = len(primary_gateway.read(primary.path)) if primary_gateway.exists(primary.path) else 0
                if len(data) > primary_size:
                    primary_gateway.write(primary.path, data)
                    self.record_store.update_size(primary.id, len(data))
                    stats["upgraded"] += 1
                    self.ctx.log_change(
                        "upgrade_asset_file",
                        asset_id=primary.id,
                        from_asset_id=loser.id,
                        old_size=primary_size,
                        new_size=len(data),
                    )

            if distinct_file:
                if self.file_ops.is_file_shared(loser.container_id, loser.path, exclude_id=loser.id):
                    self.ctx.log_change(
                        "delete_duplicate_asset_shared_file",
                        asset_id=loser.id,
                        primary_id=primary.id,
                        path=loser.path,
                    )
                elif loser_gateway.exists(loser.path):
                    loser_gateway.delete(loser.path)

            self.record_store.delete(loser.id)
        stats["records_deleted"] += 1
        self.ctx.log_change(
            "deleted_duplicate_asset",
            asset_id=loser.id,
            primary_id=primary.id,
            file_key=group.file_key,
            references_moved=moved,
        )

    def delete_unused_duplicates(self, groups: Optional[Iterable[DuplicateGroupRecord]] = None) -> int:
        """删除零引用的非主记录（物理文件不动）"""
        current = self._reload(groups)
        self.ensure_safe(current)
        deleted = 0
        for group in current:
            if group.primary_asset_id is None:
                continue
            for asset_id in group.asset_ids:
                if asset_id == group.primary_asset_id:
                    continue
                record = self.record_store.get(asset_id)
                if record is None or self.record_store.get_reference_count(asset_id) > 0:
                    continue
                self.record_store.delete(asset_id)
                deleted += 1
                self.ctx.log_change("deleted_unused_duplicate", asset_id=asset_id, file_key=group.file_key)
        return deleted

    def cleanup_quarantine(self, groups: Optional[Iterable[DuplicateGroupRecord]] = None) -> int:
        """删除 completed 组的备份文件"""
        removed = 0
        for group in self._reload(groups):
            if group.status != GroupStatus.COMPLETED or not group.temp_path:
                continue
            try:
                if self.quarantine.gateway.exists(group.temp_path):
                    self.quarantine.gateway.delete(group.temp_path)
                    removed += 1
            except CRITICAL_ERROR_TYPES:
                raise
            except Exception as e:
                self._record_failure(ErrorCode.CLEANUP_TEMP, group, e, temp_path=group.temp_path)
        logger.info("已清理 %s 个重复组备份", removed)
        return removed

    # =========================================================================
    # 同名合并
    # =========================================================================

    def resolve_filename_duplicates(self, sets: Dict[str, List[RecordEntry]]) -> Dict[str, int]:
        """
        同名记录合并

        每组保留 pick_winner 选出的记录，其余记录的引用转移给它后删除；
        物理文件保留，交由孤立文件隔离处理。
        """
        stats = {"sets": 0, "merged": 0, "errors": 0}
        for name, records in sets.items():
            if len(records) < 2:
                continue
            stats["sets"] += 1
            winner = pick_winner(records)
            for record in records:
                if record.id == winner.id:
                    continue
                try:
                    with self.record_store.transaction():
                        if self.record_store.get(record.id) is None:
                            continue
                        moved = self.record_store.transfer_references(record.id, winner.id)
                        self.record_store.delete(record.id)
                    stats["merged"] += 1
                    self.ctx.log_change(
                        "merged_duplicate_name",
                        asset_id=record.id,
                        winner_id=winner.id,
                        filename=name,
                        references_moved=moved,
                    )
                except CRITICAL_ERROR_TYPES:
                    raise
                except Exception as e:
                    stats["errors"] += 1
                    self.ctx.record_error(
                        ErrorCode.RESOLVE_DUPLICATE,
                        getattr(e, "message", None) or str(e),
                        {"asset_id": record.id, "winner_id": winner.id, "filename": name},
                    )
            self.ctx.check_budget()
        return stats

    def run(self, records: Iterable[RecordEntry]) -> Dict[str, Any]:
        """完整流程: 分组 -> 备份 -> 安全检查 -> 主记录 -> 解析 -> 清理"""
        groups = self.analyze_file_duplicates(records)
        summary: Dict[str, Any] = {"groups": len(groups)}
        if not groups:
            return summary
        summary["stage"] = self.stage_files_to_quarantine(groups)
        summary["safety"] = {k: v for k, v in self.verify_file_safety(groups).items() if k != "details"}
        summary["analyze"] = self.determine_active_records(groups)
        if self.ctx.stop_requested:
            # 未备份的组留待恢复运行，不进入破坏性步骤
            summary["stopped"] = True
            return summary
        summary["resolve"] = self.resolve_groups(groups)
        summary["deleted_unused"] = self.delete_unused_duplicates(groups)
        summary["cleaned"] = self.cleanup_quarantine(groups)
        return summary
