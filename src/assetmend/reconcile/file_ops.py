"""
assetmend.reconcile.file_ops - 单条记录的文件操作

提供编排器共用的原子操作，每个操作都返回 Outcome 而不是抛出异常:

- apply_move(record_id, location): 在记录库事务中把记录及其物理文件移到新位置
    - 同容器: 优先调用网关原生 move；源文件读取类错误（stream / file / read）时
      回退为手动 读取 + 写入 + 删除
    - 跨容器: 读取源文件，写入目标网关（重名加数字后缀），更新记录；
      事务提交后仅在无其他记录引用且规范路径不同的情况下删除源文件
- copy_file_to_record(source, record): 将匹配到的文件复制到记录期望路径
  （同一源文件到同一目标路径只复制一次，重复请求返回 already_copied；
  同一源文件可以复制到多个不同的目标路径）
- can_safely_delete_source / is_file_shared: 删除前的安全检查

记录更新先于文件移动执行，文件操作失败时事务回滚，记录不会指向不存在的位置。
"""

from __future__ import annotations

import logging
import posixpath
from typing import Any, Dict, Optional, Set

from .errors import ErrorCode, ObjectNotFoundError
from .gateway import ContainerRegistry, StorageGateway, normalize_path
from .models import (
    AlreadyDone,
    DuplicateGroupRecord,
    Failed,
    FileEntry,
    GroupStatus,
    Location,
    Outcome,
    RecordEntry,
    Success,
    join_path,
)
from .record_store import RecordStore
from .retry import CRITICAL_ERROR_TYPES, RetryExhaustedError, RetryManager

logger = logging.getLogger(__name__)


# 原生 move 失败时触发手动回退的错误关键词
MOVE_FALLBACK_KEYWORDS = ("stream", "file", "read")

MAX_NAME_SUFFIX = 1000


def canonical_path(gateway: StorageGateway, path: str) -> str:
    """
    物理位置的规范形式: <backend>://<bucket>/<root>/<path>

    统一分隔符、折叠 . 与多重斜杠、解析 ..，比较时大小写不敏感。
    """
    raw = "/".join(p for p in (gateway.root_path(), path) if p).replace("\\", "/")
    parts = []
    for part in raw.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if parts:
                parts.pop()
            continue
        parts.append(part)
    return f"{gateway.backend_kind()}://{gateway.bucket_id() or ''}/{'/'.join(parts)}".casefold()


def same_physical_file(gateway_a: StorageGateway, path_a: str, gateway_b: StorageGateway, path_b: str) -> bool:
    return canonical_path(gateway_a, path_a) == canonical_path(gateway_b, path_b)


def same_location(record: RecordEntry, location: Location) -> bool:
    return (
        record.container_id == location.container_id
        and (record.parent_path or "").strip("/") == (location.parent_path or "").strip("/")
    )


def unique_filename(gateway: StorageGateway, parent_path: str, filename: str) -> str:
    """目标目录下已存在同名文件时追加 _1、_2 ... 后缀"""
    if not gateway.exists(join_path(parent_path, filename)):
        return filename
    base, ext = posixpath.splitext(filename)
    for i in range(1, MAX_NAME_SUFFIX + 1):
        candidate = f"{base}_{i}{ext}"
        if not gateway.exists(join_path(parent_path, candidate)):
            return candidate
    raise ObjectNotFoundError(
        f"无法为 {filename} 生成不冲突的文件名",
        {"parent_path": parent_path, "filename": filename},
    )


class FileOperations:
    """
    文件操作服务

    Args:
        record_store: 记录库
        registry: 容器注册表
        ctx: 运行上下文（错误预算 / 审计）；为 None 时错误只写日志
        retry: 重试管理器
        group_lookup: 可选，按 file_key 查询重复组（删除源文件前检查）
    """

    def __init__(
        self,
        record_store: RecordStore,
        registry: ContainerRegistry,
        ctx=None,
        retry: Optional[RetryManager] = None,
        group_lookup=None,
    ):
        self.record_store = record_store
        self.registry = registry
        self.ctx = ctx
        self.retry = retry or RetryManager()
        self.group_lookup = group_lookup
        self._copied: Set[str] = set()
        self.stats: Dict[str, int] = {"moved": 0, "copied": 0, "manual_fallback": 0, "missing_files": 0}

    # ---------- 错误与审计 ----------

    def _record_error(self, operation: str, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        if self.ctx is not None:
            self.ctx.record_error(operation, message, context)
        else:
            logger.error("操作 '%s' 错误: %s | context=%s", operation, message, context)

    def _log_change(self, change_type: str, **fields: Any) -> None:
        if self.ctx is not None:
            self.ctx.log_change(change_type, **fields)

    def _missing(self, record: RecordEntry, path: str, container_name: str) -> Failed:
        message = f"Cannot get copy of file for asset {record.id} ({record.name}): {container_name}::{path} not found"
        logger.warning(message)
        self.stats["missing_files"] += 1
        self._record_error(
            ErrorCode.MISSING_SOURCE_FILE,
            message,
            {"asset_id": record.id, "filename": record.name, "path": path, "container": container_name},
        )
        return Failed("missing_source_file", {"asset_id": record.id, "path": path})

    # =========================================================================
    # 移动
    # =========================================================================

    def apply_move(
        self,
        record_id: int,
        location: Location,
        name: Optional[str] = None,
        operation: str = ErrorCode.CONSOLIDATE_ASSET,
        change_type: str = "moved_asset",
    ) -> Outcome:
        """
        把记录移动到 location

        Returns:
            Success / AlreadyDone / Failed；运行级错误以外的异常均转为 Failed
        """
        try:
            return self.retry.retry_operation(
                lambda: self._apply_move_once(record_id, location, name, change_type),
                f"{operation}_{record_id}",
            )
        except CRITICAL_ERROR_TYPES:
            raise
        except Exception as e:
            cause = e.cause if isinstance(e, RetryExhaustedError) and e.cause else e
            message = getattr(cause, "message", None) or str(cause)
            self._record_error(
                operation,
                message,
                {"asset_id": record_id, "target": location.describe(), "error_type": type(cause).__name__},
            )
            return Failed("error", {"asset_id": record_id, "error": message})

    def _apply_move_once(
        self, record_id: int, location: Location, name: Optional[str], change_type: str
    ) -> Outcome:
        delete_after_commit = None
        with self.record_store.transaction():
            record = self.record_store.get(record_id)
            if record is None:
                return Failed("record_not_found", {"asset_id": record_id})
            if same_location(record, location) and (name is None or name == record.name):
                return AlreadyDone("already_at_target", {"asset_id": record_id})

            source = self.registry.get(record.container_id)
            target = self.registry.get(location.container_id)
            if not source.gateway.exists(record.path):
                return self._missing(record, record.path, source.name)

            filename = unique_filename(target.gateway, location.parent_path, name or record.name)
            parent_id = location.parent_id
            if parent_id is None:
                parent_id = self.record_store.ensure_parent(location.container_id, location.parent_path)
            new_path = join_path(location.parent_path, filename)

            self.record_store.update_location(
                record.id,
                location.container_id,
                parent_id,
                location.parent_path,
                filename if filename != record.name else None,
            )

            if source.id == target.id:
                self._move_within(source.gateway, record.path, new_path)
            else:
                data = source.gateway.read(record.path)
                target.gateway.write(new_path, data)
                if self._source_deletable(record, source.gateway, target.gateway, new_path):
                    delete_after_commit = (source.gateway, record.path)

        if delete_after_commit is not None:
            gateway, path = delete_after_commit
            if gateway.exists(path):
                gateway.delete(path)

        self.stats["moved"] += 1
        change = {
            "asset_id": record.id,
            "filename": record.name,
            "new_filename": filename,
            "from_container": record.container_id,
            "from_parent_id": record.parent_id,
            "from_parent_path": record.parent_path,
            "to_container": location.container_id,
            "to_parent_id": parent_id,
            "to_parent_path": location.parent_path,
        }
        self._log_change(change_type, **change)
        if filename != record.name:
            logger.info("资产 %s 重命名以避免冲突: %s -> %s", record.id, record.name, filename)
        return Success("moved", change)

    def _move_within(self, gateway: StorageGateway, src: str, dst: str) -> None:
        """同容器移动；源读取失败时回退为手动复制 + 删除"""
        try:
            gateway.move(src, dst)
        except Exception as e:
            message = str(e).lower()
            if not any(keyword in message for keyword in MOVE_FALLBACK_KEYWORDS):
                raise
            logger.info("原生 move 失败，尝试手动移动: %s -> %s (%s)", src, dst, e)
            self.stats["manual_fallback"] += 1
            data = gateway.read(src)
            gateway.write(dst, data)
            if canonical_path(gateway, src) != canonical_path(gateway, dst):
                gateway.delete(src)

    def _source_deletable(
        self, record: RecordEntry, source: StorageGateway, target: StorageGateway, new_path: str
    ) -> bool:
        if same_physical_file(source, record.path, target, new_path):
            return False
        if self.is_file_shared(record.container_id, record.path, exclude_id=record.id):
            logger.info("源文件仍被其他记录引用，保留: %s", record.path)
            return False
        return True

    # =========================================================================
    # 复制
    # =========================================================================

    @staticmethod
    def source_key(source: FileEntry) -> str:
        return f"{source.container_name}::{source.path}"

    def copy_file_to_record(
        self,
        source: FileEntry,
        record: RecordEntry,
        delete_source: bool = False,
    ) -> Outcome:
        """
        把匹配文件复制到记录的期望路径

        Args:
            source: 匹配到的文件
            record: 目标记录（文件写到 record.path）
            delete_source: 复制成功后是否在安全时删除源文件
        """
        key = self.source_key(source)
        copy_key = f"{key}->{canonical_path(self.registry.gateway(record.container_id), record.path)}"
        if copy_key in self._copied:
            logger.info("源文件 '%s' 已复制到 '%s'，跳过重复复制", source.path, record.path)
            return AlreadyDone("already_copied", {"asset_id": record.id, "source": key})

        try:
            return self.retry.retry_operation(
                lambda: self._copy_once(source, record, key, copy_key, delete_source),
                f"copy_{record.id}",
            )
        except CRITICAL_ERROR_TYPES:
            raise
        except Exception as e:
            cause = e.cause if isinstance(e, RetryExhaustedError) and e.cause else e
            message = getattr(cause, "message", None) or str(cause)
            self._record_error(
                ErrorCode.COPY_FILE,
                message,
                {"asset_id": record.id, "source": key, "error_type": type(cause).__name__},
            )
            return Failed("error", {"asset_id": record.id, "error": message})

    def _copy_once(
        self, source: FileEntry, record: RecordEntry, key: str, copy_key: str, delete_source: bool
    ) -> Outcome:
        source_gateway = source.gateway or self.registry.gateway(source.container_id)
        target = self.registry.get(record.container_id)
        try:
            data = source_gateway.read(source.path)
        except ObjectNotFoundError:
            return self._missing(record, source.path, source.container_name)

        target.gateway.write(record.path, data)
        self._copied.add(copy_key)
        self.stats["copied"] += 1

        deleted = False
        if delete_source:
            group = self.group_lookup(key) if self.group_lookup else None
            if self.can_safely_delete_source(source_gateway, source.path, target.gateway, record.path, group):
                if source_gateway.exists(source.path):
                    source_gateway.delete(source.path)
                    deleted = True
        return Success(
            "copied",
            {"asset_id": record.id, "source": key, "target_path": record.path, "source_deleted": deleted},
        )

    # =========================================================================
    # 安全检查
    # =========================================================================

    def can_safely_delete_source(
        self,
        source_gateway: StorageGateway,
        source_path: str,
        destination_gateway: StorageGateway,
        destination_path: str,
        group: Optional[DuplicateGroupRecord] = None,
    ) -> bool:
        """
        源文件能否删除

        - 属于尚未完成分析的重复组: 否
        - 与目标是同一物理文件（规范路径比较）: 否
        """
        if group is not None and not GroupStatus.at_least(group.status, GroupStatus.ANALYZED):
            return False
        if same_physical_file(source_gateway, source_path, destination_gateway, destination_path):
            return False
        return True

    def is_file_shared(self, container_id: int, path: str, exclude_id: Optional[int] = None) -> bool:
        """是否还有其他记录指向 container_id 下的 path"""
        normalized = normalize_path(path)
        filename = posixpath.basename(normalized)
        for page in self.record_store.iter_pages([container_id], 100, {"name": filename}):
            for other in page:
                if other.id != exclude_id and normalize_path(other.path) == normalized:
                    return True
        return False
