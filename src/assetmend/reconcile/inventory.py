"""
assetmend.reconcile.inventory - 清单构建模块

功能:
- build_record_inventory: 按批次分页读取记录库，构建 {id: RecordEntry}
- build_file_inventory: 扫描各容器网关，构建 FileEntry 列表（任一网关失败即整体失败）
- scan_gateway: 单个网关扫描，按 all / images / directories / other 分类
- analyze_links: 记录与文件的关联分析（断链、孤立文件、位置错误、未使用、重复）
- build_record_lookup / find_record_by_url: URL 到记录的反查

设计约束:
- 不允许一次性物化无界查询结果，记录库读取始终受 batch_size 约束
- 部分文件清单会让后续所有安全判断失真，因此扫描失败时直接抛出严重错误
- 进度回调只是旁路通知，不阻塞构建
"""

from __future__ import annotations

import logging
import posixpath
import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .errors import GatewayError, GatewayUnreachableError
from .gateway import Container, ContainerRegistry, StorageGateway
from .models import FileEntry, RecordEntry
from .progress import ProgressCallback, ProgressReporter
from .record_store import RecordStore

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp", "svg"})

# URL 反查时尝试剥离的常见前缀
URL_PREFIXES = ("uploads/", "uploads/images/", "assets/", "images/", "_optimisedImages/")


@dataclass
class ScanResult:
    """单个网关的扫描结果"""

    all: List[Dict[str, Any]] = field(default_factory=list)
    images: List[Dict[str, Any]] = field(default_factory=list)
    directories: List[str] = field(default_factory=list)
    other: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def file_count(self) -> int:
        return len(self.all) - len(self.directories)


@dataclass
class LinkAnalysis:
    """记录-文件关联分析结果"""

    records_with_files: List[RecordEntry] = field(default_factory=list)
    broken_links: List[RecordEntry] = field(default_factory=list)
    orphaned_files: List[FileEntry] = field(default_factory=list)
    used_correct_location: List[RecordEntry] = field(default_factory=list)
    used_wrong_location: List[RecordEntry] = field(default_factory=list)
    unused_records: List[RecordEntry] = field(default_factory=list)
    # 同名记录: name -> [RecordEntry]
    duplicate_names: Dict[str, List[RecordEntry]] = field(default_factory=dict)
    # 指向同一物理路径的记录: "container_id::path" -> [RecordEntry]
    duplicate_paths: Dict[str, List[RecordEntry]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, int]:
        return {
            "records_with_files": len(self.records_with_files),
            "broken_links": len(self.broken_links),
            "orphaned_files": len(self.orphaned_files),
            "used_correct_location": len(self.used_correct_location),
            "used_wrong_location": len(self.used_wrong_location),
            "unused_records": len(self.unused_records),
            "duplicate_names": len(self.duplicate_names),
            "duplicate_paths": len(self.duplicate_paths),
        }


def scan_gateway(gateway: StorageGateway, prefix: str = "", recursive: bool = True) -> ScanResult:
    """
    扫描单个网关

    同一路径只保留第一次出现的条目。
    """
    result = ScanResult()
    seen = set()
    for item in gateway.list(prefix, recursive):
        if not item.path or item.path in seen:
            continue
        seen.add(item.path)
        entry = {
            "path": item.path,
            "type": "dir" if item.is_dir else "file",
            "size": item.size,
            "last_modified": item.mtime,
        }
        result.all.append(entry)
        if item.is_dir:
            result.directories.append(item.path)
            continue
        ext = posixpath.splitext(item.path)[1].lstrip(".").lower()
        if ext in IMAGE_EXTENSIONS:
            result.images.append(entry)
        else:
            result.other.append(entry)
    return result


class InventoryBuilder:
    """记录清单与文件清单构建器"""

    def __init__(
        self,
        record_store: RecordStore,
        registry: ContainerRegistry,
        batch_size: int = 100,
        progress_callback: Optional[ProgressCallback] = None,
        progress_interval: int = 50,
    ):
        self.record_store = record_store
        self.registry = registry
        self.batch_size = batch_size
        self.progress_callback = progress_callback
        self.progress_interval = progress_interval

    # =========================================================================
    # 记录清单
    # =========================================================================

    def build_record_inventory(self, container_ids: Iterable[int]) -> Dict[int, RecordEntry]:
        """
        按批次构建记录清单

        Args:
            container_ids: 需要纳入的容器 id

        Returns:
            {record_id: RecordEntry}
        """
        container_ids = list(container_ids)
        total = self.record_store.count(container_ids)
        progress = ProgressReporter(
            "record inventory", total, self.progress_callback, self.progress_interval
        )
        inventory: Dict[int, RecordEntry] = {}
        for page in self.record_store.iter_pages(container_ids, self.batch_size):
            for record in page:
                inventory[record.id] = record
            progress.increment(len(page))
        logger.info("记录清单构建完成: %s 条（容器 %s）", len(inventory), container_ids)
        return inventory

    # =========================================================================
    # 文件清单
    # =========================================================================

    def build_file_inventory(self, containers: Iterable[Container]) -> List[FileEntry]:
        """
        扫描所有容器构建文件清单

        容器按 id 去重。任一容器扫描失败立即抛出 GatewayUnreachableError，
        不会返回部分清单。
        """
        unique: Dict[int, Container] = {}
        for container in containers:
            unique.setdefault(container.id, container)

        inventory: List[FileEntry] = []
        for container in unique.values():
            try:
                scan = scan_gateway(container.gateway)
            except (GatewayError, OSError) as e:
                message = e.message if isinstance(e, GatewayError) else str(e)
                logger.error("无法扫描容器 '%s': %s", container.name, message)
                raise GatewayUnreachableError(
                    f"cannot scan container '{container.name}': {message}",
                    {
                        "container_id": container.id,
                        "container": container.name,
                        "handle": container.handle,
                        "error": message,
                    },
                )

            for entry in scan.all:
                if entry["type"] != "file":
                    continue
                inventory.append(
                    FileEntry(
                        container_id=container.id,
                        container_name=container.name,
                        path=entry["path"],
                        name=posixpath.basename(entry["path"]),
                        size=entry["size"] or 0,
                        last_modified=entry["last_modified"],
                        gateway=container.gateway,
                    )
                )
            logger.info("容器 '%s' 扫描完成: %s 个文件", container.name, scan.file_count)

        return inventory

    # =========================================================================
    # 关联分析
    # =========================================================================

    def analyze_links(
        self,
        records: Dict[int, RecordEntry],
        files: List[FileEntry],
        target_container_id: int,
        target_parent_path: str = "",
    ) -> LinkAnalysis:
        """
        分析记录与物理文件的关联

        - 记录期望路径在文件清单中存在 -> records_with_files
          - 被引用: 位于目标容器目标目录 -> used_correct_location，否则 used_wrong_location
          - 未被引用且位于目标容器 -> unused_records
        - 期望路径不存在 -> broken_links
        - 目标容器中没有同名记录的文件 -> orphaned_files
        """
        existing = {(f.container_id, f.path) for f in files}
        target_parent = (target_parent_path or "").strip("/")
        analysis = LinkAnalysis()
        progress = ProgressReporter(
            "link analysis", len(records), self.progress_callback, self.progress_interval
        )

        path_map: Dict[str, List[RecordEntry]] = defaultdict(list)
        for record in records.values():
            if (record.container_id, record.path) in existing:
                analysis.records_with_files.append(record)
                path_map[f"{record.container_id}::{record.path}"].append(record)
                in_target = record.container_id == target_container_id
                in_root = (record.parent_path or "").strip("/") == target_parent
                if record.is_used:
                    if in_target and in_root:
                        analysis.used_correct_location.append(record)
                    else:
                        analysis.used_wrong_location.append(record)
                elif in_target:
                    analysis.unused_records.append(record)
            else:
                analysis.broken_links.append(record)
            progress.increment()

        record_names = {r.name for r in records.values()}
        for entry in files:
            if entry.name not in record_names and entry.container_id == target_container_id:
                analysis.orphaned_files.append(entry)

        by_name: Dict[str, List[RecordEntry]] = defaultdict(list)
        for record in records.values():
            by_name[record.name].append(record)
        analysis.duplicate_names = {k: v for k, v in by_name.items() if len(v) > 1}
        analysis.duplicate_paths = {k: v for k, v in path_map.items() if len(v) > 1}

        logger.info("关联分析完成: %s", analysis.to_dict())
        return analysis


# =============================================================================
# URL 反查
# =============================================================================


def build_record_lookup(records: Iterable[RecordEntry]) -> Dict[str, RecordEntry]:
    """按文件名与 目录/文件名 建立查找表（后出现的覆盖先出现的）"""
    lookup: Dict[str, RecordEntry] = {}
    for record in records:
        lookup[record.name] = record
        if record.parent_path:
            lookup[f"{record.parent_path.strip('/')}/{record.name}"] = record
    return lookup


def find_record_by_url(url: str, lookup: Dict[str, RecordEntry]) -> Optional[RecordEntry]:
    """
    根据 URL 查找记录

    依次尝试: 完整路径、文件名、剥离常见前缀后的路径、按文件名遍历。
    """
    url = (url or "").strip()
    url = re.sub(r"[?#].*$", "", url)
    url = re.sub(r"^https?://[^/]+", "", url, flags=re.IGNORECASE)
    url = url.lstrip("/")

    if url in lookup:
        return lookup[url]

    filename = posixpath.basename(url)
    if filename in lookup:
        return lookup[filename]

    for prefix in URL_PREFIXES:
        if url.startswith(prefix):
            clean = url[len(prefix):]
            if clean in lookup:
                return lookup[clean]

    for key, record in lookup.items():
        if posixpath.basename(key) == filename:
            return record
    return None
