"""
assetmend.reconcile.models - 核心数据模型

包含:
- RecordEntry: 逻辑记录（资产）的不可变快照
- FileEntry: 扫描时刻物理对象的不可变快照
- Location: 记录所在位置 (container_id, parent_id, parent_path)
- DuplicateGroupRecord: 物理文件冲突组的持久化状态
- MatchResult: 链接修复匹配结果
- Outcome: 每个编排操作返回的结果变体 (Success | AlreadyDone | Skipped | Failed)
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

# =============================================================================
# 阶段
# =============================================================================


class Phase:
    """运行阶段（按执行顺序）"""

    LINK_REPAIR = "link_repair"
    DUPLICATES = "duplicates"
    CONSOLIDATE = "consolidate"
    QUARANTINE = "quarantine"

    ORDER = (LINK_REPAIR, DUPLICATES, CONSOLIDATE, QUARANTINE)


# =============================================================================
# 记录 / 文件快照
# =============================================================================


def join_path(parent_path: Optional[str], name: str) -> str:
    """拼接目录与文件名，去掉多余的斜杠"""
    parent = (parent_path or "").strip("/")
    if not parent:
        return name
    return f"{parent}/{name}"


@dataclass(frozen=True)
class Location:
    """记录的目标位置"""

    container_id: int
    parent_id: Optional[int] = None
    parent_path: str = ""

    def describe(self) -> str:
        return f"{self.container_id}:{self.parent_path.strip('/') or '/'}"


@dataclass(frozen=True)
class RecordEntry:
    """
    逻辑记录快照

    由 Record Store 持有，引擎仅保存只读副本；
    任何修改都必须通过 Record Store 的显式更新调用完成。
    """

    id: int
    container_id: int
    name: str
    parent_id: Optional[int] = None
    parent_path: str = ""
    reference_count: int = 0
    size: Optional[int] = None
    date_created: Optional[datetime] = None
    date_updated: Optional[datetime] = None

    @property
    def is_used(self) -> bool:
        return self.reference_count > 0

    @property
    def path(self) -> str:
        """记录期望的物理路径（相对于所在容器根目录）"""
        return join_path(self.parent_path, self.name)

    @property
    def location(self) -> Location:
        return Location(self.container_id, self.parent_id, self.parent_path or "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "container_id": self.container_id,
            "parent_id": self.parent_id,
            "name": self.name,
            "parent_path": self.parent_path,
            "reference_count": self.reference_count,
            "is_used": self.is_used,
            "size": self.size,
        }


@dataclass(frozen=True)
class FileEntry:
    """
    物理对象快照

    扫描后即不可变；扫描与修复之间的过期是可容忍的，
    任何破坏性操作前都会重新调用 exists 校验。
    """

    container_id: int
    container_name: str
    path: str
    name: str
    size: int = 0
    last_modified: Optional[float] = None
    gateway: Any = field(default=None, compare=False, repr=False, hash=False)

    @property
    def extension(self) -> str:
        if "." not in self.name:
            return ""
        return self.name.rsplit(".", 1)[1].lower()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "container_id": self.container_id,
            "container_name": self.container_name,
            "path": self.path,
            "name": self.name,
            "size": self.size,
            "last_modified": self.last_modified,
        }


# =============================================================================
# 重复组
# =============================================================================


class GroupStatus:
    """重复组状态: pending -> staged -> analyzed -> completed"""

    PENDING = "pending"
    STAGED = "staged"
    ANALYZED = "analyzed"
    COMPLETED = "completed"

    ORDER = (PENDING, STAGED, ANALYZED, COMPLETED)

    @classmethod
    def rank(cls, status: str) -> int:
        try:
            return cls.ORDER.index(status)
        except ValueError:
            return -1

    @classmethod
    def at_least(cls, status: str, minimum: str) -> bool:
        return cls.rank(status) >= cls.rank(minimum)


@dataclass
class DuplicateGroupRecord:
    """
    物理文件冲突组的持久化记录

    作为重复解析可恢复执行的锚点：
    组状态未表明上一阶段安全门已通过时，不允许对该组执行任何破坏性操作。
    """

    run_id: str
    file_key: str
    original_path: str
    container_name: str
    container_handle: str
    asset_ids: List[int] = field(default_factory=list)
    primary_asset_id: Optional[int] = None
    temp_path: Optional[str] = None
    physical_file_hash: Optional[str] = None
    file_size: Optional[int] = None
    status: str = GroupStatus.PENDING
    claimed_by: Optional[str] = None
    updated_at: Optional[str] = None

    def advance(self, status: str) -> None:
        """推进状态（不允许回退）"""
        if GroupStatus.rank(status) < GroupStatus.rank(self.status):
            return
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DuplicateGroupRecord":
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


# =============================================================================
# 匹配结果
# =============================================================================


class MatchStrategy:
    """链接修复的七级匹配策略（按尝试顺序）"""

    EXACT_SAME_CONTAINER = "exact_same_container"
    EXACT_ANY_CONTAINER = "exact_any_container"
    CASE_INSENSITIVE = "case_insensitive"
    NORMALIZED = "normalized"
    BASENAME_EXTENSION_FAMILY = "basename_extension_family"
    SIZE = "size"
    FUZZY = "fuzzy"
    NONE = "none"

    CONFIDENCE = {
        EXACT_SAME_CONTAINER: 1.0,
        EXACT_ANY_CONTAINER: 0.95,
        CASE_INSENSITIVE: 0.85,
        NORMALIZED: 0.75,
        BASENAME_EXTENSION_FAMILY: 0.70,
        SIZE: 0.60,
    }


@dataclass
class MatchResult:
    """匹配结果（瞬态）"""

    found: bool
    file: Optional[FileEntry] = None
    strategy: str = MatchStrategy.NONE
    confidence: float = 0.0
    rejected_candidate: Optional[FileEntry] = None
    rejected_confidence: Optional[float] = None

    @classmethod
    def not_found(cls) -> "MatchResult":
        return cls(found=False)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "found": self.found,
            "strategy": self.strategy,
            "confidence": round(self.confidence, 4),
            "file": self.file.to_dict() if self.file else None,
        }
        if self.rejected_candidate is not None:
            result["rejected_candidate"] = self.rejected_candidate.to_dict()
            result["rejected_confidence"] = self.rejected_confidence
        return result


# =============================================================================
# 操作结果变体
# =============================================================================


@dataclass(frozen=True)
class Outcome:
    """
    编排操作的结果

    流程控制（已处理、已在目标位置等）通过结果变体表达，
    异常仅保留给不可恢复的严重错误。
    """

    kind = "outcome"

    reason: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.kind in ("success", "already_done")

    def to_dict(self) -> Dict[str, Any]:
        return {"outcome": self.kind, "reason": self.reason, "detail": self.detail}


@dataclass(frozen=True)
class Success(Outcome):
    kind = "success"


@dataclass(frozen=True)
class AlreadyDone(Outcome):
    kind = "already_done"


@dataclass(frozen=True)
class Skipped(Outcome):
    kind = "skipped"


@dataclass(frozen=True)
class Failed(Outcome):
    kind = "failed"
