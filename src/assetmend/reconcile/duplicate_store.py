"""
assetmend.reconcile.duplicate_store - 重复组持久化

DuplicateGroupRecord 是重复解析可恢复执行的锚点，按 (run_id, file_key) 存储。

接口:
    upsert(group)                      不存在则插入；已存在时保留原状态与主记录，仅合并 asset_ids
    get(run_id, file_key)
    list(run_id, status=None)
    save(group)                        写回完整状态（状态只进不退，primary_asset_id 只设置一次）
    claim(run_id, file_key, owner)     认领（同一时刻只有一个执行者处理该组）
    release(run_id, file_key, owner)

实现:
    InMemoryDuplicateGroupStore
    FileDuplicateGroupStore       state_dir/duplicate_groups/<run_id>.json（原子写入）
    PostgresDuplicateGroupStore   assetmend.duplicate_groups 表
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple, Union

import psycopg

from .checkpoint import _atomic_write_json, _read_json, validate_run_id
from .errors import QueryError
from .models import DuplicateGroupRecord, GroupStatus

logger = logging.getLogger(__name__)

GROUPS_DIRNAME = "duplicate_groups"

GROUPS_FILE_VERSION = 1


def _merge_ids(existing: List[int], incoming: List[int]) -> List[int]:
    merged = list(existing)
    for item in incoming:
        if item not in merged:
            merged.append(item)
    return merged


class DuplicateGroupStore(ABC):
    """重复组存储接口"""

    @abstractmethod
    def upsert(self, group: DuplicateGroupRecord) -> DuplicateGroupRecord:
        pass

    @abstractmethod
    def get(self, run_id: str, file_key: str) -> Optional[DuplicateGroupRecord]:
        pass

    @abstractmethod
    def list(self, run_id: str, status: Optional[str] = None) -> List[DuplicateGroupRecord]:
        pass

    @abstractmethod
    def save(self, group: DuplicateGroupRecord) -> None:
        pass

    @abstractmethod
    def claim(self, run_id: str, file_key: str, owner: str) -> bool:
        pass

    @abstractmethod
    def release(self, run_id: str, file_key: str, owner: str) -> None:
        pass


# =============================================================================
# 内存实现
# =============================================================================


class InMemoryDuplicateGroupStore(DuplicateGroupStore):
    """内存重复组存储（返回副本，调用方修改后需 save）"""

    def __init__(self):
        self._groups: Dict[Tuple[str, str], DuplicateGroupRecord] = {}
        self._lock = threading.Lock()

    def upsert(self, group):
        key = (group.run_id, group.file_key)
        with self._lock:
            existing = self._groups.get(key)
            if existing is None:
                stored = copy.deepcopy(group)
            else:
                stored = existing
                stored.asset_ids = _merge_ids(existing.asset_ids, group.asset_ids)
            stored.updated_at = datetime.now(timezone.utc).isoformat()
            self._groups[key] = stored
            return copy.deepcopy(stored)

    def get(self, run_id, file_key):
        with self._lock:
            group = self._groups.get((run_id, file_key))
            return copy.deepcopy(group) if group else None

    def list(self, run_id, status=None):
        with self._lock:
            groups = [
                copy.deepcopy(g)
                for (rid, _), g in sorted(self._groups.items())
                if rid == run_id and (status is None or g.status == status)
            ]
        return groups

    def save(self, group):
        key = (group.run_id, group.file_key)
        with self._lock:
            stored = copy.deepcopy(group)
            existing = self._groups.get(key)
            if existing is not None:
                if GroupStatus.rank(stored.status) < GroupStatus.rank(existing.status):
                    stored.status = existing.status
                if existing.primary_asset_id is not None:
                    stored.primary_asset_id = existing.primary_asset_id
                stored.claimed_by = existing.claimed_by
            stored.updated_at = datetime.now(timezone.utc).isoformat()
            self._groups[key] = stored

    def claim(self, run_id, file_key, owner):
        with self._lock:
            group = self._groups.get((run_id, file_key))
            if group is None:
                return False
            if group.claimed_by not in (None, owner):
                return False
            group.claimed_by = owner
            return True

    def release(self, run_id, file_key, owner):
        with self._lock:
            group = self._groups.get((run_id, file_key))
            if group is not None and group.claimed_by == owner:
                group.claimed_by = None


# =============================================================================
# 文件实现
# =============================================================================


class FileDuplicateGroupStore(InMemoryDuplicateGroupStore):
    """
    state_dir/duplicate_groups/<run_id>.json 中的重复组

    每次 upsert / save 后整文件原子写入，首次访问某个 run_id 时从文件加载。
    认领只在进程内有效、不落盘：文件存储由迁移锁保证同一时刻只有一个进程访问，
    崩溃进程留下的认领不会阻塞恢复运行。
    """

    def __init__(self, state_dir: Union[str, Path]):
        super().__init__()
        self.directory = Path(state_dir) / GROUPS_DIRNAME
        self._loaded: Set[str] = set()

    def path_for(self, run_id: str) -> Path:
        return self.directory / f"{validate_run_id(run_id)}.json"

    def _ensure_loaded(self, run_id: str) -> None:
        if run_id in self._loaded:
            return
        data = _read_json(self.path_for(run_id)) or {}
        with self._lock:
            for item in data.get("groups", []):
                group = DuplicateGroupRecord.from_dict(dict(item, claimed_by=None))
                self._groups.setdefault((group.run_id, group.file_key), group)
            self._loaded.add(run_id)
        if data:
            logger.info("从 %s 加载 %s 个重复组", self.path_for(run_id), len(data.get("groups", [])))

    def _persist(self, run_id: str) -> None:
        with self._lock:
            groups = [g.to_dict() for (rid, _), g in sorted(self._groups.items()) if rid == run_id]
        for item in groups:
            item["claimed_by"] = None
        _atomic_write_json(self.path_for(run_id), {"version": GROUPS_FILE_VERSION, "run_id": run_id, "groups": groups})

    def upsert(self, group):
        self._ensure_loaded(group.run_id)
        stored = super().upsert(group)
        self._persist(group.run_id)
        return stored

    def get(self, run_id, file_key):
        self._ensure_loaded(run_id)
        return super().get(run_id, file_key)

    def list(self, run_id, status=None):
        self._ensure_loaded(run_id)
        return super().list(run_id, status)

    def save(self, group):
        self._ensure_loaded(group.run_id)
        super().save(group)
        self._persist(group.run_id)

    def claim(self, run_id, file_key, owner):
        self._ensure_loaded(run_id)
        return super().claim(run_id, file_key, owner)


# =============================================================================
# PostgreSQL 实现
# =============================================================================


_COLUMNS = (
    "run_id, file_key, original_path, container_name, container_handle, asset_ids, "
    "primary_asset_id, temp_path, physical_file_hash, file_size, status, claimed_by, updated_at"
)

# 状态序号（用于防止状态回退）
_STATUS_RANK_SQL = "array_position(ARRAY['pending','staged','analyzed','completed'], {})"


class PostgresDuplicateGroupStore(DuplicateGroupStore):
    """assetmend.duplicate_groups 表，主键 (run_id, file_key)"""

    def __init__(self, conn: psycopg.Connection):
        self._conn = conn

    def _execute(self, sql: str, params, op: str):
        try:
            cur = self._conn.cursor()
            cur.execute(sql, params)
            return cur
        except psycopg.Error as e:
            raise QueryError(f"重复组操作失败: {e}", {"op": op, "error": str(e)})

    @staticmethod
    def _row_to_group(row) -> DuplicateGroupRecord:
        asset_ids = row[5]
        if isinstance(asset_ids, str):
            asset_ids = json.loads(asset_ids)
        return DuplicateGroupRecord(
            run_id=row[0],
            file_key=row[1],
            original_path=row[2],
            container_name=row[3],
            container_handle=row[4],
            asset_ids=[int(i) for i in (asset_ids or [])],
            primary_asset_id=row[6],
            temp_path=row[7],
            physical_file_hash=row[8],
            file_size=row[9],
            status=row[10],
            claimed_by=row[11],
            updated_at=row[12].isoformat() if row[12] else None,
        )

    def upsert(self, group):
        existing = self.get(group.run_id, group.file_key)
        asset_ids = _merge_ids(existing.asset_ids, group.asset_ids) if existing else group.asset_ids
        cur = self._execute(
            f"""
            INSERT INTO assetmend.duplicate_groups
                (run_id, file_key, original_path, container_name, container_handle, asset_ids, status)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (run_id, file_key) DO UPDATE
            SET asset_ids = EXCLUDED.asset_ids, updated_at = now()
            RETURNING {_COLUMNS}
            """,
            (
                group.run_id,
                group.file_key,
                group.original_path,
                group.container_name,
                group.container_handle,
                json.dumps(asset_ids),
                group.status,
            ),
            "upsert",
        )
        with cur:
            return self._row_to_group(cur.fetchone())

    def get(self, run_id, file_key):
        cur = self._execute(
            f"SELECT {_COLUMNS} FROM assetmend.duplicate_groups WHERE run_id = %s AND file_key = %s",
            (run_id, file_key),
            "get",
        )
        with cur:
            row = cur.fetchone()
        return self._row_to_group(row) if row else None

    def list(self, run_id, status=None):
        sql = f"SELECT {_COLUMNS} FROM assetmend.duplicate_groups WHERE run_id = %s"
        params: List[object] = [run_id]
        if status is not None:
            sql += " AND status = %s"
            params.append(status)
        sql += " ORDER BY file_key"
        cur = self._execute(sql, params, "list")
        with cur:
            return [self._row_to_group(row) for row in cur.fetchall()]

    def save(self, group):
        cur = self._execute(
            f"""
            UPDATE assetmend.duplicate_groups
            SET asset_ids = %s,
                primary_asset_id = COALESCE(primary_asset_id, %s),
                temp_path = %s,
                physical_file_hash = %s,
                file_size = %s,
                status = CASE
                    WHEN {_STATUS_RANK_SQL.format('%s')} >= {_STATUS_RANK_SQL.format('status')}
                    THEN %s ELSE status END,
                updated_at = now()
            WHERE run_id = %s AND file_key = %s
            """,
            (
                json.dumps(group.asset_ids),
                group.primary_asset_id,
                group.temp_path,
                group.physical_file_hash,
                group.file_size,
                group.status,
                group.status,
                group.run_id,
                group.file_key,
            ),
            "save",
        )
        cur.close()

    def claim(self, run_id, file_key, owner):
        cur = self._execute(
            """
            UPDATE assetmend.duplicate_groups
            SET claimed_by = %s, updated_at = now()
            WHERE run_id = %s AND file_key = %s AND (claimed_by IS NULL OR claimed_by = %s)
            RETURNING file_key
            """,
            (owner, run_id, file_key, owner),
            "claim",
        )
        with cur:
            return cur.fetchone() is not None

    def release(self, run_id, file_key, owner):
        self._execute(
            """
            UPDATE assetmend.duplicate_groups
            SET claimed_by = NULL, updated_at = now()
            WHERE run_id = %s AND file_key = %s AND claimed_by = %s
            """,
            (run_id, file_key, owner),
            "release",
        ).close()
