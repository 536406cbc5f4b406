"""
assetmend.reconcile.record_store - 记录库接口

宿主应用的记录持久化层不属于本引擎，这里只定义窄接口:
    query(container_ids, filters, offset, limit) -> 一页 RecordEntry
    count(container_ids, filters) -> int
    get(id) -> RecordEntry | None
    get_reference_count(id) -> int
    transfer_references(from_id, to_id) -> int
    update_location(id, container_id, parent_id, parent_path, name)
    update_size(id, size)
    delete(id)
    ensure_parent(container_id, path) -> parent_id
    transaction()  上下文管理器：成功提交，异常回滚

实现:
    InMemoryRecordStore   字典存储，事务基于快照回滚（测试 / 演练用）
    PostgresRecordStore   基于 psycopg 的 assetmend.records / relations / parents 表
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

import psycopg

from .errors import RecordStoreError
from .models import RecordEntry

logger = logging.getLogger(__name__)

# 支持的查询过滤键
FILTER_KEYS = {"ids", "name", "parent_id", "min_reference_count"}


class RecordStore(ABC):
    """记录库抽象接口"""

    @abstractmethod
    def query(
        self,
        container_ids: Iterable[int],
        filters: Optional[Dict[str, Any]] = None,
        offset: int = 0,
        limit: int = 100,
    ) -> List[RecordEntry]:
        """按 id 升序分页查询"""
        pass

    @abstractmethod
    def count(self, container_ids: Iterable[int], filters: Optional[Dict[str, Any]] = None) -> int:
        pass

    @abstractmethod
    def get(self, record_id: int) -> Optional[RecordEntry]:
        pass

    @abstractmethod
    def get_reference_count(self, record_id: int) -> int:
        pass

    @abstractmethod
    def transfer_references(self, from_id: int, to_id: int) -> int:
        """将指向 from_id 的引用转移到 to_id，返回转移条数"""
        pass

    @abstractmethod
    def update_location(
        self,
        record_id: int,
        container_id: int,
        parent_id: Optional[int],
        parent_path: str,
        name: Optional[str] = None,
    ) -> None:
        pass

    @abstractmethod
    def update_size(self, record_id: int, size: int) -> None:
        pass

    @abstractmethod
    def delete(self, record_id: int) -> None:
        pass

    @abstractmethod
    def ensure_parent(self, container_id: int, path: str) -> int:
        """返回目录 id（不存在时创建）"""
        pass

    @abstractmethod
    def transaction(self):
        """事务上下文管理器"""
        pass

    def iter_pages(
        self,
        container_ids: Iterable[int],
        batch_size: int,
        filters: Optional[Dict[str, Any]] = None,
    ) -> Iterator[List[RecordEntry]]:
        """按批次遍历，单次查询结果不超过 batch_size"""
        container_ids = list(container_ids)
        offset = 0
        while True:
            page = self.query(container_ids, filters, offset=offset, limit=batch_size)
            if not page:
                return
            yield page
            if len(page) < batch_size:
                return
            offset += batch_size


# =============================================================================
# 内存实现
# =============================================================================


class InMemoryRecordStore(RecordStore):
    """
    内存记录库

    引用关系以 (source_key, target_id) 集合表示，引用计数实时计算。
    """

    def __init__(self):
        self._records: Dict[int, RecordEntry] = {}
        self._relations: Set[Tuple[str, int]] = set()
        self._parents: Dict[Tuple[int, str], int] = {}
        self._next_parent_id = 1
        self._lock = threading.RLock()

    # ---------- 测试 / 装载辅助 ----------

    def add(self, record: RecordEntry, references: int = 0) -> RecordEntry:
        """添加记录，并生成 references 条虚拟引用"""
        with self._lock:
            self._records[record.id] = record
            for i in range(references):
                self._relations.add((f"ref:{record.id}:{i}", record.id))
            if record.parent_id is not None:
                self._parents.setdefault(
                    (record.container_id, record.parent_path.strip("/")), record.parent_id
                )
            return self.get(record.id)

    def add_reference(self, source_key: str, target_id: int) -> None:
        with self._lock:
            self._relations.add((source_key, target_id))

    # ---------- 接口实现 ----------

    def _matches(self, record: RecordEntry, container_ids: Set[int], filters: Dict[str, Any]) -> bool:
        if container_ids and record.container_id not in container_ids:
            return False
        if "ids" in filters and record.id not in set(filters["ids"]):
            return False
        if "name" in filters and record.name != filters["name"]:
            return False
        if "parent_id" in filters and record.parent_id != filters["parent_id"]:
            return False
        if "min_reference_count" in filters:
            if self._reference_count(record.id) < filters["min_reference_count"]:
                return False
        return True

    def _reference_count(self, record_id: int) -> int:
        return sum(1 for _, target in self._relations if target == record_id)

    def _snapshot(self, record: RecordEntry) -> RecordEntry:
        return dataclasses.replace(record, reference_count=self._reference_count(record.id))

    def query(self, container_ids, filters=None, offset=0, limit=100):
        wanted = set(container_ids or [])
        filters = filters or {}
        with self._lock:
            matched = [
                r for _, r in sorted(self._records.items()) if self._matches(r, wanted, filters)
            ]
            return [self._snapshot(r) for r in matched[offset:offset + limit]]

    def count(self, container_ids, filters=None):
        wanted = set(container_ids or [])
        filters = filters or {}
        with self._lock:
            return sum(1 for r in self._records.values() if self._matches(r, wanted, filters))

    def get(self, record_id):
        with self._lock:
            record = self._records.get(record_id)
            return self._snapshot(record) if record else None

    def get_reference_count(self, record_id):
        with self._lock:
            return self._reference_count(record_id)

    def transfer_references(self, from_id, to_id):
        with self._lock:
            moving = {rel for rel in self._relations if rel[1] == from_id}
            for source_key, _ in moving:
                self._relations.discard((source_key, from_id))
                self._relations.add((source_key, to_id))
            return len(moving)

    def update_location(self, record_id, container_id, parent_id, parent_path, name=None):
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise RecordStoreError(f"记录不存在: {record_id}", {"record_id": record_id})
            self._records[record_id] = dataclasses.replace(
                record,
                container_id=container_id,
                parent_id=parent_id,
                parent_path=parent_path or "",
                name=name if name is not None else record.name,
            )

    def update_size(self, record_id, size):
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise RecordStoreError(f"记录不存在: {record_id}", {"record_id": record_id})
            self._records[record_id] = dataclasses.replace(record, size=size)

    def delete(self, record_id):
        with self._lock:
            self._records.pop(record_id, None)
            self._relations = {rel for rel in self._relations if rel[1] != record_id}

    def ensure_parent(self, container_id, path):
        key = (container_id, (path or "").strip("/"))
        with self._lock:
            if key not in self._parents:
                self._parents[key] = self._next_parent_id
                self._next_parent_id += 1
            return self._parents[key]

    @contextmanager
    def transaction(self):
        with self._lock:
            saved = (
                dict(self._records),
                set(self._relations),
                dict(self._parents),
                self._next_parent_id,
            )
            try:
                yield self
            except BaseException:
                self._records, self._relations, self._parents, self._next_parent_id = saved
                raise


# =============================================================================
# PostgreSQL 实现
# =============================================================================


_RECORD_COLUMNS = """
    r.id, r.container_id, r.parent_id, r.name, r.parent_path, r.size,
    r.date_created, r.date_updated,
    (SELECT count(*) FROM assetmend.relations rel WHERE rel.target_id = r.id) AS reference_count
"""


class PostgresRecordStore(RecordStore):
    """
    PostgreSQL 记录库

    连接以 autocommit 模式使用，transaction() 通过 conn.transaction() 提供原子块。
    所有 psycopg 异常包装为 RecordStoreError（严重错误）。
    """

    def __init__(self, conn: psycopg.Connection):
        self._conn = conn

    @staticmethod
    def _row_to_record(row) -> RecordEntry:
        return RecordEntry(
            id=row[0],
            container_id=row[1],
            parent_id=row[2],
            name=row[3],
            parent_path=row[4] or "",
            size=row[5],
            date_created=row[6],
            date_updated=row[7],
            reference_count=int(row[8] or 0),
        )

    def _where(self, container_ids, filters) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        container_ids = list(container_ids or [])
        if container_ids:
            clauses.append("r.container_id = ANY(%s)")
            params.append(container_ids)
        filters = filters or {}
        unknown = set(filters) - FILTER_KEYS
        if unknown:
            raise RecordStoreError(f"不支持的过滤条件: {sorted(unknown)}", {"filters": sorted(unknown)})
        if "ids" in filters:
            clauses.append("r.id = ANY(%s)")
            params.append(list(filters["ids"]))
        if "name" in filters:
            clauses.append("r.name = %s")
            params.append(filters["name"])
        if "parent_id" in filters:
            clauses.append("r.parent_id = %s")
            params.append(filters["parent_id"])
        if "min_reference_count" in filters:
            clauses.append(
                "(SELECT count(*) FROM assetmend.relations rel WHERE rel.target_id = r.id) >= %s"
            )
            params.append(filters["min_reference_count"])
        where = " AND ".join(clauses) if clauses else "TRUE"
        return where, params

    def _execute(self, sql: str, params: Iterable[Any], context: Dict[str, Any]):
        try:
            cur = self._conn.cursor()
            cur.execute(sql, list(params))
            return cur
        except psycopg.Error as e:
            raise RecordStoreError(f"记录库操作失败: {e}", dict(context, error=str(e)))

    def query(self, container_ids, filters=None, offset=0, limit=100):
        where, params = self._where(container_ids, filters)
        cur = self._execute(
            f"SELECT {_RECORD_COLUMNS} FROM assetmend.records r WHERE {where} "
            "ORDER BY r.id LIMIT %s OFFSET %s",
            params + [limit, offset],
            {"op": "query", "offset": offset, "limit": limit},
        )
        with cur:
            return [self._row_to_record(row) for row in cur.fetchall()]

    def count(self, container_ids, filters=None):
        where, params = self._where(container_ids, filters)
        cur = self._execute(
            f"SELECT count(*) FROM assetmend.records r WHERE {where}", params, {"op": "count"}
        )
        with cur:
            row = cur.fetchone()
            return int(row[0]) if row else 0

    def get(self, record_id):
        cur = self._execute(
            f"SELECT {_RECORD_COLUMNS} FROM assetmend.records r WHERE r.id = %s",
            [record_id],
            {"op": "get", "record_id": record_id},
        )
        with cur:
            row = cur.fetchone()
            return self._row_to_record(row) if row else None

    def get_reference_count(self, record_id):
        cur = self._execute(
            "SELECT count(*) FROM assetmend.relations WHERE target_id = %s",
            [record_id],
            {"op": "get_reference_count", "record_id": record_id},
        )
        with cur:
            row = cur.fetchone()
            return int(row[0]) if row else 0

    def transfer_references(self, from_id, to_id):
        with self.transaction():
            # 先删除会与目标重复的引用，再整体改指向
            cur = self._execute(
                """
                DELETE FROM assetmend.relations a
                USING assetmend.relations b
                WHERE a.target_id = %s AND b.target_id = %s AND a.source_key = b.source_key
                """,
                [from_id, to_id],
                {"op": "transfer_references", "from_id": from_id, "to_id": to_id},
            )
            cur.close()
            cur = self._execute(
                "UPDATE assetmend.relations SET target_id = %s WHERE target_id = %s",
                [to_id, from_id],
                {"op": "transfer_references", "from_id": from_id, "to_id": to_id},
            )
            with cur:
                return cur.rowcount

    def update_location(self, record_id, container_id, parent_id, parent_path, name=None):
        cur = self._execute(
            """
            UPDATE assetmend.records
            SET container_id = %s, parent_id = %s, parent_path = %s,
                name = COALESCE(%s, name), date_updated = now()
            WHERE id = %s
            """,
            [container_id, parent_id, parent_path or "", name, record_id],
            {"op": "update_location", "record_id": record_id},
        )
        with cur:
            if cur.rowcount == 0:
                raise RecordStoreError(f"记录不存在: {record_id}", {"record_id": record_id})

    def update_size(self, record_id, size):
        cur = self._execute(
            "UPDATE assetmend.records SET size = %s, date_updated = now() WHERE id = %s",
            [size, record_id],
            {"op": "update_size", "record_id": record_id},
        )
        cur.close()

    def delete(self, record_id):
        with self.transaction():
            self._execute(
                "DELETE FROM assetmend.relations WHERE target_id = %s",
                [record_id],
                {"op": "delete", "record_id": record_id},
            ).close()
            self._execute(
                "DELETE FROM assetmend.records WHERE id = %s",
                [record_id],
                {"op": "delete", "record_id": record_id},
            ).close()

    def ensure_parent(self, container_id, path):
        normalized = (path or "").strip("/")
        cur = self._execute(
            """
            INSERT INTO assetmend.parents (container_id, path)
            VALUES (%s, %s)
            ON CONFLICT (container_id, path) DO UPDATE SET path = EXCLUDED.path
            RETURNING id
            """,
            [container_id, normalized],
            {"op": "ensure_parent", "container_id": container_id, "path": normalized},
        )
        with cur:
            return int(cur.fetchone()[0])

    @contextmanager
    def transaction(self):
        try:
            with self._conn.transaction():
                yield self
        except psycopg.Error as e:
            raise RecordStoreError(f"记录库事务失败: {e}", {"error": str(e)})
