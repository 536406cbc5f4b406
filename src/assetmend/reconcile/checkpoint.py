# -*- coding: utf-8 -*-
"""
assetmend.reconcile.checkpoint - 检查点存储模块

每个阶段保存两类状态:
- 已处理 id 集合（ProcessedIdSet）: 每批次更新，恢复时跳过集合内所有 id
- 完整检查点: 自由格式 payload，按 checkpoint_every_batches 周期写入

存储:
    FileCheckpointStore       state_dir 下的 JSON 文件（原子写入）
        <run_id>.state.json               快速状态（各阶段已处理 id）
        <run_id>_<phase>_<timestamp>.json  完整检查点
    PostgresCheckpointStore   assetmend.checkpoints 表，键 (run_id, phase)

写入失败属于严重错误，抛出 CheckpointError。
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Union

import psycopg

from .errors import CheckpointError, InvalidRunIdError

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1

RUN_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

STATE_SUFFIX = ".state.json"

# 已处理 id 可以是记录 id（int）或文件键（str）
ProcessedId = Union[int, str]


def validate_run_id(run_id: str) -> str:
    """
    校验运行 ID

    Raises:
        InvalidRunIdError: 包含 [a-zA-Z0-9_-] 以外的字符
    """
    if not run_id or not RUN_ID_PATTERN.match(run_id):
        raise InvalidRunIdError(
            f"无效的运行 ID: {run_id!r}（只允许字母、数字、下划线和连字符）",
            {"run_id": run_id},
        )
    return run_id


def generate_run_id() -> str:
    """生成运行 ID: run-<UTC 时间戳>"""
    return "run-" + datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CheckpointStore(ABC):
    """检查点存储抽象接口"""

    def __init__(self, run_id: str):
        self.run_id = validate_run_id(run_id)

    @abstractmethod
    def save(self, phase: str, payload: Dict[str, Any]) -> str:
        """保存完整检查点，返回检查点标识"""
        pass

    @abstractmethod
    def load(self, phase: str) -> Optional[Dict[str, Any]]:
        """读取阶段最近一次完整检查点的 payload"""
        pass

    @abstractmethod
    def update_processed_ids(self, phase: str, ids: Iterable[ProcessedId]) -> None:
        """将 ids 并入阶段的已处理集合"""
        pass

    @abstractmethod
    def load_processed_ids(self, phase: str) -> Set[ProcessedId]:
        pass

    @abstractmethod
    def latest(self) -> Optional[Dict[str, Any]]:
        """本次运行最近一次完整检查点的元数据"""
        pass

    @abstractmethod
    def list_checkpoints(self) -> List[Dict[str, Any]]:
        """所有运行的检查点元数据（按创建时间倒序）"""
        pass

    @abstractmethod
    def cleanup(self, retention_hours: int) -> int:
        """删除超过保留期的检查点，返回删除数量"""
        pass


# =============================================================================
# 文件实现
# =============================================================================


def _atomic_write_json(path: Path, data: Dict[str, Any]) -> None:
    temp_path = path.with_name(f".{path.name}.tmp-{os.getpid()}")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2, default=str)
        os.replace(temp_path, path)
    except OSError as e:
        if temp_path.exists():
            temp_path.unlink()
        raise CheckpointError(
            f"检查点写入失败: {path}",
            {"path": str(path), "error": str(e)},
        )


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        raise CheckpointError(
            f"检查点读取失败: {path}",
            {"path": str(path), "error": str(e)},
        )
    return data if isinstance(data, dict) else None


class FileCheckpointStore(CheckpointStore):
    """
    基于 JSON 文件的检查点存储

    Args:
        state_dir: 状态目录
        run_id: 运行 ID
    """

    def __init__(self, state_dir: Union[str, Path], run_id: str):
        super().__init__(run_id)
        self.state_dir = Path(state_dir)
        self._lock = threading.Lock()

    @property
    def state_path(self) -> Path:
        return self.state_dir / f"{self.run_id}{STATE_SUFFIX}"

    def _read_state(self) -> Dict[str, Any]:
        state = _read_json(self.state_path)
        if state is None:
            state = {"run_id": self.run_id, "phases": {}}
        state.setdefault("phases", {})
        return state

    def update_processed_ids(self, phase, ids):
        ids = list(ids)
        if not ids:
            return
        with self._lock:
            state = self._read_state()
            entry = state["phases"].setdefault(phase, {"processed_ids": []})
            merged = list(entry.get("processed_ids") or [])
            known = set(merged)
            for item in ids:
                if item not in known:
                    merged.append(item)
                    known.add(item)
            entry["processed_ids"] = merged
            entry["updated_at"] = _now_iso()
            _atomic_write_json(self.state_path, state)

    def load_processed_ids(self, phase):
        with self._lock:
            state = self._read_state()
        return set(state["phases"].get(phase, {}).get("processed_ids") or [])

    def _checkpoint_files(self, run_id: Optional[str] = None) -> List[Path]:
        if not self.state_dir.is_dir():
            return []
        pattern = f"{run_id}_*.json" if run_id else "*_*.json"
        return [
            p
            for p in self.state_dir.glob(pattern)
            if not p.name.endswith(STATE_SUFFIX) and not p.name.startswith(".")
        ]

    def save(self, phase, payload):
        created_at = datetime.now(timezone.utc)
        checkpoint_id = f"{self.run_id}_{phase}_{created_at.strftime('%Y%m%d%H%M%S%f')}"
        with self._lock:
            processed = self._read_state()["phases"].get(phase, {}).get("processed_ids") or []
            _atomic_write_json(
                self.state_dir / f"{checkpoint_id}.json",
                {
                    "checkpoint_version": CHECKPOINT_VERSION,
                    "checkpoint_id": checkpoint_id,
                    "run_id": self.run_id,
                    "phase": phase,
                    "created_at": created_at.isoformat(),
                    "payload": payload,
                    "processed_ids": processed,
                },
            )
        logger.debug("检查点已保存: %s", checkpoint_id)
        return checkpoint_id

    def _load_documents(self, run_id: Optional[str] = None) -> List[Dict[str, Any]]:
        documents = []
        for path in self._checkpoint_files(run_id):
            data = _read_json(path)
            if not data or "checkpoint_version" not in data:
                continue
            if run_id and data.get("run_id") != run_id:
                continue
            data.setdefault("checkpoint_id", path.stem)
            documents.append(data)
        documents.sort(key=lambda d: d.get("created_at") or "", reverse=True)
        return documents

    def load(self, phase):
        for data in self._load_documents(self.run_id):
            if data.get("phase") == phase:
                return data.get("payload") or {}
        return None

    def latest(self):
        documents = self._load_documents(self.run_id)
        if not documents:
            return None
        return self._metadata(documents[0])

    @staticmethod
    def _metadata(data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "checkpoint_id": data.get("checkpoint_id"),
            "run_id": data.get("run_id"),
            "phase": data.get("phase"),
            "created_at": data.get("created_at"),
            "processed_count": len(data.get("processed_ids") or []),
        }

    def list_checkpoints(self):
        return [self._metadata(d) for d in self._load_documents()]

    def cleanup(self, retention_hours):
        cutoff = time.time() - retention_hours * 3600
        removed = 0
        for path in self._checkpoint_files():
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError as e:
                logger.warning("删除过期检查点失败: %s (%s)", path, e)
        if removed:
            logger.info("已清理 %s 个过期检查点（保留 %s 小时）", removed, retention_hours)
        return removed


# =============================================================================
# PostgreSQL 实现
# =============================================================================


class PostgresCheckpointStore(CheckpointStore):
    """
    基于 assetmend.checkpoints 表的检查点存储

    每个 (run_id, phase) 一行；payload 与 processed_ids 为 jsonb。
    """

    def __init__(self, conn: psycopg.Connection, run_id: str):
        super().__init__(run_id)
        self._conn = conn
        self._lock = threading.Lock()

    def _execute(self, sql: str, params, op: str):
        try:
            cur = self._conn.cursor()
            cur.execute(sql, params)
            return cur
        except psycopg.Error as e:
            raise CheckpointError(
                f"检查点操作失败: {e}",
                {"op": op, "run_id": self.run_id, "error": str(e)},
            )

    def save(self, phase, payload):
        with self._lock:
            cur = self._execute(
                """
                INSERT INTO assetmend.checkpoints (run_id, phase, payload, updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (run_id, phase) DO UPDATE
                SET payload = EXCLUDED.payload, updated_at = now()
                RETURNING updated_at
                """,
                (self.run_id, phase, json.dumps(payload, default=str)),
                "save",
            )
            with cur:
                row = cur.fetchone()
        updated_at = row[0] if row else None
        stamp = updated_at.strftime("%Y%m%d%H%M%S%f") if updated_at else "0"
        return f"{self.run_id}_{phase}_{stamp}"

    def load(self, phase):
        cur = self._execute(
            "SELECT payload FROM assetmend.checkpoints WHERE run_id = %s AND phase = %s",
            (self.run_id, phase),
            "load",
        )
        with cur:
            row = cur.fetchone()
        return row[0] if row else None

    def update_processed_ids(self, phase, ids):
        ids = list(ids)
        if not ids:
            return
        with self._lock:
            merged = list(self._load_processed_list(phase))
            known = set(merged)
            merged.extend(i for i in ids if i not in known)
            self._execute(
                """
                INSERT INTO assetmend.checkpoints (run_id, phase, processed_ids, updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (run_id, phase) DO UPDATE
                SET processed_ids = EXCLUDED.processed_ids, updated_at = now()
                """,
                (self.run_id, phase, json.dumps(merged)),
                "update_processed_ids",
            ).close()

    def _load_processed_list(self, phase: str) -> List[ProcessedId]:
        cur = self._execute(
            "SELECT processed_ids FROM assetmend.checkpoints WHERE run_id = %s AND phase = %s",
            (self.run_id, phase),
            "load_processed_ids",
        )
        with cur:
            row = cur.fetchone()
        return list(row[0] or []) if row else []

    def load_processed_ids(self, phase):
        return set(self._load_processed_list(phase))

    _LIST_SQL = """
        SELECT run_id, phase, updated_at, jsonb_array_length(processed_ids)
        FROM assetmend.checkpoints
    """

    @staticmethod
    def _row_metadata(row) -> Dict[str, Any]:
        run_id, phase, updated_at, processed = row
        stamp = updated_at.strftime("%Y%m%d%H%M%S%f") if updated_at else "0"
        return {
            "checkpoint_id": f"{run_id}_{phase}_{stamp}",
            "run_id": run_id,
            "phase": phase,
            "created_at": updated_at.isoformat() if updated_at else None,
            "processed_count": int(processed or 0),
        }

    def latest(self):
        cur = self._execute(
            self._LIST_SQL + " WHERE run_id = %s ORDER BY updated_at DESC LIMIT 1",
            (self.run_id,),
            "latest",
        )
        with cur:
            row = cur.fetchone()
        return self._row_metadata(row) if row else None

    def list_checkpoints(self):
        cur = self._execute(self._LIST_SQL + " ORDER BY updated_at DESC", (), "list")
        with cur:
            return [self._row_metadata(row) for row in cur.fetchall()]

    def cleanup(self, retention_hours):
        cur = self._execute(
            """
            DELETE FROM assetmend.checkpoints
            WHERE updated_at < now() - (%s || ' hours')::interval
            """,
            (str(int(retention_hours)),),
            "cleanup",
        )
        with cur:
            removed = cur.rowcount or 0
        if removed:
            logger.info("已清理 %s 个过期检查点（保留 %s 小时）", removed, retention_hours)
        return removed
