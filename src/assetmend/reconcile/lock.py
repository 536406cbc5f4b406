# -*- coding: utf-8 -*-
"""
assetmend.reconcile.lock - 迁移互斥锁模块

同一时刻只允许一个运行修改记录库与存储。锁采用租约机制:
持有者需要周期性续租，超过 lease_seconds 未续租的锁可被其他进程回收。

实现:
- FileMigrationLock: state_dir 下的 JSON 锁文件（O_EXCL 原子创建）
- PostgresMigrationLock: assetmend.migration_locks 表（INSERT ... ON CONFLICT ... WHERE 过期）
- LockHeartbeat: 按间隔续租；续租失败只记录日志与计数，不会中断当前批次

恢复运行（resume=True）时，允许接管同一 run_id 遗留的锁。
"""

from __future__ import annotations

import json
import logging
import os
import socket
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import psycopg

from .errors import DatabaseError, LockError, LockNotAcquiredError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_NAME = "assetmend-migration"
DEFAULT_LEASE_SECONDS = 43200
DEFAULT_ACQUIRE_TIMEOUT = 3
POLL_INTERVAL_SECONDS = 0.2


def default_owner() -> str:
    """锁持有者标识: <hostname>:<pid>"""
    return f"{socket.gethostname()}:{os.getpid()}"


class MigrationLock(ABC):
    """迁移锁抽象接口"""

    def __init__(self, run_id: str, owner: Optional[str] = None, lease_seconds: int = DEFAULT_LEASE_SECONDS):
        self.run_id = run_id
        self.owner = owner or default_owner()
        self.lease_seconds = lease_seconds

    @abstractmethod
    def acquire(self, timeout: float = DEFAULT_ACQUIRE_TIMEOUT, resume: bool = False) -> None:
        """
        获取锁

        Raises:
            LockNotAcquiredError: 超时仍被其他持有者占用
        """
        pass

    @abstractmethod
    def refresh(self) -> bool:
        """续租，返回是否仍持有锁"""
        pass

    @abstractmethod
    def release(self) -> bool:
        pass

    @abstractmethod
    def is_held(self) -> bool:
        pass

    def __enter__(self) -> "MigrationLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


# =============================================================================
# 文件锁
# =============================================================================


class FileMigrationLock(MigrationLock):
    """
    基于锁文件的迁移锁

    锁文件内容: {owner, run_id, locked_at, lease_seconds}
    """

    def __init__(
        self,
        path: Union[str, Path],
        run_id: str,
        owner: Optional[str] = None,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(run_id, owner, lease_seconds)
        self.path = Path(path)
        self._clock = clock
        self._sleep = sleep

    def _read(self) -> Optional[Dict[str, Any]]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("锁文件无法解析，视为过期: %s (%s)", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _content(self) -> str:
        return json.dumps(
            {
                "owner": self.owner,
                "run_id": self.run_id,
                "locked_at": self._clock(),
                "lease_seconds": self.lease_seconds,
            }
        )

    def _is_expired(self, data: Dict[str, Any]) -> bool:
        try:
            locked_at = float(data["locked_at"])
            lease = float(data.get("lease_seconds", self.lease_seconds))
        except (KeyError, TypeError, ValueError):
            return True
        return locked_at + lease < self._clock()

    def _try_create(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(self._content())
        return True

    def _overwrite(self) -> None:
        temp_path = self.path.with_name(f".{self.path.name}.tmp-{os.getpid()}")
        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(self._content())
        os.replace(temp_path, self.path)

    def acquire(self, timeout=DEFAULT_ACQUIRE_TIMEOUT, resume=False):
        deadline = self._clock() + timeout
        while True:
            try:
                if self._try_create():
                    logger.info("已获取迁移锁: %s (run_id=%s)", self.path, self.run_id)
                    return
                data = self._read()
                if data is None:
                    continue
                if data.get("owner") == self.owner or (resume and data.get("run_id") == self.run_id):
                    self._overwrite()
                    logger.info("接管迁移锁: %s (run_id=%s)", self.path, self.run_id)
                    return
                if self._is_expired(data):
                    logger.warning("清理过期迁移锁: %s (持有者 %s)", self.path, data.get("owner"))
                    self.path.unlink()
                    continue
            except FileNotFoundError:
                continue
            except OSError as e:
                raise LockError(
                    f"迁移锁文件操作失败: {self.path}",
                    {"path": str(self.path), "error": str(e)},
                )

            if self._clock() >= deadline:
                raise LockNotAcquiredError(
                    "另一个迁移正在运行，无法获取迁移锁",
                    {
                        "path": str(self.path),
                        "holder": data.get("owner"),
                        "holder_run_id": data.get("run_id"),
                        "timeout": timeout,
                    },
                )
            self._sleep(POLL_INTERVAL_SECONDS)

    def refresh(self):
        data = self._read()
        if not data or data.get("owner") != self.owner:
            return False
        try:
            self._overwrite()
        except OSError as e:
            raise LockError(
                f"迁移锁续租失败: {self.path}",
                {"path": str(self.path), "error": str(e)},
            )
        return True

    def release(self):
        data = self._read()
        if not data or data.get("owner") != self.owner:
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.info("已释放迁移锁: %s", self.path)
        return True

    def is_held(self):
        data = self._read()
        return bool(data) and data.get("owner") == self.owner and not self._is_expired(data)


# =============================================================================
# PostgreSQL 租约锁
# =============================================================================


class PostgresMigrationLock(MigrationLock):
    """
    基于 assetmend.migration_locks 表的租约锁

    获取条件（满足任一）:
    1. 锁不存在（创建新锁）
    2. 锁未被持有（locked_by IS NULL）
    3. 锁已过期（locked_at + lease_seconds < now()）
    4. resume=True 且锁属于同一 run_id
    """

    def __init__(
        self,
        conn: psycopg.Connection,
        run_id: str,
        lock_name: str = DEFAULT_LOCK_NAME,
        owner: Optional[str] = None,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(run_id, owner, lease_seconds)
        self._conn = conn
        self.lock_name = lock_name
        self._sleep = sleep

    def _fetch(self, sql: str, params, op: str):
        try:
            with self._conn.cursor() as cur:
                cur.execute(sql, params)
                return cur.fetchone()
        except psycopg.Error as e:
            raise DatabaseError(
                f"迁移锁操作失败: {e}",
                {"op": op, "lock_name": self.lock_name, "owner": self.owner, "error": str(e)},
            )

    def _claim(self, resume: bool) -> bool:
        row = self._fetch(
            """
            INSERT INTO assetmend.migration_locks (lock_name, locked_by, run_id, locked_at, lease_seconds)
            VALUES (%s, %s, %s, now(), %s)
            ON CONFLICT (lock_name) DO UPDATE
            SET
                locked_by = EXCLUDED.locked_by,
                run_id = EXCLUDED.run_id,
                locked_at = now(),
                lease_seconds = EXCLUDED.lease_seconds
            WHERE
                assetmend.migration_locks.locked_by IS NULL
                OR assetmend.migration_locks.locked_by = EXCLUDED.locked_by
                OR assetmend.migration_locks.locked_at
                   + (assetmend.migration_locks.lease_seconds || ' seconds')::interval < now()
                OR (%s AND assetmend.migration_locks.run_id = EXCLUDED.run_id)
            RETURNING lock_name
            """,
            (self.lock_name, self.owner, self.run_id, self.lease_seconds, resume),
            "claim",
        )
        return row is not None

    def acquire(self, timeout=DEFAULT_ACQUIRE_TIMEOUT, resume=False):
        deadline = time.monotonic() + timeout
        while True:
            if self._claim(resume):
                logger.info("已获取迁移锁: %s (run_id=%s)", self.lock_name, self.run_id)
                return
            if time.monotonic() >= deadline:
                holder = self._fetch(
                    "SELECT locked_by, run_id FROM assetmend.migration_locks WHERE lock_name = %s",
                    (self.lock_name,),
                    "get",
                )
                raise LockNotAcquiredError(
                    "另一个迁移正在运行，无法获取迁移锁",
                    {
                        "lock_name": self.lock_name,
                        "holder": holder[0] if holder else None,
                        "holder_run_id": holder[1] if holder else None,
                        "timeout": timeout,
                    },
                )
            self._sleep(POLL_INTERVAL_SECONDS)

    def refresh(self):
        row = self._fetch(
            """
            UPDATE assetmend.migration_locks
            SET locked_at = now()
            WHERE lock_name = %s AND locked_by = %s
            RETURNING lock_name
            """,
            (self.lock_name, self.owner),
            "refresh",
        )
        return row is not None

    def release(self):
        row = self._fetch(
            """
            UPDATE assetmend.migration_locks
            SET locked_by = NULL, locked_at = NULL
            WHERE lock_name = %s AND locked_by = %s
            RETURNING lock_name
            """,
            (self.lock_name, self.owner),
            "release",
        )
        if row is not None:
            logger.info("已释放迁移锁: %s", self.lock_name)
        return row is not None

    def is_held(self):
        row = self._fetch(
            """
            SELECT 1 FROM assetmend.migration_locks
            WHERE lock_name = %s AND locked_by = %s
              AND locked_at + (lease_seconds || ' seconds')::interval >= now()
            """,
            (self.lock_name, self.owner),
            "is_held",
        )
        return row is not None


# =============================================================================
# 心跳续租
# =============================================================================


class LockHeartbeat:
    """
    迁移锁心跳

    两种用法:
    - 同步: 批次循环中调用 maybe_refresh()，距上次续租超过 interval_seconds 才真正续租
    - 后台: start()/stop() 或 with 语句启动守护线程
    """

    def __init__(
        self,
        lock: MigrationLock,
        interval_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.lock = lock
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._last_refresh = clock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None
        self.failure_count = 0
        self.refresh_count = 0
        self.last_error: Optional[str] = None

    def refresh_now(self) -> bool:
        """立即续租（失败不抛出）"""
        self._last_refresh = self._clock()
        try:
            ok = self.lock.refresh()
        except Exception as exc:
            self.failure_count += 1
            self.last_error = f"Exception during refresh: {exc}"
            logger.warning("迁移锁续租异常（第 %s 次）: %s", self.failure_count, exc)
            return False
        if ok:
            self.refresh_count += 1
            self.last_error = None
        else:
            self.failure_count += 1
            self.last_error = "lock_not_held"
            logger.warning("迁移锁续租失败: 锁已不属于当前进程（第 %s 次）", self.failure_count)
        return ok

    def maybe_refresh(self) -> bool:
        """到达间隔时续租，返回本次是否执行了续租"""
        if self._clock() - self._last_refresh < self.interval_seconds:
            return False
        self.refresh_now()
        return True

    def start(self) -> None:
        """启动后台续租线程"""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self, *, wait: bool = False, timeout: Optional[float] = None) -> None:
        if self._stop_event:
            self._stop_event.set()
        if wait and self._thread:
            self._thread.join(timeout=timeout)
        if self._thread and not self._thread.is_alive():
            self._thread = None

    def __enter__(self) -> "LockHeartbeat":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop(wait=True, timeout=2.0)

    def _run(self) -> None:
        while self._stop_event and not self._stop_event.is_set():
            if self._stop_event.wait(self.interval_seconds):
                break
            self.refresh_now()
