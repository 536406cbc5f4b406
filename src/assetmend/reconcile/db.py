"""
assetmend.reconcile.db - 数据库连接模块

提供 PostgreSQL 连接与 schema 初始化。

表:
    assetmend.records            记录（宿主应用未提供时的参考表结构）
    assetmend.relations          记录之间的引用关系（用于引用计数）
    assetmend.parents            目录
    assetmend.duplicate_groups   重复组状态，键 (run_id, file_key)
    assetmend.checkpoints        检查点，键 (run_id, phase)
    assetmend.migration_locks    迁移锁（租约）
"""

import logging
import os
from typing import Optional

import psycopg

from .errors import DbConnectionError, QueryError

logger = logging.getLogger(__name__)

ENV_PG_STATEMENT_TIMEOUT_MS = "ASSETMEND_PG_STATEMENT_TIMEOUT_MS"

SCHEMA_DDL = """
CREATE SCHEMA IF NOT EXISTS assetmend;

CREATE TABLE IF NOT EXISTS assetmend.parents (
    id            bigserial PRIMARY KEY,
    container_id  integer NOT NULL,
    path          text NOT NULL DEFAULT '',
    UNIQUE (container_id, path)
);

CREATE TABLE IF NOT EXISTS assetmend.records (
    id            bigint PRIMARY KEY,
    container_id  integer NOT NULL,
    parent_id     bigint,
    name          text NOT NULL,
    parent_path   text NOT NULL DEFAULT '',
    size          bigint,
    date_created  timestamptz NOT NULL DEFAULT now(),
    date_updated  timestamptz NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS records_container_idx ON assetmend.records (container_id, id);

CREATE TABLE IF NOT EXISTS assetmend.relations (
    id          bigserial PRIMARY KEY,
    source_key  text NOT NULL,
    target_id   bigint NOT NULL
);
CREATE INDEX IF NOT EXISTS relations_target_idx ON assetmend.relations (target_id);

CREATE TABLE IF NOT EXISTS assetmend.duplicate_groups (
    run_id              text NOT NULL,
    file_key            text NOT NULL,
    original_path       text NOT NULL,
    container_name      text NOT NULL DEFAULT '',
    container_handle    text NOT NULL DEFAULT '',
    asset_ids           jsonb NOT NULL DEFAULT '[]'::jsonb,
    primary_asset_id    bigint,
    temp_path           text,
    physical_file_hash  text,
    file_size           bigint,
    status              text NOT NULL DEFAULT 'pending',
    claimed_by          text,
    updated_at          timestamptz NOT NULL DEFAULT now(),
    PRIMARY KEY (run_id, file_key)
);

CREATE TABLE IF NOT EXISTS assetmend.checkpoints (
    run_id         text NOT NULL,
    phase          text NOT NULL,
    payload        jsonb NOT NULL DEFAULT '{}'::jsonb,
    processed_ids  jsonb NOT NULL DEFAULT '[]'::jsonb,
    updated_at     timestamptz NOT NULL DEFAULT now(),
    PRIMARY KEY (run_id, phase)
);

CREATE TABLE IF NOT EXISTS assetmend.migration_locks (
    lock_name      text PRIMARY KEY,
    locked_by      text,
    run_id         text,
    locked_at      timestamptz,
    lease_seconds  integer NOT NULL DEFAULT 43200
);
"""


def get_connection(
    dsn: str,
    autocommit: bool = True,
    statement_timeout_ms: Optional[int] = None,
) -> psycopg.Connection:
    """
    获取数据库连接

    Args:
        dsn: 数据库连接字符串
        autocommit: 是否启用自动提交模式（默认启用，原子块使用 conn.transaction()）
        statement_timeout_ms: 可选的语句超时时间（毫秒），也可由
            ASSETMEND_PG_STATEMENT_TIMEOUT_MS 环境变量指定

    Raises:
        DbConnectionError: 连接失败
    """
    if statement_timeout_ms is None:
        raw = os.environ.get(ENV_PG_STATEMENT_TIMEOUT_MS)
        if raw and raw.isdigit():
            statement_timeout_ms = int(raw)

    try:
        conn = psycopg.connect(dsn, autocommit=autocommit)
    except psycopg.Error as e:
        raise DbConnectionError(
            f"数据库连接失败: {e}",
            {"error": str(e)},
        )

    if statement_timeout_ms:
        try:
            with conn.cursor() as cur:
                cur.execute(f"SET statement_timeout = {int(statement_timeout_ms)}")
        except psycopg.Error as e:
            conn.close()
            raise DbConnectionError(
                f"设置 statement_timeout 失败: {e}",
                {"statement_timeout_ms": statement_timeout_ms, "error": str(e)},
            )
    return conn


def ensure_schema(conn: psycopg.Connection) -> None:
    """创建所需的 schema 与表（幂等）"""
    try:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(SCHEMA_DDL)
    except psycopg.Error as e:
        raise QueryError(
            f"初始化 schema 失败: {e}",
            {"error": str(e)},
        )
    logger.info("assetmend schema 已就绪")
