# -*- coding: utf-8 -*-
"""
assetmend.reconcile 测试共享 fixtures

容器布局（同一个 base 目录下的三个兄弟根目录，互不嵌套）:
    1 images      目标容器
    2 uploads     其他源容器
    3 quarantine  隔离容器
"""

from pathlib import Path

import pytest

from assetmend.reconcile.audit import AuditLog
from assetmend.reconcile.checkpoint import FileCheckpointStore
from assetmend.reconcile.error_budget import ErrorBudget
from assetmend.reconcile.file_ops import FileOperations
from assetmend.reconcile.gateway import Container, ContainerRegistry, LocalGateway
from assetmend.reconcile.models import RecordEntry
from assetmend.reconcile.record_store import InMemoryRecordStore
from assetmend.reconcile.retry import RetryManager
from assetmend.reconcile.run_context import RunContext

IMAGES = 1
UPLOADS = 2
QUARANTINE = 3

TEST_RUN_ID = "test-run"


# =============================================================================
# 存储
# =============================================================================


@pytest.fixture
def store_dir(tmp_path) -> Path:
    """网关共享的 base 目录"""
    base = tmp_path / "store"
    for name in ("images", "uploads", "quarantine"):
        (base / name).mkdir(parents=True)
    return base


@pytest.fixture
def registry(store_dir) -> ContainerRegistry:
    return ContainerRegistry(
        [
            Container(IMAGES, "Images", "images", LocalGateway(store_dir, "images", handle="images")),
            Container(UPLOADS, "Uploads", "uploads", LocalGateway(store_dir, "uploads", handle="uploads")),
            Container(
                QUARANTINE,
                "Quarantine",
                "quarantine",
                LocalGateway(store_dir, "quarantine", handle="quarantine"),
            ),
        ]
    )


@pytest.fixture
def put_file(registry):
    """在容器中写入文件: put_file(container_id, path, data=b"...")"""

    def _put(container_id: int, path: str, data: bytes = b"content") -> str:
        registry.gateway(container_id).write(path, data)
        return path

    return _put


# =============================================================================
# 记录库
# =============================================================================


@pytest.fixture
def record_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def add_record(record_store):
    """添加记录: add_record(id, container_id, name, parent_path="", refs=1, size=None)"""

    def _add(
        record_id: int,
        container_id: int,
        name: str,
        parent_path: str = "",
        refs: int = 1,
        size=None,
        date_updated=None,
    ) -> RecordEntry:
        parent_id = None
        if parent_path:
            parent_id = record_store.ensure_parent(container_id, parent_path)
        record = RecordEntry(
            id=record_id,
            container_id=container_id,
            name=name,
            parent_id=parent_id,
            parent_path=parent_path,
            size=size,
            date_updated=date_updated,
        )
        return record_store.add(record, references=refs)

    return _add


# =============================================================================
# 运行上下文
# =============================================================================


@pytest.fixture
def state_dir(tmp_path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def make_ctx(state_dir):
    """构造运行上下文: make_ctx(run_id="test-run", budget=None)"""

    def _make(run_id: str = TEST_RUN_ID, budget: ErrorBudget = None) -> RunContext:
        return RunContext(
            run_id,
            FileCheckpointStore(state_dir, run_id),
            budget or ErrorBudget(),
            audit=AuditLog(state_dir, run_id, flush_every=1),
        )

    return _make


@pytest.fixture
def ctx(make_ctx) -> RunContext:
    return make_ctx()


@pytest.fixture
def retry() -> RetryManager:
    """不等待的重试管理器"""
    return RetryManager(max_retries=2, delay_ms=0, sleep=lambda seconds: None)


@pytest.fixture
def file_ops(record_store, registry, ctx, retry) -> FileOperations:
    return FileOperations(record_store, registry, ctx, retry)
