# -*- coding: utf-8 -*-
"""
test_duplicate_store.py - 重复组文件存储测试

覆盖:
- 跨实例持久化（模拟进程重启）
- 状态只进不退、主记录只设置一次、asset_ids 合并
- 认领不落盘
- 损坏文件转换为 CheckpointError
"""

import json

import pytest

from assetmend.reconcile.duplicate_store import FileDuplicateGroupStore, InMemoryDuplicateGroupStore
from assetmend.reconcile.errors import CheckpointError, InvalidRunIdError
from assetmend.reconcile.models import DuplicateGroupRecord, GroupStatus

RUN_ID = "dup-run"
FILE_KEY = "images::shared/photo.jpg"


def _group(asset_ids=(1, 2), run_id=RUN_ID, file_key=FILE_KEY):
    return DuplicateGroupRecord(
        run_id=run_id,
        file_key=file_key,
        original_path="shared/photo.jpg",
        container_name="Images",
        container_handle="images",
        asset_ids=list(asset_ids),
    )


@pytest.fixture
def store(state_dir):
    return FileDuplicateGroupStore(state_dir)


class TestPersistence:
    def test_survives_restart(self, store, state_dir):
        group = store.upsert(_group())
        group.temp_path = "temp/dup-run/abc/photo.jpg"
        group.physical_file_hash = "abc"
        group.file_size = 11
        group.advance(GroupStatus.STAGED)
        store.save(group)

        reopened = FileDuplicateGroupStore(state_dir)
        loaded = reopened.get(RUN_ID, FILE_KEY)

        assert loaded.status == GroupStatus.STAGED
        assert loaded.temp_path == "temp/dup-run/abc/photo.jpg"
        assert loaded.file_size == 11
        assert loaded.asset_ids == [1, 2]
        assert [g.file_key for g in reopened.list(RUN_ID)] == [FILE_KEY]

    def test_file_layout(self, store, state_dir):
        store.upsert(_group())

        path = state_dir / "duplicate_groups" / f"{RUN_ID}.json"
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["run_id"] == RUN_ID
        assert data["groups"][0]["file_key"] == FILE_KEY
        assert not list(path.parent.glob(".*.tmp-*"))

    def test_runs_kept_apart(self, store, state_dir):
        store.upsert(_group())
        store.upsert(_group(run_id="other-run"))

        reopened = FileDuplicateGroupStore(state_dir)

        assert len(reopened.list(RUN_ID)) == 1
        assert len(reopened.list("other-run")) == 1

    def test_list_by_status(self, store):
        store.upsert(_group())
        staged = store.upsert(_group(file_key="images::b.jpg"))
        staged.advance(GroupStatus.STAGED)
        store.save(staged)

        assert [g.file_key for g in store.list(RUN_ID, GroupStatus.STAGED)] == ["images::b.jpg"]


class TestSemantics:
    def test_upsert_merges_ids_and_keeps_status(self, store, state_dir):
        group = store.upsert(_group())
        group.advance(GroupStatus.STAGED)
        store.save(group)

        merged = FileDuplicateGroupStore(state_dir).upsert(_group(asset_ids=(2, 3)))

        assert merged.asset_ids == [1, 2, 3]
        assert merged.status == GroupStatus.STAGED

    def test_status_never_regresses(self, store, state_dir):
        group = store.upsert(_group())
        group.advance(GroupStatus.ANALYZED)
        group.primary_asset_id = 2
        store.save(group)

        stale = _group()
        stale.primary_asset_id = 1
        store.save(stale)

        loaded = FileDuplicateGroupStore(state_dir).get(RUN_ID, FILE_KEY)
        assert loaded.status == GroupStatus.ANALYZED
        assert loaded.primary_asset_id == 2

    def test_returns_copies(self, store):
        store.upsert(_group())

        store.get(RUN_ID, FILE_KEY).status = GroupStatus.COMPLETED

        assert store.get(RUN_ID, FILE_KEY).status == GroupStatus.PENDING

    def test_claims_not_persisted(self, store, state_dir):
        store.upsert(_group())
        assert store.claim(RUN_ID, FILE_KEY, "crashed-worker")
        assert not store.claim(RUN_ID, FILE_KEY, "other")
        store.save(store.get(RUN_ID, FILE_KEY))

        # 崩溃进程的认领不阻塞恢复运行
        reopened = FileDuplicateGroupStore(state_dir)
        assert reopened.get(RUN_ID, FILE_KEY).claimed_by is None
        assert reopened.claim(RUN_ID, FILE_KEY, "resumed-worker")

    def test_claim_unknown_group(self, store):
        assert not store.claim(RUN_ID, "images::nothing.jpg", "w")

    def test_matches_in_memory_store(self, store):
        memory = InMemoryDuplicateGroupStore()
        for target in (store, memory):
            group = target.upsert(_group())
            group.advance(GroupStatus.STAGED)
            target.save(group)
            target.upsert(_group(asset_ids=(3,)))

        assert store.get(RUN_ID, FILE_KEY).asset_ids == memory.get(RUN_ID, FILE_KEY).asset_ids
        assert store.get(RUN_ID, FILE_KEY).status == memory.get(RUN_ID, FILE_KEY).status


class TestErrors:
    def test_corrupt_file(self, state_dir):
        path = state_dir / "duplicate_groups" / f"{RUN_ID}.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(CheckpointError):
            FileDuplicateGroupStore(state_dir).list(RUN_ID)

    def test_invalid_run_id(self, store):
        with pytest.raises(InvalidRunIdError):
            store.list("../escape")
