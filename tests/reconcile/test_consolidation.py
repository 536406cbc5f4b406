# -*- coding: utf-8 -*-
"""
test_consolidation.py - 记录整理测试
"""

import pytest

from assetmend.reconcile.consolidation import ConsolidationOrchestrator
from assetmend.reconcile.file_ops import FileOperations
from assetmend.reconcile.models import Location

from .conftest import IMAGES, UPLOADS

PHASE = "consolidate"
TARGET = Location(IMAGES, None, "")


@pytest.fixture
def orchestrator(file_ops, ctx):
    ctx.start_phase(PHASE)
    return ConsolidationOrchestrator(file_ops, ctx, batch_size=2)


class TestConsolidate:
    def test_moves_records_to_target(self, orchestrator, record_store, registry, add_record, put_file):
        records = [
            add_record(1, UPLOADS, "a.jpg"),
            add_record(2, IMAGES, "b.jpg", parent_path="nested"),
            add_record(3, UPLOADS, "c.jpg", parent_path="deep/dir"),
        ]
        put_file(UPLOADS, "a.jpg")
        put_file(IMAGES, "nested/b.jpg")
        put_file(UPLOADS, "deep/dir/c.jpg")

        stats = orchestrator.consolidate(records, TARGET)

        assert stats["moved"] == 3
        assert stats["failed"] == 0
        for record_id, name in ((1, "a.jpg"), (2, "b.jpg"), (3, "c.jpg")):
            record = record_store.get(record_id)
            assert (record.container_id, record.parent_path) == (IMAGES, "")
            assert registry.gateway(IMAGES).exists(name)

    def test_record_at_target_is_skipped(self, orchestrator, add_record, put_file, ctx):
        record = add_record(1, IMAGES, "ok.jpg")
        put_file(IMAGES, "ok.jpg")

        stats = orchestrator.consolidate([record], TARGET)

        assert stats["skipped"] == 1
        assert stats["moved"] == 0
        assert ctx.is_processed(1)

    def test_missing_source_counts_failed(self, orchestrator, record_store, add_record, ctx):
        record = add_record(1, UPLOADS, "gone.jpg")

        stats = orchestrator.consolidate([record], TARGET)

        assert stats["failed"] == 1
        assert ctx.budget.missing_total == 1
        assert record_store.get(1).container_id == UPLOADS

    def test_name_conflict(self, orchestrator, record_store, registry, add_record, put_file):
        record = add_record(1, UPLOADS, "logo.png")
        put_file(UPLOADS, "logo.png", b"uploaded")
        put_file(IMAGES, "logo.png", b"already-here")

        orchestrator.consolidate([record], TARGET)

        assert record_store.get(1).name == "logo_1.png"
        assert registry.gateway(IMAGES).read("logo_1.png") == b"uploaded"
        assert registry.gateway(IMAGES).read("logo.png") == b"already-here"

    def test_stop_between_batches(self, orchestrator, add_record, put_file, ctx):
        records = [add_record(i, UPLOADS, f"{i}.jpg") for i in range(1, 5)]
        for i in range(1, 5):
            put_file(UPLOADS, f"{i}.jpg")
        ctx.request_stop()

        stats = orchestrator.consolidate(records, TARGET)

        assert stats["stopped"] is True
        assert stats["moved"] == 0

    def test_checkpoint_saved(self, orchestrator, add_record, put_file, ctx):
        record = add_record(1, UPLOADS, "a.jpg")
        put_file(UPLOADS, "a.jpg")

        orchestrator.consolidate([record], TARGET)

        saved = ctx.checkpoints.load(PHASE)
        assert saved["stats"]["moved"] == 1
        assert ctx.last_checkpoint_id is not None


class TestIdempotence:
    def test_rerun_with_same_run_id_moves_nothing(
        self, record_store, registry, retry, make_ctx, add_record, put_file
    ):
        records = [add_record(1, UPLOADS, "a.jpg"), add_record(2, UPLOADS, "b.jpg")]
        put_file(UPLOADS, "a.jpg")
        put_file(UPLOADS, "b.jpg")

        first_ctx = make_ctx()
        first_ctx.start_phase(PHASE)
        first_ops = FileOperations(record_store, registry, first_ctx, retry)
        first = ConsolidationOrchestrator(first_ops, first_ctx).consolidate(records, TARGET)

        second_ctx = make_ctx()
        second_ctx.start_phase(PHASE)
        second_ops = FileOperations(record_store, registry, second_ctx, retry)
        second = ConsolidationOrchestrator(second_ops, second_ctx).consolidate(records, TARGET)

        assert first["moved"] == 2
        assert second["moved"] == 0
        assert second["skipped_processed"] == 2
        assert second_ops.stats["moved"] == 0
        moved = [c for c in second_ctx.audit.load_changes() if c["type"] == "moved_asset"]
        assert len(moved) == 2


class TestRetryAfterFailure:
    def test_failed_move_retried_on_rerun(
        self, record_store, registry, retry, make_ctx, add_record, put_file, monkeypatch
    ):
        record = add_record(1, UPLOADS, "a.jpg")
        put_file(UPLOADS, "a.jpg", b"img")
        target_gateway = registry.gateway(IMAGES)

        def full_disk(path, data, metadata=None):
            raise OSError("disk full")

        with monkeypatch.context() as m:
            m.setattr(target_gateway, "write", full_disk)
            first_ctx = make_ctx()
            first_ctx.start_phase(PHASE)
            first_ops = FileOperations(record_store, registry, first_ctx, retry)
            first = ConsolidationOrchestrator(first_ops, first_ctx).consolidate([record], TARGET)

        assert first["failed"] == 1
        assert not first_ctx.is_processed(1)
        assert record_store.get(1).container_id == UPLOADS

        second_ctx = make_ctx()
        second_ctx.start_phase(PHASE)
        second_ops = FileOperations(record_store, registry, second_ctx, retry)
        second = ConsolidationOrchestrator(second_ops, second_ctx).consolidate([record_store.get(1)], TARGET)

        assert second["skipped_processed"] == 0
        assert second["moved"] == 1
        assert record_store.get(1).container_id == IMAGES
        assert target_gateway.read("a.jpg") == b"img"
        assert second_ctx.is_processed(1)

    def test_processed_ids_written_once_per_batch(self, orchestrator, add_record, put_file, ctx, monkeypatch):
        records = [add_record(i, UPLOADS, f"{i}.jpg") for i in range(1, 5)]
        for i in range(1, 5):
            put_file(UPLOADS, f"{i}.jpg")
        calls = []
        original = ctx.checkpoints.update_processed_ids

        def counting(phase, ids):
            calls.append(list(ids))
            original(phase, calls[-1])

        monkeypatch.setattr(ctx.checkpoints, "update_processed_ids", counting)

        orchestrator.consolidate(records, TARGET)

        assert calls == [[1, 2], [3, 4]]
