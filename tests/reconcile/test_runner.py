# -*- coding: utf-8 -*-
"""
test_runner.py - 运行驱动端到端测试

使用本地文件网关 + 内存记录库，完整执行四个阶段:

    1 ok.jpg         images 根目录，被引用          -> 不动
    2 wrong.jpg      uploads，被引用                -> consolidate 移到 images
    3 broken.png     images 中缺失，uploads 有同名   -> link_repair 复制
    4 unused.jpg     images，零引用                 -> quarantine
    5 zz-lost.gif    任何地方都没有                 -> 缺失报告
    stray.txt        images 中没有记录的文件         -> quarantine/orphaned
"""

import csv

import pytest

from assetmend.reconcile.checkpoint import FileCheckpointStore
from assetmend.reconcile.config import Config, MigrationSettings
from assetmend.reconcile.duplicate_store import FileDuplicateGroupStore
from assetmend.reconcile.errors import ConfigError, LockNotAcquiredError, RunHaltedError, ValidationError
from assetmend.reconcile.gateway import Container, ContainerRegistry, LocalGateway
from assetmend.reconcile.lock import FileMigrationLock
from assetmend.reconcile.models import GroupStatus, Phase
from assetmend.reconcile.runner import LOCK_FILENAME, build_runner

from .conftest import IMAGES, QUARANTINE, UPLOADS

RUN_ID = "e2e-run"


@pytest.fixture
def config(state_dir):
    return Config(
        migration=MigrationSettings(retry_delay_ms=0, lock_acquire_timeout_seconds=0),
        target_container="images",
        quarantine_container="quarantine",
        state_dir=str(state_dir),
    )


@pytest.fixture
def populated(add_record, put_file):
    add_record(1, IMAGES, "ok.jpg")
    put_file(IMAGES, "ok.jpg")
    add_record(2, UPLOADS, "wrong.jpg")
    put_file(UPLOADS, "wrong.jpg", b"wrong")
    add_record(3, IMAGES, "broken.png")
    put_file(UPLOADS, "assets/broken.png", b"broken")
    add_record(4, IMAGES, "unused.jpg", refs=0)
    put_file(IMAGES, "unused.jpg", b"unused")
    add_record(5, IMAGES, "zz-lost.gif")
    put_file(IMAGES, "stray.txt", b"stray")


@pytest.fixture
def make_runner(config, record_store, registry):
    def _make(run_id=RUN_ID, resume=False, registry_override=None):
        return build_runner(
            config,
            run_id=run_id,
            resume=resume,
            record_store=record_store,
            registry=registry_override or registry,
        )

    return _make


class TestEndToEnd:
    def test_full_run(self, make_runner, populated, record_store, registry, state_dir):
        summary = make_runner().run()

        assert summary["run_id"] == RUN_ID
        assert [summary["phases"][p]["status"] for p in Phase.ORDER] == ["completed"] * 4

        link = summary["phases"][Phase.LINK_REPAIR]["result"]
        assert link["fixed"] == 1
        assert link["not_found"] == 1
        assert registry.gateway(IMAGES).read("broken.png") == b"broken"

        consolidate = summary["phases"][Phase.CONSOLIDATE]["result"]
        assert consolidate["moved"] == 1
        assert record_store.get(2).container_id == IMAGES
        assert registry.gateway(IMAGES).read("wrong.jpg") == b"wrong"

        quarantine = summary["phases"][Phase.QUARANTINE]["result"]
        assert quarantine["orphaned_files"]["quarantined"] == 1
        assert quarantine["unused_records"]["quarantined"] == 1
        assert registry.gateway(QUARANTINE).read("orphaned/stray.txt") == b"stray"
        assert record_store.get(4).container_id == QUARANTINE

        assert summary["analysis"]["broken_links"] == 2
        final = summary["final_analysis"]
        assert final["broken_links"] == 1
        assert final["orphaned_files"] == 0
        assert final["used_wrong_location"] == 0
        assert final["unused_records"] == 0

        assert summary["errors"]["expected"] == 1
        assert summary["last_checkpoint_id"]
        assert not (state_dir / LOCK_FILENAME).exists()

    def test_missing_report_written(self, make_runner, populated, state_dir):
        summary = make_runner().run(phases=[Phase.LINK_REPAIR])

        report = state_dir / "reports" / f"{RUN_ID}_missing_files.csv"
        assert summary["phases"][Phase.LINK_REPAIR]["result"]["missing_report"] == str(report)
        with open(report, encoding="utf-8", newline="") as f:
            rows = list(csv.DictReader(f))
        assert [r["filename"] for r in rows] == ["zz-lost.gif"]

    def test_audit_log_written(self, make_runner, populated, state_dir):
        make_runner().run()

        lines = (state_dir / "changes" / f"{RUN_ID}.jsonl").read_text(encoding="utf-8").splitlines()
        assert any('"moved_asset"' in line for line in lines)
        assert any('"quarantined_orphaned_file"' in line for line in lines)

    def test_selected_phases_only(self, make_runner, populated, record_store):
        summary = make_runner().run(phases=[Phase.CONSOLIDATE])

        assert list(summary["phases"]) == [Phase.CONSOLIDATE]
        assert record_store.get(4).container_id == IMAGES

    def test_unknown_phase(self, make_runner, populated):
        with pytest.raises(ValidationError):
            make_runner().run(phases=["teleport"])


class TestExpectedMissing:
    @pytest.fixture
    def lost_library(self, add_record):
        for i in range(1, 61):
            add_record(i, IMAGES, f"lost-{i:03d}.png")

    def test_known_broken_links_do_not_halt(self, make_runner, lost_library, state_dir):
        """默认配置下，分析阶段已知的 60 条断链计为预期缺失"""
        summary = make_runner().run(phases=[Phase.LINK_REPAIR])

        assert summary["expected_missing"] == 60
        assert summary["phases"][Phase.LINK_REPAIR]["status"] == "completed"
        assert summary["phases"][Phase.LINK_REPAIR]["result"]["not_found"] == 60
        saved = FileCheckpointStore(state_dir, RUN_ID).load(Phase.LINK_REPAIR)
        assert saved["expected_missing"] == 60

    def test_resume_keeps_recorded_count(self, make_runner, lost_library, put_file):
        make_runner().run(phases=[Phase.LINK_REPAIR])
        for i in range(1, 41):
            put_file(IMAGES, f"lost-{i:03d}.png")

        summary = make_runner(resume=True).run(phases=[Phase.LINK_REPAIR])

        assert summary["analysis"]["broken_links"] == 20
        assert summary["expected_missing"] == 60

    def test_disabled_falls_back_to_configured_count(self, config, record_store, registry, lost_library):
        config.migration.auto_expected_missing = False
        runner = build_runner(config, run_id=RUN_ID, record_store=record_store, registry=registry)

        with pytest.raises(RunHaltedError):
            runner.run(phases=[Phase.LINK_REPAIR])
        assert runner.budget.expected_missing_count == 0


class TestResume:
    def test_completed_phases_skipped(self, make_runner, populated):
        make_runner().run(phases=[Phase.LINK_REPAIR])

        summary = make_runner(resume=True).run()

        assert summary["resume"] is True
        assert summary["phases"][Phase.LINK_REPAIR]["status"] == "skipped_completed"
        assert summary["phases"][Phase.LINK_REPAIR]["result"]["fixed"] == 1
        assert summary["phases"][Phase.CONSOLIDATE]["status"] == "completed"

    def test_stop_requested_before_run(self, make_runner, populated):
        runner = make_runner()
        runner.request_stop()

        summary = runner.run()

        assert {v["status"] for v in summary["phases"].values()} == {"not_started"}


class TestLocking:
    def test_lock_held_by_other_run(self, make_runner, populated, state_dir):
        FileMigrationLock(state_dir / LOCK_FILENAME, "other-run", owner="elsewhere:1").acquire()

        with pytest.raises(LockNotAcquiredError):
            make_runner().run()


class TestNestedQuarantine:
    @pytest.fixture
    def nested_registry(self, store_dir):
        (store_dir / "images" / "_quarantine").mkdir()
        return ContainerRegistry(
            [
                Container(IMAGES, "Images", "images", LocalGateway(store_dir, "images", handle="images")),
                Container(UPLOADS, "Uploads", "uploads", LocalGateway(store_dir, "uploads", handle="uploads")),
                Container(
                    QUARANTINE,
                    "Quarantine",
                    "quarantine",
                    LocalGateway(store_dir, "images/_quarantine", handle="quarantine"),
                ),
            ]
        )

    def test_direct_override_rejected(self, make_runner, nested_registry, state_dir):
        runner = make_runner(registry_override=nested_registry)

        with pytest.raises(ValidationError):
            runner.run(strategy_override="direct")
        assert not (state_dir / LOCK_FILENAME).exists()

    def test_recommendation_uses_temp_file(self, make_runner, nested_registry):
        report = make_runner(registry_override=nested_registry).strategy_report()

        pair = next(p for p in report["pairs"] if p["source"] == "images" and p["target"] == "quarantine")
        assert pair["recommendation"]["strategy"] == "temp_file"
        assert pair["recommendation"]["is_nested"] is True

    def test_analyze_excludes_quarantine_paths(self, make_runner, nested_registry):
        nested_registry.gateway(IMAGES).write("stray.txt", b"x")
        nested_registry.gateway(QUARANTINE).write("orphaned/old.txt", b"y")

        result = make_runner(registry_override=nested_registry).analyze()

        assert result["files"] == 1
        assert result["analysis"]["orphaned_files"] == 1


class TestBuildRunner:
    def test_requires_record_store_without_postgres(self, config, registry):
        with pytest.raises(ConfigError):
            build_runner(config, run_id=RUN_ID, registry=registry)

    def test_resume_requires_run_id(self, config, record_store, registry):
        with pytest.raises(ValidationError):
            build_runner(config, resume=True, record_store=record_store, registry=registry)

    def test_requires_containers(self, config, record_store):
        with pytest.raises(ConfigError):
            build_runner(config, run_id=RUN_ID, record_store=record_store, registry=ContainerRegistry())

    def test_generates_run_id(self, config, record_store, registry):
        runner = build_runner(config, record_store=record_store, registry=registry)

        assert runner.run_id
        assert runner.lock.path.name == LOCK_FILENAME

    def test_file_backed_duplicate_groups(self, config, record_store, registry, add_record, put_file, state_dir):
        put_file(IMAGES, "shared.jpg", b"x")
        add_record(1, IMAGES, "shared.jpg", refs=1)
        add_record(2, IMAGES, "shared.jpg", refs=2)
        runner = build_runner(config, run_id=RUN_ID, record_store=record_store, registry=registry)

        assert isinstance(runner.group_store, FileDuplicateGroupStore)
        runner.run(phases=[Phase.DUPLICATES])

        # 新实例（模拟进程重启）能读到已完成的组
        groups = FileDuplicateGroupStore(state_dir).list(RUN_ID)
        assert [g.file_key for g in groups] == ["images::shared.jpg"]
        assert groups[0].status == GroupStatus.COMPLETED
