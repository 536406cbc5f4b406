# -*- coding: utf-8 -*-
"""
test_inventory.py - 清单构建与关联分析测试

覆盖:
- 记录清单按批次读取
- 文件清单扫描，任一容器失败整体失败
- analyze_links 各分类
- URL 反查
"""

from unittest.mock import MagicMock

import pytest

from assetmend.reconcile.errors import GatewayUnreachableError
from assetmend.reconcile.gateway import Container, LocalGateway
from assetmend.reconcile.inventory import (
    InventoryBuilder,
    build_record_lookup,
    find_record_by_url,
    scan_gateway,
)
from assetmend.reconcile.models import RecordEntry

from .conftest import IMAGES, QUARANTINE, UPLOADS


class TestRecordInventory:
    def test_reads_in_batches(self, record_store, registry, add_record):
        for i in range(1, 6):
            add_record(i, IMAGES, f"{i}.jpg")
        add_record(6, UPLOADS, "6.jpg")
        record_store.query = MagicMock(wraps=record_store.query)
        builder = InventoryBuilder(record_store, registry, batch_size=2)

        inventory = builder.build_record_inventory([IMAGES])

        assert sorted(inventory) == [1, 2, 3, 4, 5]
        for call in record_store.query.call_args_list:
            assert call.kwargs["limit"] == 2

    def test_progress_callback(self, record_store, registry, add_record):
        for i in range(1, 4):
            add_record(i, IMAGES, f"{i}.jpg")
        seen = []
        builder = InventoryBuilder(
            record_store,
            registry,
            batch_size=1,
            progress_callback=lambda processed, total, eta: seen.append((processed, total)),
            progress_interval=1,
        )

        builder.build_record_inventory([IMAGES])

        assert seen[-1] == (3, 3)


class TestFileInventory:
    def test_scans_all_containers(self, record_store, registry, put_file):
        put_file(IMAGES, "a.jpg")
        put_file(IMAGES, "sub/b.png")
        put_file(UPLOADS, "c.pdf")
        builder = InventoryBuilder(record_store, registry)

        files = builder.build_file_inventory(registry.all())

        assert {(f.container_id, f.path) for f in files} == {
            (IMAGES, "a.jpg"),
            (IMAGES, "sub/b.png"),
            (UPLOADS, "c.pdf"),
        }
        entry = next(f for f in files if f.path == "sub/b.png")
        assert entry.name == "b.png"
        assert entry.container_name == "Images"
        assert entry.gateway is registry.gateway(IMAGES)

    def test_duplicate_containers_scanned_once(self, record_store, registry, put_file):
        put_file(IMAGES, "a.jpg")
        builder = InventoryBuilder(record_store, registry)
        images = registry.get(IMAGES)

        files = builder.build_file_inventory([images, images])

        assert len(files) == 1

    def test_unreachable_container_fails_whole_inventory(self, record_store, registry, store_dir):
        broken = Container(9, "Broken", "broken", LocalGateway(store_dir, "does-not-exist"))
        builder = InventoryBuilder(record_store, registry)

        with pytest.raises(GatewayUnreachableError) as exc_info:
            builder.build_file_inventory(registry.all() + [broken])
        assert "cannot scan container 'Broken'" in exc_info.value.message
        assert exc_info.value.details["container_id"] == 9

    def test_scan_gateway_categories(self, registry, put_file):
        put_file(IMAGES, "a.JPG")
        put_file(IMAGES, "docs/readme.txt")

        scan = scan_gateway(registry.gateway(IMAGES))

        assert [e["path"] for e in scan.images] == ["a.JPG"]
        assert [e["path"] for e in scan.other] == ["docs/readme.txt"]
        assert scan.directories == ["docs"]
        assert scan.file_count == 2


class TestAnalyzeLinks:
    @pytest.fixture
    def analysis(self, record_store, registry, add_record, put_file):
        # 目标容器根目录，被引用
        add_record(1, IMAGES, "good.jpg", refs=2)
        put_file(IMAGES, "good.jpg")
        # 目标容器子目录，被引用 -> 位置错误
        add_record(2, IMAGES, "nested.jpg", parent_path="sub", refs=1)
        put_file(IMAGES, "sub/nested.jpg")
        # 其他容器，被引用 -> 位置错误
        add_record(3, UPLOADS, "elsewhere.jpg", refs=1)
        put_file(UPLOADS, "elsewhere.jpg")
        # 目标容器，未被引用
        add_record(4, IMAGES, "unused.jpg", refs=0)
        put_file(IMAGES, "unused.jpg")
        # 其他容器，未被引用 -> 不隔离
        add_record(5, UPLOADS, "unused-upload.jpg", refs=0)
        put_file(UPLOADS, "unused-upload.jpg")
        # 断链
        add_record(6, IMAGES, "broken.jpg", refs=1)
        # 同名、同路径
        add_record(7, IMAGES, "good.jpg", refs=0)
        # 孤立文件
        put_file(IMAGES, "stray.txt")
        put_file(UPLOADS, "stray-upload.txt")

        builder = InventoryBuilder(record_store, registry)
        records = builder.build_record_inventory([IMAGES, UPLOADS])
        files = builder.build_file_inventory([registry.get(IMAGES), registry.get(UPLOADS)])
        return builder.analyze_links(records, files, IMAGES, "")

    def test_categories(self, analysis):
        ids = lambda items: sorted(r.id for r in items)

        assert ids(analysis.records_with_files) == [1, 2, 3, 4, 5, 7]
        assert ids(analysis.broken_links) == [6]
        assert ids(analysis.used_correct_location) == [1]
        assert ids(analysis.used_wrong_location) == [2, 3]
        assert ids(analysis.unused_records) == [4, 7]

    def test_orphans_only_in_target_container(self, analysis):
        assert [f.path for f in analysis.orphaned_files] == ["stray.txt"]

    def test_duplicates(self, analysis):
        assert sorted(r.id for r in analysis.duplicate_names["good.jpg"]) == [1, 7]
        assert list(analysis.duplicate_paths) == [f"{IMAGES}::good.jpg"]

    def test_to_dict(self, analysis):
        summary = analysis.to_dict()

        assert summary["broken_links"] == 1
        assert summary["orphaned_files"] == 1
        assert summary["duplicate_paths"] == 1

    def test_target_parent_path(self, record_store, registry, add_record, put_file):
        add_record(1, IMAGES, "a.jpg", parent_path="library", refs=1)
        put_file(IMAGES, "library/a.jpg")
        builder = InventoryBuilder(record_store, registry)
        records = builder.build_record_inventory([IMAGES])
        files = builder.build_file_inventory([registry.get(IMAGES)])

        analysis = builder.analyze_links(records, files, IMAGES, "/library/")

        assert [r.id for r in analysis.used_correct_location] == [1]


class TestFindRecordByUrl:
    @pytest.fixture
    def lookup(self):
        return build_record_lookup(
            [
                RecordEntry(id=1, container_id=IMAGES, name="photo.jpg", parent_path="gallery"),
                RecordEntry(id=2, container_id=QUARANTINE, name="logo.png"),
            ]
        )

    @pytest.mark.parametrize(
        "url, expected",
        [
            ("https://cdn.example.com/gallery/photo.jpg?v=3", 1),
            ("/logo.png#top", 2),
            ("uploads/gallery/photo.jpg", 1),
            ("images/other/logo.png", 2),
        ],
    )
    def test_lookup(self, lookup, url, expected):
        assert find_record_by_url(url, lookup).id == expected

    def test_unknown(self, lookup):
        assert find_record_by_url("https://cdn.example.com/missing.gif", lookup) is None
