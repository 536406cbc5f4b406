# -*- coding: utf-8 -*-
"""
test_gateway.py - 存储网关测试

覆盖:
- 路径规范化与穿越防护
- LocalGateway 读写、列举、移动与错误类型
- ContainerRegistry 查找
- build_registry / get_gateway 工厂
"""

import pytest

from assetmend.reconcile.config import ContainerConfig
from assetmend.reconcile.errors import (
    GatewayError,
    GatewayUnreachableError,
    ObjectNotFoundError,
    PathTraversalError,
)
from assetmend.reconcile.gateway import (
    BACKEND_LOCAL,
    Container,
    ContainerRegistry,
    LocalGateway,
    build_registry,
    get_gateway,
    normalize_path,
)


class TestNormalizePath:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("a//b/./c", "a/b/c"),
            ("/a/b/", "a/b"),
            ("a\\b", "a/b"),
            ("", ""),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_path(raw) == expected

    @pytest.mark.parametrize("raw", ["../etc/passwd", "a/../../b", "a\\..\\b"])
    def test_traversal_rejected(self, raw):
        with pytest.raises(PathTraversalError):
            normalize_path(raw)


class TestLocalGateway:
    @pytest.fixture
    def gateway(self, tmp_path):
        (tmp_path / "images").mkdir()
        return LocalGateway(tmp_path, "images", handle="images")

    def test_write_read_exists_delete(self, gateway, tmp_path):
        gateway.write("a/b.jpg", b"data")

        assert (tmp_path / "images" / "a" / "b.jpg").read_bytes() == b"data"
        assert gateway.exists("a/b.jpg")
        assert gateway.read("a/b.jpg") == b"data"

        gateway.delete("a/b.jpg")
        assert not gateway.exists("a/b.jpg")
        # 删除不存在的文件静默
        gateway.delete("a/b.jpg")

    def test_exists_rejects_empty_and_directories(self, gateway):
        gateway.write("dir/file.txt", b"x")

        assert not gateway.exists("")
        assert not gateway.exists("dir")
        assert not gateway.exists("../outside.txt")

    def test_read_missing(self, gateway):
        with pytest.raises(ObjectNotFoundError):
            gateway.read("missing.jpg")

    def test_write_rejects_traversal(self, gateway):
        with pytest.raises(PathTraversalError):
            gateway.write("../escape.txt", b"x")

    def test_list_recursive(self, gateway):
        gateway.write("a.jpg", b"1")
        gateway.write("sub/b.txt", b"22")

        items = {item.path: item for item in gateway.list()}
        assert set(items) == {"a.jpg", "sub", "sub/b.txt"}
        assert items["sub"].is_dir
        assert items["sub/b.txt"].size == 2
        assert items["a.jpg"].mtime is not None

    def test_list_non_recursive(self, gateway):
        gateway.write("a.jpg", b"1")
        gateway.write("sub/b.txt", b"2")

        assert {item.path for item in gateway.list(recursive=False)} == {"a.jpg", "sub"}

    def test_list_skips_temp_files(self, gateway, tmp_path):
        gateway.write("a.jpg", b"1")
        (tmp_path / "images" / ".a.jpg.tmp-123-abcdef").write_bytes(b"partial")

        assert [item.path for item in gateway.list()] == ["a.jpg"]

    def test_list_missing_root(self, tmp_path):
        gateway = LocalGateway(tmp_path, "missing", handle="missing")

        with pytest.raises(GatewayUnreachableError):
            list(gateway.list())

    def test_list_missing_prefix_is_empty(self, gateway):
        assert list(gateway.list("nothing-here")) == []

    def test_move(self, gateway):
        gateway.write("a.jpg", b"1")
        gateway.move("a.jpg", "moved/a.jpg")

        assert not gateway.exists("a.jpg")
        assert gateway.read("moved/a.jpg") == b"1"

    def test_move_missing_source(self, gateway):
        with pytest.raises(ObjectNotFoundError) as exc_info:
            gateway.move("missing.jpg", "b.jpg")
        assert "file stream" in exc_info.value.message

    def test_capabilities(self, gateway, tmp_path):
        assert gateway.backend_kind() == BACKEND_LOCAL
        assert gateway.bucket_id() == str(tmp_path.resolve())
        assert gateway.root_path() == "images"
        assert gateway.describe()["handle"] == "images"


class TestContainerRegistry:
    @pytest.fixture
    def registry(self, tmp_path):
        return ContainerRegistry(
            [
                Container(1, "Images", "images", LocalGateway(tmp_path, "images")),
                Container(2, "Uploads", "uploads", LocalGateway(tmp_path, "uploads")),
            ]
        )

    def test_lookup(self, registry):
        assert registry.get(1).handle == "images"
        assert registry.by_handle("uploads").id == 2
        assert registry.find(99) is None
        assert registry.ids() == [1, 2]
        assert len(registry) == 2

    def test_unknown_container(self, registry):
        with pytest.raises(GatewayError):
            registry.get(99)
        with pytest.raises(GatewayError):
            registry.by_handle("nope")

    def test_duplicate_id_ignored(self, registry, tmp_path):
        registry.add(Container(1, "Other", "other", LocalGateway(tmp_path, "other")))

        assert registry.get(1).handle == "images"
        assert len(registry) == 2


class TestFactories:
    def test_build_registry_local(self, tmp_path):
        registry = build_registry(
            [
                ContainerConfig(id=1, name="Images", handle="images", root=str(tmp_path), prefix="images"),
                ContainerConfig(id=2, name="Uploads", handle="uploads", root=str(tmp_path / "uploads")),
            ]
        )

        images = registry.gateway(1)
        assert isinstance(images, LocalGateway)
        assert images.root_path() == "images"
        assert images.bucket_id() == str(tmp_path.resolve())
        assert registry.gateway(2).root_path() == ""

    def test_invalid_backend(self):
        with pytest.raises(ValueError):
            get_gateway("ftp")
