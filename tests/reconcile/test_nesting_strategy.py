# -*- coding: utf-8 -*-
"""
test_nesting_strategy.py - 网关嵌套检测与复制策略测试

覆盖:
- 同桶内根路径相同 / 互为祖先时视为嵌套（对称）
- 兄弟目录、不同桶、不同后端不嵌套
- 嵌套网关之间 direct 策略无效，人工指定也被拒绝
"""

from unittest.mock import MagicMock

import pytest

from assetmend.reconcile.gateway import LocalGateway, StorageGateway
from assetmend.reconcile.nesting import (
    get_diagnostic_info,
    is_nested_filesystem,
    is_parent_path,
    is_same_bucket,
)
from assetmend.reconcile.strategy import (
    STRATEGY_DIRECT,
    STRATEGY_STREAM,
    STRATEGY_TEMP_FILE,
    MigrationStrategySelector,
)


@pytest.fixture
def base(tmp_path):
    return tmp_path / "bucket"


def _object_gateway(bucket="assets", root=""):
    gateway = MagicMock(spec=StorageGateway)
    gateway.handle = f"s3-{root or 'root'}"
    gateway.backend_kind.return_value = "object"
    gateway.bucket_id.return_value = bucket
    gateway.root_path.return_value = root
    return gateway


class TestIsParentPath:
    @pytest.mark.parametrize(
        "parent, child, expected",
        [
            ("", "images", True),
            ("", "", False),
            ("images", "images", False),
            ("images", "images/thumbs", True),
            ("/images/", "images/thumbs/", True),
            ("images", "images2", False),
            ("images/thumbs", "images", False),
        ],
    )
    def test_parent_path(self, parent, child, expected):
        assert is_parent_path(parent, child) is expected


class TestNesting:
    def test_root_and_child_nested_both_ways(self, base):
        root = LocalGateway(base, "")
        images = LocalGateway(base, "images")

        assert is_nested_filesystem(root, images)
        assert is_nested_filesystem(images, root)

    def test_equal_roots_are_nested(self, base):
        assert is_nested_filesystem(LocalGateway(base, "images"), LocalGateway(base, "images/"))

    def test_siblings_not_nested(self, base):
        images = LocalGateway(base, "images")
        documents = LocalGateway(base, "documents")

        assert is_same_bucket(images, documents)
        assert not is_nested_filesystem(images, documents)

    def test_different_buckets_not_nested(self, tmp_path):
        a = LocalGateway(tmp_path / "a", "")
        b = LocalGateway(tmp_path / "b", "")

        assert not is_same_bucket(a, b)
        assert not is_nested_filesystem(a, b)

    def test_different_backends_not_nested(self, base):
        local = LocalGateway(base, "")
        remote = _object_gateway(bucket=str(base.resolve()))

        assert not is_nested_filesystem(local, remote)

    def test_object_prefixes(self):
        assert is_nested_filesystem(_object_gateway(root="assets"), _object_gateway(root="assets/images"))
        assert not is_nested_filesystem(_object_gateway(root="assets"), _object_gateway(bucket="other", root="assets"))

    def test_diagnostic_info(self, base):
        info = get_diagnostic_info(LocalGateway(base, "", handle="root"), LocalGateway(base, "images", handle="img"))

        assert info["is_nested"] is True
        assert info["same_bucket"] is True
        assert info["source"]["handle"] == "root"
        assert info["target"]["path"] == "images"


class TestStrategySelector:
    def test_nested_uses_temp_file(self, base):
        selector = MigrationStrategySelector()

        assert selector.select_strategy(LocalGateway(base, ""), LocalGateway(base, "images")) == STRATEGY_TEMP_FILE

    def test_same_bucket_not_nested_uses_direct(self, base):
        selector = MigrationStrategySelector()

        assert selector.select_strategy(LocalGateway(base, "a"), LocalGateway(base, "b")) == STRATEGY_DIRECT

    def test_cross_backend_uses_temp_file(self, base):
        selector = MigrationStrategySelector()
        recommendation = selector.get_strategy_recommendation(LocalGateway(base, ""), _object_gateway())

        assert recommendation["strategy"] == STRATEGY_TEMP_FILE
        assert recommendation["same_provider"] is False
        assert "Different backends detected" in recommendation["reasoning"]

    def test_direct_invalid_when_nested(self, base):
        selector = MigrationStrategySelector()
        result = selector.validate_strategy(STRATEGY_DIRECT, LocalGateway(base, ""), LocalGateway(base, "images"))

        assert result["valid"] is False
        assert result["risk"] == "high"

    def test_override_rejected_when_nested(self, base):
        selector = MigrationStrategySelector()
        result = selector.evaluate_manual_override(
            STRATEGY_DIRECT, LocalGateway(base, "images"), LocalGateway(base, "")
        )

        assert result["allowed"] is False
        assert result["force_recommended"] is True
        assert result["recommended"] == STRATEGY_TEMP_FILE

    def test_override_matching_recommendation(self, base):
        selector = MigrationStrategySelector()
        result = selector.evaluate_manual_override(STRATEGY_DIRECT, LocalGateway(base, "a"), LocalGateway(base, "b"))

        assert result == {"allowed": True, "reason": "Manual strategy matches recommendation", "risk": "none"}

    def test_override_differs_from_recommendation(self, base):
        selector = MigrationStrategySelector()
        result = selector.evaluate_manual_override(
            STRATEGY_TEMP_FILE, LocalGateway(base, "a"), LocalGateway(base, "b")
        )

        assert result["allowed"] is True
        assert "direct" in result["warning"]

    def test_stream_is_listed_as_planned(self):
        strategies = MigrationStrategySelector().get_available_strategies()

        assert strategies[STRATEGY_STREAM]["status"] == "planned"
        assert set(strategies) == {STRATEGY_DIRECT, STRATEGY_TEMP_FILE, STRATEGY_STREAM}
