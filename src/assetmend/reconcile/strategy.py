"""
assetmend.reconcile.strategy - 迁移策略选择

在两个网关之间复制文件前选择策略:
    temp_file  下载到本地临时数据再上传（任何情况下都安全）
    direct     同桶内原生复制（仅在未嵌套时允许）
    stream     流式复制（保留项，尚未实现）

嵌套的网关之间 direct 永远无效，人工指定也不能绕过。
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from .gateway import StorageGateway
from .nesting import is_nested_filesystem, is_same_bucket

logger = logging.getLogger(__name__)

STRATEGY_DIRECT = "direct"
STRATEGY_TEMP_FILE = "temp_file"
STRATEGY_STREAM = "stream"

PERFORMANCE_ESTIMATES: Dict[str, Dict[str, Any]] = {
    STRATEGY_DIRECT: {
        "speed": "fastest",
        "network_hops": 0,
        "disk_usage": "none",
        "description": "Native copy within the same bucket",
    },
    STRATEGY_TEMP_FILE: {
        "speed": "moderate",
        "network_hops": 2,
        "disk_usage": "temporary",
        "description": "Download to local temp, then upload to target",
    },
    STRATEGY_STREAM: {
        "speed": "moderate",
        "network_hops": 2,
        "disk_usage": "minimal",
        "description": "Stream from source to target (planned)",
    },
}

AVAILABLE_STRATEGIES: Dict[str, Dict[str, Any]] = {
    STRATEGY_TEMP_FILE: {
        "name": "Temporary Local Files",
        "description": "Download to local temp, then upload to target",
        "use_case": "Nested gateways, cross-backend migrations",
        "safety": "highest",
        "speed": "moderate",
    },
    STRATEGY_DIRECT: {
        "name": "Direct Copy",
        "description": "Copy natively inside the storage backend",
        "use_case": "Same bucket, non-nested paths",
        "safety": "high",
        "speed": "fastest",
    },
    STRATEGY_STREAM: {
        "name": "Stream Copy",
        "description": "Stream from source to target (planned)",
        "use_case": "Large files, limited disk space",
        "safety": "high",
        "speed": "moderate",
        "status": "planned",
    },
}


class MigrationStrategySelector:
    """迁移策略选择器"""

    def select_strategy(self, source: StorageGateway, target: StorageGateway) -> str:
        if is_nested_filesystem(source, target):
            return STRATEGY_TEMP_FILE
        if is_same_bucket(source, target):
            return STRATEGY_DIRECT
        return STRATEGY_TEMP_FILE

    def get_strategy_recommendation(self, source: StorageGateway, target: StorageGateway) -> Dict[str, Any]:
        strategy = self.select_strategy(source, target)
        nested = is_nested_filesystem(source, target)
        same_provider = source.backend_kind() == target.backend_kind()
        same_bucket = is_same_bucket(source, target)

        reasoning = []
        if nested:
            reasoning.append("Gateways are nested (one root contains the other)")
            reasoning.append("Direct copy could read and write the same objects")
            reasoning.append("Using local temp data as intermediary")
        if same_bucket and not nested:
            reasoning.append("Same backend and bucket")
            reasoning.append("No nesting detected")
            reasoning.append("Direct copy is safe and fast")
        if not same_provider:
            reasoning.append("Different backends detected")
            reasoning.append("Cross-backend migration requires download/upload")

        return {
            "strategy": strategy,
            "is_nested": nested,
            "same_provider": same_provider,
            "same_bucket": same_bucket,
            "source_type": source.backend_kind(),
            "target_type": target.backend_kind(),
            "reasoning": reasoning,
            "performance": PERFORMANCE_ESTIMATES.get(strategy, PERFORMANCE_ESTIMATES[STRATEGY_TEMP_FILE]),
        }

    def validate_strategy(self, strategy: str, source: StorageGateway, target: StorageGateway) -> Dict[str, Any]:
        nested = is_nested_filesystem(source, target)
        if strategy == STRATEGY_DIRECT and nested:
            return {
                "valid": False,
                "reason": "Direct copy not allowed for nested gateways",
                "risk": "high",
                "recommendation": "Use temp_file strategy instead",
            }
        if strategy == STRATEGY_TEMP_FILE:
            return {"valid": True, "reason": "Temp file approach is universally safe", "risk": "none"}
        if strategy == STRATEGY_DIRECT:
            return {"valid": True, "reason": "Direct copy safe for non-nested gateways", "risk": "none"}
        return {"valid": True, "reason": "Strategy is acceptable", "risk": "low"}

    def get_available_strategies(self) -> Dict[str, Dict[str, Any]]:
        return {k: dict(v) for k, v in AVAILABLE_STRATEGIES.items()}

    def evaluate_manual_override(
        self, strategy: str, source: StorageGateway, target: StorageGateway
    ) -> Dict[str, Any]:
        """评估人工指定的策略"""
        recommended = self.select_strategy(source, target)
        validation = self.validate_strategy(strategy, source, target)
        if not validation["valid"]:
            logger.warning(
                "拒绝人工策略 %s (%s -> %s): %s", strategy, source.handle, target.handle, validation["reason"]
            )
            return {
                "allowed": False,
                "reason": validation["reason"],
                "risk": validation["risk"],
                "force_recommended": True,
                "recommended": recommended,
            }
        if strategy == recommended:
            return {"allowed": True, "reason": "Manual strategy matches recommendation", "risk": "none"}
        return {
            "allowed": True,
            "reason": f"Manual override: {strategy} instead of {recommended}",
            "risk": "low",
            "warning": f"Recommended strategy is {recommended} for optimal performance",
        }
