"""
assetmend.reconcile.matcher - 链接修复匹配器

为期望物理文件缺失的记录寻找最佳候选文件。策略严格按顺序尝试，
第一个非空候选集即胜出（不跨层合并）:

    1. exact_same_container        同容器精确文件名         1.0
    2. exact_any_container         任意容器精确文件名       0.95
    3. case_insensitive            大小写不敏感             0.85
    4. normalized                  规范化文件名             0.75
    5. basename_extension_family   基础名 + 扩展名族         0.70
    6. size                        同字节大小且名称相似度 > 0.5  0.60
    7. fuzzy                       有界编辑距离             相似度

仅 fuzzy 层有最低置信度 (0.70)：低于该值时返回未找到，并携带被拒绝的候选及其得分。
其余层的置信度由构造方式决定上界，不设下限。
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from .models import FileEntry, MatchResult, MatchStrategy, RecordEntry
from .search_index import SearchIndexes, basename_key, extension_family, split_extension
from .similarity import calculate_similarity, levenshtein, normalize_filename

logger = logging.getLogger(__name__)

DEFAULT_FUZZY_MIN_CONFIDENCE = 0.70
DEFAULT_FUZZY_MAX_DISTANCE = 5
FUZZY_TOP_N = 5


def is_in_originals_folder(path: str) -> bool:
    """路径是否位于 originals 目录"""
    lowered = (path or "").strip().lower()
    return "/originals/" in lowered or lowered.startswith("originals/")


class LinkRepairMatcher:
    """
    分层匹配器

    Args:
        target_container_id: 整理目标容器（用于候选排序）
        fuzzy_min_confidence: fuzzy 层最低置信度
        fuzzy_max_distance: fuzzy 层最大编辑距离
        size_similarity_threshold: size 层名称相似度阈值（严格大于）
    """

    def __init__(
        self,
        target_container_id: Optional[int] = None,
        fuzzy_min_confidence: float = DEFAULT_FUZZY_MIN_CONFIDENCE,
        fuzzy_max_distance: int = DEFAULT_FUZZY_MAX_DISTANCE,
        size_similarity_threshold: float = 0.5,
    ):
        self.target_container_id = target_container_id
        self.fuzzy_min_confidence = fuzzy_min_confidence
        self.fuzzy_max_distance = fuzzy_max_distance
        self.size_similarity_threshold = size_similarity_threshold

    def prioritize_files(self, files: Iterable[FileEntry]) -> List[FileEntry]:
        """
        候选排序: originals 目录优先，其次目标容器，其次修改时间较新；其余保持原顺序
        """
        indexed = list(enumerate(files))

        def sort_key(item):
            position, entry = item
            return (
                0 if is_in_originals_folder(entry.path) else 1,
                0 if self.target_container_id is not None and entry.container_id == self.target_container_id else 1,
                -(entry.last_modified or 0.0),
                position,
            )

        return [entry for _, entry in sorted(indexed, key=sort_key)]

    def prioritize_file(self, files: Iterable[FileEntry]) -> Optional[FileEntry]:
        ordered = self.prioritize_files(files)
        return ordered[0] if ordered else None

    def _found(self, files: List[FileEntry], strategy: str) -> MatchResult:
        return MatchResult(
            found=True,
            file=self.prioritize_file(files),
            strategy=strategy,
            confidence=MatchStrategy.CONFIDENCE[strategy],
        )

    def find_file_for_record(
        self,
        record: RecordEntry,
        file_inventory: List[FileEntry],
        indexes: SearchIndexes,
    ) -> MatchResult:
        """按七层策略为记录寻找文件"""
        filename = record.name

        # 1 / 2: 精确文件名
        matches = indexes.exact.get(filename, [])
        same_container = [f for f in matches if f.container_id == record.container_id]
        if same_container:
            return self._found(same_container, MatchStrategy.EXACT_SAME_CONTAINER)
        if matches:
            return self._found(matches, MatchStrategy.EXACT_ANY_CONTAINER)

        # 3: 大小写不敏感
        matches = indexes.case_insensitive.get(filename.lower(), [])
        if matches:
            return self._found(matches, MatchStrategy.CASE_INSENSITIVE)

        # 4: 规范化
        matches = indexes.normalized.get(normalize_filename(filename), [])
        if matches:
            return self._found(matches, MatchStrategy.NORMALIZED)

        # 5: 基础名 + 扩展名族
        family = extension_family(split_extension(filename)[1])
        matches = [
            f
            for f in indexes.basename.get(basename_key(filename), [])
            if split_extension(f.name)[1].lower() in family
        ]
        if matches:
            return self._found(matches, MatchStrategy.BASENAME_EXTENSION_FAMILY)

        # 6: 大小 + 名称相似度
        if record.size:
            matches = [
                f
                for f in indexes.by_size.get(record.size, [])
                if calculate_similarity(f.name, filename) > self.size_similarity_threshold
            ]
            if matches:
                return self._found(matches, MatchStrategy.SIZE)

        # 7: 模糊匹配
        candidates = self.find_fuzzy_matches(filename, file_inventory)
        if candidates:
            best = self.prioritize_file(candidates)
            similarity = calculate_similarity(filename, best.name)
            if similarity < self.fuzzy_min_confidence:
                logger.warning(
                    "拒绝模糊匹配: '%s' -> '%s' (置信度 %.1f%%)",
                    filename,
                    best.name,
                    similarity * 100,
                )
                return MatchResult(
                    found=False,
                    rejected_candidate=best,
                    rejected_confidence=similarity,
                )
            return MatchResult(
                found=True,
                file=best,
                strategy=MatchStrategy.FUZZY,
                confidence=similarity,
            )

        return MatchResult.not_found()

    def find_fuzzy_matches(self, filename: str, file_inventory: Iterable[FileEntry]) -> List[FileEntry]:
        """
        有界编辑距离搜索

        预过滤: 长度在 [int(len*0.7), int(len*1.3)] 内，且前三个字符（小写）编辑距离 <= 2
        （候选名不足三个字符时跳过前缀检查）；再精确计算小写编辑距离 <= fuzzy_max_distance。
        按 1 - distance/max(len) 降序，取前 5 个。
        """
        length = len(filename)
        min_length = int(length * 0.7)
        max_length = int(length * 1.3)
        prefix = filename[:3].lower()
        lowered = filename.lower()

        scored = []
        for entry in file_inventory:
            candidate = entry.name
            candidate_length = len(candidate)
            if candidate_length < min_length or candidate_length > max_length:
                continue
            if candidate_length >= 3 and levenshtein(prefix, candidate[:3].lower()) > 2:
                continue
            distance = levenshtein(lowered, candidate.lower())
            if distance > self.fuzzy_max_distance:
                continue
            longest = max(length, candidate_length) or 1
            scored.append((1.0 - distance / longest, entry))

        scored.sort(key=lambda item: item[0], reverse=True)
        return [entry for _, entry in scored[:FUZZY_TOP_N]]
