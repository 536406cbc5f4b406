"""
assetmend.reconcile.search_index - 文件清单检索索引

从文件清单构建五种查找结构，供链接修复匹配器使用:
    exact             原始文件名
    case_insensitive  小写文件名
    normalized        规范化文件名（仅保留 [a-z0-9.]）
    basename          去扩展名的小写文件名
    by_size           字节大小（仅 size > 0）
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Tuple

from .models import FileEntry
from .similarity import normalize_filename

# 可互换的扩展名族；未列出的扩展名只与自身匹配
EXTENSION_FAMILIES: Dict[str, FrozenSet[str]] = {
    "jpg": frozenset({"jpg", "jpeg"}),
    "jpeg": frozenset({"jpg", "jpeg"}),
}


def split_extension(filename: str) -> Tuple[str, str]:
    """拆分 (基础名, 扩展名)，扩展名不含点"""
    if "." not in filename:
        return filename, ""
    base, ext = filename.rsplit(".", 1)
    return base, ext


def extension_family(extension: str) -> FrozenSet[str]:
    ext = (extension or "").lower()
    return EXTENSION_FAMILIES.get(ext, frozenset({ext}))


def basename_key(filename: str) -> str:
    return split_extension(filename)[0].lower()


@dataclass
class SearchIndexes:
    """五种文件查找索引"""

    exact: Dict[str, List[FileEntry]] = field(default_factory=dict)
    case_insensitive: Dict[str, List[FileEntry]] = field(default_factory=dict)
    normalized: Dict[str, List[FileEntry]] = field(default_factory=dict)
    basename: Dict[str, List[FileEntry]] = field(default_factory=dict)
    by_size: Dict[int, List[FileEntry]] = field(default_factory=dict)

    def stats(self) -> Dict[str, int]:
        return {
            "exact": len(self.exact),
            "case_insensitive": len(self.case_insensitive),
            "normalized": len(self.normalized),
            "basename": len(self.basename),
            "by_size": len(self.by_size),
        }


def build_search_indexes(files: Iterable[FileEntry]) -> SearchIndexes:
    """构建检索索引（保留清单中的原始顺序）"""
    exact = defaultdict(list)
    case_insensitive = defaultdict(list)
    normalized = defaultdict(list)
    basename = defaultdict(list)
    by_size = defaultdict(list)

    for entry in files:
        exact[entry.name].append(entry)
        case_insensitive[entry.name.lower()].append(entry)
        normalized[normalize_filename(entry.name)].append(entry)
        basename[basename_key(entry.name)].append(entry)
        if entry.size and entry.size > 0:
            by_size[entry.size].append(entry)

    return SearchIndexes(
        exact=dict(exact),
        case_insensitive=dict(case_insensitive),
        normalized=dict(normalized),
        basename=dict(basename),
        by_size=dict(by_size),
    )
