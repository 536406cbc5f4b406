"""
assetmend.reconcile.similarity - 文件名相似度计算

提供:
- levenshtein: 编辑距离（两行动态规划）
- similar_text: 最长公共子串递归相似度（与常见 similar_text 语义一致）
- normalize_filename: 文件名规范化（小写，仅保留 [a-z0-9.]）
- calculate_similarity: 规范化后的相似度，范围 [0, 1]
"""

import re
from typing import Tuple

_NORMALIZE_RE = re.compile(r"[^a-z0-9.]")


def normalize_filename(filename: str) -> str:
    """
    规范化文件名

    示例:
        "My Photo (1).JPG" -> "myphoto1.jpg"
    """
    return _NORMALIZE_RE.sub("", (filename or "").lower())


def levenshtein(s1: str, s2: str) -> int:
    """计算两个字符串的编辑距离"""
    if len(s1) < len(s2):
        return levenshtein(s2, s1)
    if not s2:
        return len(s1)

    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1):
        current = [i + 1]
        for j, c2 in enumerate(s2):
            insertions = previous[j + 1] + 1
            deletions = current[j] + 1
            substitutions = previous[j] + (c1 != c2)
            current.append(min(insertions, deletions, substitutions))
        previous = current
    return previous[-1]


def _longest_common_substring(s1: str, s2: str) -> Tuple[int, int, int]:
    """返回 (pos1, pos2, length)，长度相同时取第一次出现的位置"""
    best_len = 0
    best_pos1 = 0
    best_pos2 = 0
    len1 = len(s1)
    len2 = len(s2)
    for i in range(len1):
        for j in range(len2):
            k = 0
            while i + k < len1 and j + k < len2 and s1[i + k] == s2[j + k]:
                k += 1
            if k > best_len:
                best_len = k
                best_pos1 = i
                best_pos2 = j
    return best_pos1, best_pos2, best_len


def _similar_chars(s1: str, s2: str) -> int:
    if not s1 or not s2:
        return 0
    pos1, pos2, length = _longest_common_substring(s1, s2)
    if length == 0:
        return 0
    return (
        length
        + _similar_chars(s1[:pos1], s2[:pos2])
        + _similar_chars(s1[pos1 + length:], s2[pos2 + length:])
    )


def similar_text(s1: str, s2: str) -> float:
    """
    计算相似百分比 (0-100)

    公式: 公共字符数 * 2 * 100 / (len1 + len2)
    """
    total = len(s1) + len(s2)
    if total == 0:
        return 0.0
    return _similar_chars(s1, s2) * 2.0 * 100.0 / total


def calculate_similarity(filename1: str, filename2: str) -> float:
    """文件名规范化后的相似度，范围 [0, 1]"""
    return similar_text(normalize_filename(filename1), normalize_filename(filename2)) / 100.0


def edit_similarity(s1: str, s2: str) -> float:
    """基于编辑距离的相似度: 1 - distance / max(len)"""
    longest = max(len(s1), len(s2))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(s1, s2) / longest
