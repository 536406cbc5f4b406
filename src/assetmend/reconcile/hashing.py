"""
assetmend.reconcile.hashing - 哈希计算工具模块

暂存重复文件时顺带计算内容哈希，并用于生成隔离区路径。
引擎不做基于内容的去重，这里的哈希只用于审计与校验。
"""

import hashlib
from typing import Union

from .errors import HashingError

# 暂存校验默认算法
DEFAULT_ALGORITHM = "md5"


def hash_bytes(data: bytes, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """
    计算字节数据的哈希值

    Args:
        data: 字节数据
        algorithm: 哈希算法（md5, sha256 等）

    Returns:
        十六进制哈希字符串
    """
    try:
        hasher = hashlib.new(algorithm)
    except ValueError as e:
        raise HashingError(
            f"不支持的哈希算法: {algorithm}",
            {"algorithm": algorithm, "error": str(e)},
        )
    hasher.update(data)
    return hasher.hexdigest()


def hash_string(text: str, algorithm: str = DEFAULT_ALGORITHM, encoding: str = "utf-8") -> str:
    """计算字符串的哈希值"""
    return hash_bytes(text.encode(encoding), algorithm)


def md5(data: Union[bytes, str]) -> str:
    """计算 MD5 哈希"""
    if isinstance(data, str):
        return hash_string(data, "md5")
    return hash_bytes(data, "md5")
