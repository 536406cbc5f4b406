"""
assetmend.reconcile.nesting - 存储网关嵌套检测

两个网关位于同一个桶，且其中一个的根路径是另一个的祖先（或两者相同）时视为嵌套。
嵌套时从一个网关直接复制到另一个网关可能读写到同一批对象，必须改用临时文件中转。

判断只依赖网关公开的 backend_kind() / bucket_id() / root_path()，不做类型检查。
"""

from typing import Any, Dict

from .gateway import StorageGateway


def _normalize(path: str) -> str:
    return (path or "").strip().strip("/")


def is_same_bucket(a: StorageGateway, b: StorageGateway) -> bool:
    """后端类型相同且桶标识相同（桶标识为空视为未知，不相同）"""
    bucket_a = a.bucket_id()
    return a.backend_kind() == b.backend_kind() and bool(bucket_a) and bucket_a == b.bucket_id()


def is_parent_path(parent: str, child: str) -> bool:
    """
    parent 是否为 child 的祖先目录

    空 parent 是任何非空 child 的祖先；相同路径不算祖先。
    """
    parent = _normalize(parent)
    child = _normalize(child)
    if not parent:
        return bool(child)
    if parent == child:
        return False
    return child.startswith(parent + "/")


def is_nested_filesystem(a: StorageGateway, b: StorageGateway) -> bool:
    """同一个桶内根路径相同或互为祖先（对称）"""
    if not is_same_bucket(a, b):
        return False
    root_a = _normalize(a.root_path())
    root_b = _normalize(b.root_path())
    return root_a == root_b or is_parent_path(root_a, root_b) or is_parent_path(root_b, root_a)


def get_diagnostic_info(a: StorageGateway, b: StorageGateway) -> Dict[str, Any]:
    """嵌套诊断信息"""
    return {
        "is_nested": is_nested_filesystem(a, b),
        "same_bucket": is_same_bucket(a, b),
        "source": {
            "handle": a.handle,
            "type": a.backend_kind(),
            "bucket": a.bucket_id(),
            "path": _normalize(a.root_path()),
        },
        "target": {
            "handle": b.handle,
            "type": b.backend_kind(),
            "bucket": b.bucket_id(),
            "path": _normalize(b.root_path()),
        },
    }
