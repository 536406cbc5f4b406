"""
assetmend - 记录与物理文件对账修复工具

提供：
- reconcile: 清单构建、断链修复、重复解析、整理与隔离、检查点与错误预算
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
