"""
assetmend.reconcile.io - CLI 输出工具

约定:
- stdout: 机器可读的 JSON（成功 {ok: true, ...}；失败 {ok: false, code, message, detail}）
- stderr: 人读信息（进度、警告、错误摘要）
- 错误时以错误对应的 exit code 退出
"""

import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import ReconcileError

# =============================================================================
# JSON 输出
# =============================================================================


def output_json(
    data: Any,
    pretty: bool = False,
    quiet: bool = False,
    json_out: Optional[str] = None,
) -> None:
    """
    输出 JSON 到 stdout，json_out 指定时同时写入文件

    Args:
        data: 要输出的数据
        pretty: 缩进输出
        quiet: 不输出 stderr 提示
        json_out: JSON 文件路径（父目录自动创建）
    """
    text = json.dumps(data, ensure_ascii=False, indent=2 if pretty else None, default=_json_serializer)
    print(text, file=sys.stdout)

    if json_out:
        try:
            out_path = Path(json_out)
            out_path.parent.mkdir(parents=True, exist_ok=True)
            out_path.write_text(text + "\n", encoding="utf-8")
            log_info(f"JSON 输出已写入: {json_out}", quiet=quiet)
        except OSError as e:
            log_error(f"写入 JSON 输出文件失败: {json_out} - {e}")


def output_error(error: ReconcileError, pretty: bool = False, quiet: bool = False, json_out: Optional[str] = None) -> None:
    """错误 JSON 到 stdout，摘要到 stderr"""
    output_json(error.to_dict(), pretty=pretty, quiet=quiet, json_out=json_out)
    log_error(f"[{error.error_type}] {error.message}", quiet=quiet)


# =============================================================================
# stderr 人读信息
# =============================================================================


def log_info(message: str, quiet: bool = False) -> None:
    if not quiet:
        print(message, file=sys.stderr)


def log_error(message: str, quiet: bool = False) -> None:
    if not quiet:
        print(f"ERROR: {message}", file=sys.stderr)


def log_warning(message: str, quiet: bool = False) -> None:
    if not quiet:
        print(f"WARN: {message}", file=sys.stderr)


def progress_printer(label: str, quiet: bool = False):
    """返回 (processed, total, eta_seconds) 形式的进度回调，输出到 stderr"""

    def callback(processed: int, total: int, eta_seconds: Optional[float]) -> None:
        eta = f"{eta_seconds:.0f}s" if eta_seconds is not None else "?"
        log_info(f"{label}: {processed}/{total} (eta {eta})", quiet=quiet)

    return callback


# =============================================================================
# JSON 序列化
# =============================================================================


def _json_serializer(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    if isinstance(obj, Path):
        return str(obj)
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if hasattr(obj, "__dict__"):
        return obj.__dict__
    return str(obj)


# =============================================================================
# argparse 参数
# =============================================================================


def add_output_arguments(parser, include_quiet: bool = True) -> None:
    """
    添加输出参数

        --pretty       缩进 JSON
        -q/--quiet     不输出 stderr 人读信息
        --json-out     同时写入 JSON 文件
    """
    parser.add_argument("--pretty", action="store_true", help="格式化 JSON 输出（便于阅读）")
    if include_quiet:
        parser.add_argument("-q", "--quiet", action="store_true", help="静默模式（不输出 stderr 人读信息）")
    parser.add_argument(
        "--json-out",
        dest="json_out",
        metavar="PATH",
        help="JSON 输出文件路径（同时写入 stdout 和文件，自动创建父目录）",
    )


def get_output_options(args) -> Dict[str, Any]:
    """从 argparse.Namespace 提取 {pretty, quiet, json_out}"""
    return {
        "pretty": getattr(args, "pretty", False),
        "quiet": getattr(args, "quiet", False),
        "json_out": getattr(args, "json_out", None),
    }
