"""
assetmend.reconcile.cli - 命令行入口

用法:
    assetmend analyze                      只读分析（记录/文件清单与关联分类）
    assetmend run [--phase P ...]          执行修复运行
    assetmend run --resume RUN_ID          从检查点恢复
    assetmend strategy --source HANDLE     查看复制策略建议
    assetmend checkpoints list|cleanup     检查点管理
    assetmend rollback RUN_ID [--phase P] [--mode only|from] [--dry-run]

输出: stdout 为 JSON，stderr 为人读信息；退出码见 errors.ExitCode。
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import List, Optional

from .audit import AuditLog
from .checkpoint import FileCheckpointStore, PostgresCheckpointStore, validate_run_id
from .config import Config, add_config_argument, configure_logging, load_config
from .db import get_connection
from .errors import ConfigError, ReconcileError, make_error_result, make_success_result
from .gateway import build_registry
from .io import (
    add_output_arguments,
    get_output_options,
    log_info,
    log_warning,
    output_error,
    output_json,
    progress_printer,
)
from .lock import PostgresMigrationLock
from .models import Phase
from .nesting import get_diagnostic_info
from .record_store import PostgresRecordStore
from .rollback import MODE_FROM, MODE_ONLY, RollbackEngine
from .runner import build_runner
from .strategy import AVAILABLE_STRATEGIES, MigrationStrategySelector

logger = logging.getLogger(__name__)

# 列出 / 清理检查点时使用的占位运行 ID
LISTING_RUN_ID = "cli"


def _load(args: argparse.Namespace) -> Config:
    config = load_config(getattr(args, "config_path", None))
    configure_logging(config.logging, verbose=getattr(args, "verbose", False))
    return config


def _unexpected(e: Exception, **opts) -> int:
    result = make_error_result(
        code="UNEXPECTED_ERROR",
        message=str(e),
        detail={"error_type": type(e).__name__},
    )
    output_json(result, **opts)
    return 1


def _require_postgres(config: Config, purpose: str) -> None:
    if config.postgres is None:
        raise ConfigError(
            f"{purpose} 需要记录库，请配置 [postgres].dsn 或 ASSETMEND_PG_DSN",
            {"section": "postgres", "key": "dsn"},
        )


# =============================================================================
# analyze
# =============================================================================


def cmd_analyze(args: argparse.Namespace) -> int:
    """处理 analyze 子命令"""
    opts = get_output_options(args)
    runner = None
    try:
        config = _load(args)
        _require_postgres(config, "analyze")
        runner = build_runner(config, progress_callback=progress_printer("analyze", opts["quiet"]))
        output_json(make_success_result(**runner.analyze()), **opts)
        return 0
    except ReconcileError as e:
        output_error(e, **opts)
        return e.exit_code
    except Exception as e:
        return _unexpected(e, **opts)
    finally:
        if runner is not None:
            runner.close()


# =============================================================================
# run
# =============================================================================


def cmd_run(args: argparse.Namespace) -> int:
    """处理 run 子命令"""
    opts = get_output_options(args)
    runner = None
    previous_handler = None
    try:
        config = _load(args)
        _require_postgres(config, "run")
        if args.expected_missing is not None:
            config.migration.expected_missing_file_count = args.expected_missing

        run_id = args.resume or args.run_id
        runner = build_runner(
            config,
            run_id=run_id,
            resume=bool(args.resume),
            progress_callback=progress_printer("run", opts["quiet"]),
        )

        def _on_interrupt(signum, frame):
            log_warning("收到中断信号，将在当前批次结束后停止", quiet=opts["quiet"])
            runner.request_stop()

        previous_handler = signal.signal(signal.SIGINT, _on_interrupt)
        log_info(f"运行 ID: {runner.run_id}", quiet=opts["quiet"])

        summary = runner.run(
            phases=args.phases,
            resolve_name_duplicates=args.merge_name_duplicates,
            strategy_override=args.strategy,
        )
        output_json(make_success_result(**summary), **opts)
        return 0
    except ReconcileError as e:
        output_error(e, **opts)
        return e.exit_code
    except Exception as e:
        return _unexpected(e, **opts)
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)
        if runner is not None:
            runner.close()


# =============================================================================
# strategy
# =============================================================================


def cmd_strategy(args: argparse.Namespace) -> int:
    """处理 strategy 子命令"""
    opts = get_output_options(args)
    try:
        config = _load(args)
        registry = build_registry(config.containers)
        target_handle = args.target or config.target_container
        if not target_handle:
            raise ConfigError("未指定目标容器（--target 或 [target].container）", {"section": "target"})
        source = registry.by_handle(args.source)
        target = registry.by_handle(target_handle)

        selector = MigrationStrategySelector()
        result = make_success_result(
            source=args.source,
            target=target_handle,
            recommendation=selector.get_strategy_recommendation(source.gateway, target.gateway),
            nesting=get_diagnostic_info(source.gateway, target.gateway),
            available=selector.get_available_strategies(),
        )
        if args.override:
            result["override"] = selector.evaluate_manual_override(args.override, source.gateway, target.gateway)
        output_json(result, **opts)
        return 0
    except ReconcileError as e:
        output_error(e, **opts)
        return e.exit_code
    except Exception as e:
        return _unexpected(e, **opts)


# =============================================================================
# checkpoints
# =============================================================================


def _checkpoint_store(config: Config):
    if config.postgres is not None:
        conn = get_connection(config.postgres.dsn)
        return PostgresCheckpointStore(conn, LISTING_RUN_ID), conn
    return FileCheckpointStore(config.state_dir, LISTING_RUN_ID), None


def cmd_checkpoints_list(args: argparse.Namespace) -> int:
    """处理 checkpoints list 子命令"""
    opts = get_output_options(args)
    conn = None
    try:
        config = _load(args)
        store, conn = _checkpoint_store(config)
        checkpoints = store.list_checkpoints()
        if args.run_id:
            checkpoints = [c for c in checkpoints if c["run_id"] == args.run_id]
        result = make_success_result(
            checkpoints=checkpoints,
            count=len(checkpoints),
            change_logs=AuditLog.list_runs(config.state_dir),
        )
        output_json(result, **opts)
        return 0
    except ReconcileError as e:
        output_error(e, **opts)
        return e.exit_code
    except Exception as e:
        return _unexpected(e, **opts)
    finally:
        if conn is not None:
            conn.close()


def cmd_checkpoints_cleanup(args: argparse.Namespace) -> int:
    """处理 checkpoints cleanup 子命令"""
    opts = get_output_options(args)
    conn = None
    try:
        config = _load(args)
        retention = (
            args.retention_hours
            if args.retention_hours is not None
            else config.migration.checkpoint_retention_hours
        )
        store, conn = _checkpoint_store(config)
        deleted = store.cleanup(retention)
        output_json(make_success_result(deleted=deleted, retention_hours=retention), **opts)
        return 0
    except ReconcileError as e:
        output_error(e, **opts)
        return e.exit_code
    except Exception as e:
        return _unexpected(e, **opts)
    finally:
        if conn is not None:
            conn.close()


# =============================================================================
# rollback
# =============================================================================


def cmd_rollback(args: argparse.Namespace) -> int:
    """处理 rollback 子命令"""
    opts = get_output_options(args)
    conn = None
    lock = None
    try:
        config = _load(args)
        run_id = validate_run_id(args.run_id)
        audit = AuditLog(config.state_dir, run_id)
        registry = build_registry(config.containers)
        _require_postgres(config, "rollback")
        conn = get_connection(config.postgres.dsn)
        engine = RollbackEngine(audit, PostgresRecordStore(conn), registry)

        plan = engine.plan(phases=args.phases, mode=args.mode)
        if not args.dry_run:
            lock = PostgresMigrationLock(conn, run_id, lease_seconds=config.migration.lock_timeout_seconds)
            lock.acquire(timeout=config.migration.lock_acquire_timeout_seconds, resume=True)
        result = engine.execute(plan, dry_run=args.dry_run)
        output_json(make_success_result(plan=plan.to_dict(), **result), **opts)
        return 0
    except ReconcileError as e:
        output_error(e, **opts)
        return e.exit_code
    except Exception as e:
        return _unexpected(e, **opts)
    finally:
        if lock is not None:
            lock.release()
        if conn is not None:
            conn.close()


# =============================================================================
# 入口
# =============================================================================


def _common(parser: argparse.ArgumentParser) -> None:
    add_config_argument(parser)
    add_output_arguments(parser)
    parser.add_argument("-v", "--verbose", action="store_true", help="输出 DEBUG 日志")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="assetmend",
        description="assetmend - 记录与物理文件对账修复工具",
    )
    subparsers = parser.add_subparsers(dest="command", help="可用命令")

    # === analyze ===
    p_analyze = subparsers.add_parser("analyze", help="只读分析记录与文件的关联")
    _common(p_analyze)
    p_analyze.set_defaults(func=cmd_analyze)

    # === run ===
    p_run = subparsers.add_parser("run", help="执行修复运行")
    p_run.add_argument("--resume", metavar="RUN_ID", help="从指定运行的检查点恢复")
    p_run.add_argument("--run-id", dest="run_id", help="新运行的 ID（默认按时间生成）")
    p_run.add_argument(
        "--phase",
        dest="phases",
        action="append",
        choices=list(Phase.ORDER),
        help="只执行指定阶段（可重复）",
    )
    p_run.add_argument(
        "--merge-name-duplicates",
        dest="merge_name_duplicates",
        action="store_true",
        help="同时合并同名记录",
    )
    p_run.add_argument(
        "--strategy",
        choices=sorted(AVAILABLE_STRATEGIES),
        help="人工指定复制策略（嵌套网关下 direct 会被拒绝）",
    )
    p_run.add_argument(
        "--expected-missing",
        dest="expected_missing",
        type=int,
        help="预期的缺失源文件数量（覆盖配置）",
    )
    _common(p_run)
    p_run.set_defaults(func=cmd_run)

    # === strategy ===
    p_strategy = subparsers.add_parser("strategy", help="查看两个容器之间的复制策略")
    p_strategy.add_argument("--source", required=True, help="源容器 handle")
    p_strategy.add_argument("--target", help="目标容器 handle（默认 [target].container）")
    p_strategy.add_argument("--override", choices=sorted(AVAILABLE_STRATEGIES), help="评估人工指定的策略")
    _common(p_strategy)
    p_strategy.set_defaults(func=cmd_strategy)

    # === checkpoints ===
    p_checkpoints = subparsers.add_parser("checkpoints", help="检查点管理")
    cp_sub = p_checkpoints.add_subparsers(dest="checkpoints_command", help="检查点操作")

    p_cp_list = cp_sub.add_parser("list", help="列出检查点")
    p_cp_list.add_argument("--run-id", dest="run_id", help="只列出指定运行")
    _common(p_cp_list)
    p_cp_list.set_defaults(func=cmd_checkpoints_list)

    p_cp_cleanup = cp_sub.add_parser("cleanup", help="删除超过保留期的检查点")
    p_cp_cleanup.add_argument(
        "--retention-hours",
        dest="retention_hours",
        type=int,
        help="保留小时数（默认 [migration].checkpoint_retention_hours）",
    )
    _common(p_cp_cleanup)
    p_cp_cleanup.set_defaults(func=cmd_checkpoints_cleanup)

    # === rollback ===
    p_rollback = subparsers.add_parser("rollback", help="按变更日志回滚运行")
    p_rollback.add_argument("run_id", metavar="RUN_ID", help="要回滚的运行 ID")
    p_rollback.add_argument(
        "--phase",
        dest="phases",
        action="append",
        choices=list(Phase.ORDER),
        help="回滚的阶段（可重复，默认全部）",
    )
    p_rollback.add_argument("--mode", choices=[MODE_ONLY, MODE_FROM], default=MODE_ONLY, help="阶段选择方式")
    p_rollback.add_argument("--dry-run", dest="dry_run", action="store_true", help="只生成计划不执行")
    _common(p_rollback)
    p_rollback.set_defaults(func=cmd_rollback)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """主入口点"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not getattr(args, "func", None):
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
