"""
assetmend.reconcile.runner - 运行驱动

ReconcileRunner 持有一次运行所需的全部组件，按顺序执行阶段:

    link_repair   断链修复
    duplicates    物理文件重复解析（可选同名合并）
    consolidate   被引用记录整理到目标位置
    quarantine    孤立文件与未使用记录隔离

流程:
    1. 获取迁移锁（--resume 时允许接管同一 run_id 的锁），启动心跳
    2. 策略检查: 人工指定的复制策略必须通过 evaluate_manual_override
    3. 构建记录清单与文件清单（排除隔离容器），关联分析
    4. 逐阶段执行；已保存 status=completed 检查点的阶段直接跳过；
       每个阶段结束后刷新清单
    5. 无论成功失败: 停止心跳、落盘审计日志、释放锁

build_runner(config, ...) 根据配置选择 PostgreSQL 或本地文件后端。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .audit import AuditLog
from .checkpoint import CheckpointStore, FileCheckpointStore, PostgresCheckpointStore, generate_run_id, validate_run_id
from .config import Config
from .consolidation import ConsolidationOrchestrator
from .db import ensure_schema, get_connection
from .duplicate_store import DuplicateGroupStore, FileDuplicateGroupStore, PostgresDuplicateGroupStore
from .duplicates import DuplicateResolutionEngine
from .error_budget import ErrorBudget
from .errors import ConfigError, ReconcileIOError, ValidationError
from .file_ops import FileOperations, canonical_path
from .gateway import Container, ContainerRegistry, build_registry
from .inventory import InventoryBuilder, LinkAnalysis
from .link_repair import LinkRepairService
from .lock import FileMigrationLock, LockHeartbeat, MigrationLock, PostgresMigrationLock
from .matcher import LinkRepairMatcher
from .models import FileEntry, Location, Phase, RecordEntry
from .progress import ProgressCallback
from .quarantine import QuarantineOrchestrator
from .record_store import PostgresRecordStore, RecordStore
from .retry import RetryManager
from .run_context import RunContext
from .search_index import build_search_indexes
from .strategy import MigrationStrategySelector

logger = logging.getLogger(__name__)

LOCK_FILENAME = "migration.lock"
ERRORS_DIRNAME = "errors"
REPORTS_DIRNAME = "reports"


class ReconcileRunner:
    """一次运行的驱动器"""

    def __init__(
        self,
        config: Config,
        registry: ContainerRegistry,
        record_store: RecordStore,
        group_store: DuplicateGroupStore,
        checkpoints: CheckpointStore,
        lock: MigrationLock,
        audit: AuditLog,
        budget: ErrorBudget,
        retry: Optional[RetryManager] = None,
        resume: bool = False,
        progress_callback: Optional[ProgressCallback] = None,
        connection=None,
    ):
        self.config = config
        self.registry = registry
        self.record_store = record_store
        self.group_store = group_store
        self.checkpoints = checkpoints
        self.lock = lock
        self.audit = audit
        self.budget = budget
        self.retry = retry or RetryManager(config.migration.max_retries, config.migration.retry_delay_ms)
        self.resume = resume
        self.progress_callback = progress_callback
        self.selector = MigrationStrategySelector()
        self.ctx: Optional[RunContext] = None
        self._connection = connection
        self._stop_requested = False

    @property
    def run_id(self) -> str:
        return self.checkpoints.run_id

    # =========================================================================
    # 容器
    # =========================================================================

    def target_container(self) -> Container:
        if not self.config.target_container:
            raise ConfigError("未配置目标容器 [target].container", {"section": "target", "key": "container"})
        return self.registry.by_handle(self.config.target_container)

    def quarantine_container(self) -> Container:
        if not self.config.quarantine_container:
            raise ConfigError(
                "未配置隔离容器 [quarantine].container", {"section": "quarantine", "key": "container"}
            )
        return self.registry.by_handle(self.config.quarantine_container)

    def _scan_containers(self, quarantine: Optional[Container]) -> List[Container]:
        return [c for c in self.registry if quarantine is None or c.id != quarantine.id]

    # =========================================================================
    # 策略
    # =========================================================================

    def strategy_report(self, strategy_override: Optional[str] = None) -> Dict[str, Any]:
        """
        每个源容器到目标容器（及隔离容器）的策略建议

        Raises:
            ValidationError: 人工指定的策略不被允许
        """
        target = self.target_container()
        destinations = [target]
        if self.config.quarantine_container:
            destinations.append(self.quarantine_container())

        pairs = []
        rejected = []
        for source in self.registry:
            for destination in destinations:
                if source.id == destination.id:
                    continue
                entry = {
                    "source": source.handle,
                    "target": destination.handle,
                    "recommendation": self.selector.get_strategy_recommendation(source.gateway, destination.gateway),
                }
                if strategy_override:
                    override = self.selector.evaluate_manual_override(
                        strategy_override, source.gateway, destination.gateway
                    )
                    entry["override"] = override
                    if not override["allowed"]:
                        rejected.append({"source": source.handle, "target": destination.handle, **override})
                pairs.append(entry)

        if rejected:
            raise ValidationError(
                f"Strategy '{strategy_override}' is not allowed for {len(rejected)} gateway pair(s)",
                {"strategy": strategy_override, "rejected": rejected},
            )
        return {"override": strategy_override, "pairs": pairs}

    # =========================================================================
    # 清单
    # =========================================================================

    def _inventory(self, quarantine: Optional[Container]) -> Tuple[Dict[int, RecordEntry], List[FileEntry], LinkAnalysis]:
        migration = self.config.migration
        builder = InventoryBuilder(
            self.record_store,
            self.registry,
            batch_size=migration.batch_size,
            progress_callback=self.progress_callback,
            progress_interval=migration.progress_report_interval,
        )
        containers = self._scan_containers(quarantine)
        records = builder.build_record_inventory([c.id for c in containers])
        files = builder.build_file_inventory(containers)
        if quarantine is not None:
            files = self._exclude_quarantine_paths(files, quarantine)
        analysis = builder.analyze_links(
            records, files, self.target_container().id, self.config.target_parent_path
        )
        return records, files, analysis

    @staticmethod
    def _exclude_quarantine_paths(files: List[FileEntry], quarantine: Container) -> List[FileEntry]:
        """排除位于隔离区根目录之下的文件（隔离容器嵌套在其他容器中时）"""
        root = canonical_path(quarantine.gateway, "")
        kept = []
        for entry in files:
            if entry.gateway is not None and canonical_path(entry.gateway, entry.path).startswith(root + "/"):
                continue
            kept.append(entry)
        if len(kept) != len(files):
            logger.info("已排除隔离区中的 %s 个文件", len(files) - len(kept))
        return kept

    def analyze(self) -> Dict[str, Any]:
        """只读分析，不获取锁、不修改任何数据"""
        quarantine = self.quarantine_container() if self.config.quarantine_container else None
        records, files, analysis = self._inventory(quarantine)
        return {
            "records": len(records),
            "files": len(files),
            "analysis": analysis.to_dict(),
            "indexes": build_search_indexes(files).stats(),
        }

    # =========================================================================
    # 运行
    # =========================================================================

    def request_stop(self) -> None:
        """协作式停止（在批次边界生效）"""
        self._stop_requested = True
        if self.ctx is not None:
            self.ctx.request_stop()

    def run(
        self,
        phases: Optional[Iterable[str]] = None,
        resolve_name_duplicates: bool = False,
        strategy_override: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        执行运行

        Raises:
            RunHaltedError: 错误预算超限
            LockNotAcquiredError: 迁移锁被其他进程持有
        """
        selected = list(phases) if phases else list(Phase.ORDER)
        unknown = [p for p in selected if p not in Phase.ORDER]
        if unknown:
            raise ValidationError(f"未知阶段: {unknown}", {"phases": unknown, "valid": list(Phase.ORDER)})

        migration = self.config.migration
        strategies = self.strategy_report(strategy_override)
        quarantine = self.quarantine_container()

        self.lock.acquire(timeout=migration.lock_acquire_timeout_seconds, resume=self.resume)
        heartbeat = LockHeartbeat(self.lock, migration.lock_refresh_interval_seconds)
        self.ctx = RunContext(self.run_id, self.checkpoints, self.budget, heartbeat, self.audit)
        if self._stop_requested:
            self.ctx.request_stop()
        logger.info("运行开始: %s (resume=%s, phases=%s)", self.run_id, self.resume, selected)

        summary: Dict[str, Any] = {"run_id": self.run_id, "resume": self.resume, "phases": {}}
        try:
            file_ops = FileOperations(self.record_store, self.registry, self.ctx, self.retry)
            records, files, analysis = self._inventory(quarantine)
            summary["analysis"] = analysis.to_dict()
            summary["expected_missing"] = self._update_expected_missing(analysis)

            for phase in Phase.ORDER:
                if phase not in selected:
                    continue
                if self.ctx.stop_requested:
                    summary["phases"][phase] = {"status": "not_started"}
                    continue
                saved = self.checkpoints.load(phase)
                if saved and saved.get("status") == "completed":
                    logger.info("阶段 %s 已完成，跳过", phase)
                    summary["phases"][phase] = {"status": "skipped_completed", "result": saved.get("result")}
                    continue

                self.ctx.start_phase(phase)
                result = self._run_phase(phase, file_ops, quarantine, records, files, analysis, resolve_name_duplicates)
                status = "stopped" if self.ctx.stop_requested else "completed"
                self.ctx.save_checkpoint(
                    {"status": status, "result": result, "expected_missing": self.budget.expected_missing_count}
                )
                summary["phases"][phase] = {"status": status, "result": result}
                records, files, analysis = self._inventory(quarantine)

            summary["final_analysis"] = analysis.to_dict()
            summary["strategies"] = strategies
            summary["file_ops"] = dict(file_ops.stats)
            summary["retry"] = self.retry.get_retry_stats()
            summary["errors"] = self.budget.summary()
            summary["last_checkpoint_id"] = self.ctx.last_checkpoint_id
            summary["lock_refresh_failures"] = heartbeat.failure_count
            return summary
        finally:
            heartbeat.stop()
            try:
                self.audit.flush()
            except ReconcileIOError as e:
                logger.error("审计日志落盘失败: %s", e.message)
            self.lock.release()

    def _update_expected_missing(self, analysis: LinkAnalysis) -> int:
        """分析出的断链在运行开始前已知，计为预期缺失；恢复运行时沿用检查点中记录的值"""
        if self.config.migration.auto_expected_missing:
            detected = len(analysis.broken_links)
            if self.resume:
                for phase in Phase.ORDER:
                    saved = self.checkpoints.load(phase) or {}
                    detected = max(detected, saved.get("expected_missing") or 0)
            if detected > self.budget.expected_missing_count:
                logger.info(
                    "预期缺失数按分析结果调整: %s -> %s", self.budget.expected_missing_count, detected
                )
                self.budget.expected_missing_count = detected
        return self.budget.expected_missing_count

    def _run_phase(
        self,
        phase: str,
        file_ops: FileOperations,
        quarantine: Container,
        records: Dict[int, RecordEntry],
        files: List[FileEntry],
        analysis: LinkAnalysis,
        resolve_name_duplicates: bool,
    ) -> Dict[str, Any]:
        migration = self.config.migration
        matching = self.config.matching
        target = self.target_container()

        if phase == Phase.LINK_REPAIR:
            matcher = LinkRepairMatcher(
                target_container_id=target.id,
                fuzzy_min_confidence=matching.fuzzy_min_confidence,
                fuzzy_max_distance=matching.fuzzy_max_distance,
                size_similarity_threshold=matching.size_similarity_threshold,
            )
            service = LinkRepairService(
                file_ops,
                matcher,
                self.registry,
                self.ctx,
                batch_size=migration.batch_size,
                checkpoint_every_batches=migration.checkpoint_every_batches,
                low_confidence_warning=matching.low_confidence_warning,
                progress_callback=self.progress_callback,
                progress_interval=migration.progress_report_interval,
            )
            result = service.fix_broken_links(analysis.broken_links, files)
            if service.missing:
                report = Path(self.config.state_dir) / REPORTS_DIRNAME / f"{self.run_id}_missing_files.csv"
                result["missing_report"] = str(service.write_missing_report(report))
            return result

        if phase == Phase.DUPLICATES:
            engine = DuplicateResolutionEngine(
                self.record_store,
                self.registry,
                self.group_store,
                quarantine,
                self.ctx,
                file_ops=file_ops,
                settings=self.config.duplicates,
            )
            result = engine.run(analysis.records_with_files)
            if resolve_name_duplicates:
                result["filename_duplicates"] = engine.resolve_filename_duplicates(analysis.duplicate_names)
            return result

        if phase == Phase.CONSOLIDATE:
            orchestrator = ConsolidationOrchestrator(
                file_ops,
                self.ctx,
                batch_size=migration.batch_size,
                checkpoint_every_batches=migration.checkpoint_every_batches,
                progress_callback=self.progress_callback,
                progress_interval=migration.progress_report_interval,
            )
            destination = Location(target.id, None, (self.config.target_parent_path or "").strip("/"))
            return orchestrator.consolidate(analysis.used_wrong_location, destination)

        orchestrator = QuarantineOrchestrator(
            file_ops,
            self.registry,
            quarantine,
            self.ctx,
            batch_size=migration.batch_size,
            checkpoint_every_batches=migration.checkpoint_every_batches,
        )
        return {
            "orphaned_files": orchestrator.quarantine_orphaned_files(analysis.orphaned_files),
            "unused_records": orchestrator.quarantine_unused_records(analysis.unused_records),
        }

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None


# =============================================================================
# 工厂
# =============================================================================


def build_runner(
    config: Config,
    run_id: Optional[str] = None,
    resume: bool = False,
    record_store: Optional[RecordStore] = None,
    registry: Optional[ContainerRegistry] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> ReconcileRunner:
    """
    根据配置组装 ReconcileRunner

    - 配置了 postgres: 记录库、重复组、检查点与锁均使用 PostgreSQL
    - 否则: 检查点、重复组与锁均使用 state_dir 下的文件；
      此时必须由调用方提供 record_store
    """
    if resume and not run_id:
        raise ValidationError("--resume 需要指定运行 ID", {"resume": True})
    run_id = validate_run_id(run_id) if run_id else generate_run_id()

    registry = registry or build_registry(config.containers)
    if len(registry) == 0:
        raise ConfigError("未配置任何容器 [containers]", {"section": "containers"})

    migration = config.migration
    state_dir = Path(config.state_dir)
    connection = None

    if config.postgres is not None:
        connection = get_connection(config.postgres.dsn)
        ensure_schema(connection)
        record_store = record_store or PostgresRecordStore(connection)
        group_store: DuplicateGroupStore = PostgresDuplicateGroupStore(connection)
        checkpoints: CheckpointStore = PostgresCheckpointStore(connection, run_id)
        lock: MigrationLock = PostgresMigrationLock(
            connection, run_id, lease_seconds=migration.lock_timeout_seconds
        )
    else:
        if record_store is None:
            raise ConfigError(
                "未配置 [postgres].dsn 时必须提供记录库",
                {"section": "postgres", "key": "dsn"},
            )
        group_store = FileDuplicateGroupStore(state_dir)
        checkpoints = FileCheckpointStore(state_dir, run_id)
        lock = FileMigrationLock(
            state_dir / LOCK_FILENAME, run_id, lease_seconds=migration.lock_timeout_seconds
        )

    audit = AuditLog(state_dir, run_id, migration.changelog_flush_every)
    budget = ErrorBudget(
        error_threshold=migration.error_threshold,
        critical_threshold=migration.critical_error_threshold,
        expected_missing_count=migration.expected_missing_file_count,
        missing_slack=migration.missing_file_slack,
        error_log_path=state_dir / ERRORS_DIRNAME / f"{run_id}.log",
    )
    return ReconcileRunner(
        config,
        registry,
        record_store,
        group_store,
        checkpoints,
        lock,
        audit,
        budget,
        retry=RetryManager(migration.max_retries, migration.retry_delay_ms),
        resume=resume,
        progress_callback=progress_callback,
        connection=connection,
    )
