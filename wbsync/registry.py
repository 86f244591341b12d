"""
Builds one sync session: storage, client, policies, jobs and the layers
composed on top of them. Nothing in wbsync keeps module-level singletons;
entry points build a session and pass it around.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

import config
from wbsync.analytics_jobs import CatalogJob, ProductOrdersJob, StocksJob, SuppliesJob
from wbsync.cost_jobs import AcceptanceCostsJob, AdvCostsJob, StorageCostsJob
from wbsync.db import init_sync_tables
from wbsync.finance_jobs import FinanceReportJob
from wbsync.freshness import DataFreshnessCatchupService, DataFreshnessService, WeeklyReportReadinessService
from wbsync.job_base import SyncContext, SyncJob, SyncSettings, today_utc
from wbsync.models import FINANCE_DATASETS, DatasetKey, EventSink, coerce_dataset
from wbsync.orchestrator import SyncOrchestrator
from wbsync.policy import DatasetPolicy, build_policies
from wbsync.runner import SyncRunner
from wbsync.state import CheckpointStore, LoadedPeriodRegistry, SyncRegistryStore
from wbsync.tables import build_result_tables
from wbsync.wb_api import WbApiClient, get_wb_client
from wbsync.week_sync import WeekSyncCoordinator

logger = logging.getLogger("sync_registry")


def build_jobs(policies: Mapping[DatasetKey, DatasetPolicy]) -> Dict[DatasetKey, SyncJob]:
    jobs: Dict[DatasetKey, SyncJob] = {ds: FinanceReportJob(ds, policies[ds]) for ds in FINANCE_DATASETS}
    jobs[DatasetKey.ADV_COSTS] = AdvCostsJob(policies[DatasetKey.ADV_COSTS])
    jobs[DatasetKey.STORAGE_COSTS] = StorageCostsJob(policies[DatasetKey.STORAGE_COSTS])
    jobs[DatasetKey.ACCEPTANCE_COSTS] = AcceptanceCostsJob(policies[DatasetKey.ACCEPTANCE_COSTS])
    jobs[DatasetKey.PRODUCT_ORDERS] = ProductOrdersJob(policies[DatasetKey.PRODUCT_ORDERS])
    jobs[DatasetKey.SUPPLIES] = SuppliesJob(policies[DatasetKey.SUPPLIES])
    jobs[DatasetKey.STOCKS] = StocksJob(policies[DatasetKey.STOCKS])
    jobs[DatasetKey.CATALOG] = CatalogJob(policies[DatasetKey.CATALOG])
    return jobs


@dataclass
class SyncSession:
    ctx: SyncContext
    policies: Dict[DatasetKey, DatasetPolicy]
    jobs: Dict[DatasetKey, SyncJob]
    runner: SyncRunner
    orchestrator: SyncOrchestrator
    coordinator: WeekSyncCoordinator
    freshness: DataFreshnessService
    freshness_catchup: DataFreshnessCatchupService
    readiness: WeeklyReportReadinessService

    def reset_dataset(self, dataset) -> Dict[str, int]:
        """Forget everything synced for one dataset: checkpoints, loaded periods and result rows."""
        key = coerce_dataset(dataset)
        counts = {
            "checkpoints": self.ctx.checkpoints.delete_dataset(key),
            "loaded_periods": self.ctx.periods.delete_dataset(key),
            "rows": self.ctx.table(key).delete_all(),
        }
        logger.warning("[sync_registry] reset %s: %s", key.value, counts)
        return counts

    def status(self) -> Dict[str, Any]:
        checkpoints = [
            {
                "dataset": cp.key.dataset.value,
                "variant": cp.key.variant.value,
                "cursor_time": cp.cursor_time.isoformat() if cp.cursor_time else None,
                "high_watermark_time": cp.high_watermark_time.isoformat(),
                "updated_at": cp.updated_at.isoformat(),
            }
            for cp in self.ctx.checkpoints.list_all()
        ]
        missing = self.freshness.get_missing_ranges()
        return {
            "today": self.ctx.today().isoformat(),
            "watermark": self.ctx.watermark().isoformat(),
            "checkpoints": checkpoints,
            "loaded_periods": self.ctx.periods.latest_by_dataset(),
            "backfill": self.orchestrator.backfill_progress(DatasetKey.SALES).as_dict(),
            "missing_ranges": {d.value: r.label() for d, r in missing.items()},
            "running": [d.value for d in self.jobs if self.runner.is_running(d)],
        }


def _priority_datasets_from_config() -> Sequence[DatasetKey]:
    if not config.PRIORITY_DATASETS:
        return list(DatasetKey)
    return [coerce_dataset(name) for name in config.PRIORITY_DATASETS]


def build_sync_session(
    db_path: Optional[Path] = None,
    client: Optional[WbApiClient] = None,
    policies: Optional[Mapping[DatasetKey, DatasetPolicy]] = None,
    settings: Optional[SyncSettings] = None,
    today: Optional[Callable[[], date]] = None,
    sleep: Optional[Callable[[float], None]] = None,
    clock: Optional[Callable[[], float]] = None,
    on_event: Optional[EventSink] = None,
    priority_datasets: Optional[Sequence[Any]] = None,
) -> SyncSession:
    db_path = Path(db_path or config.SYNC_DB_PATH)
    settings = settings or SyncSettings.from_config()
    if policies is None:
        policies = build_policies(
            config.load_policy_overrides(),
            backfill_lower_bound=settings.backfill_lower_bound.isoformat(),
        )
    policies = dict(policies)

    init_sync_tables(db_path)
    ctx = SyncContext(
        client=client or get_wb_client(),
        checkpoints=CheckpointStore(db_path),
        periods=LoadedPeriodRegistry(db_path),
        registry=SyncRegistryStore(db_path),
        tables=build_result_tables(db_path),
        settings=settings,
        today=today or today_utc,
        sleep=sleep or time.sleep,
        clock=clock or time.monotonic,
        on_event=on_event,
    )
    jobs = build_jobs(policies)
    runner = SyncRunner(ctx, jobs)
    if priority_datasets is None:
        priority_datasets = _priority_datasets_from_config()
    orchestrator = SyncOrchestrator(
        runner,
        policies,
        priority_datasets=[coerce_dataset(d) for d in priority_datasets],
        max_concurrency=config.PRIORITY_WAVE_CONCURRENCY,
        max_catchup_runs_per_tick=config.MAX_CATCHUP_RUNS_PER_TICK,
    )
    coordinator = WeekSyncCoordinator(
        runner,
        lower_bound=settings.backfill_lower_bound,
        max_attempts=config.WEEK_SYNC_MAX_ATTEMPTS,
        initial_delay_seconds=config.WEEK_SYNC_INITIAL_DELAY_SECONDS,
        max_delay_seconds=config.WEEK_SYNC_MAX_DELAY_SECONDS,
        range_delay_seconds=config.WEEK_SYNC_RANGE_DELAY_SECONDS,
    )
    freshness = DataFreshnessService(ctx.periods, policies, ctx.today)
    session = SyncSession(
        ctx=ctx,
        policies=policies,
        jobs=jobs,
        runner=runner,
        orchestrator=orchestrator,
        coordinator=coordinator,
        freshness=freshness,
        freshness_catchup=DataFreshnessCatchupService(freshness, coordinator),
        readiness=WeeklyReportReadinessService(ctx.client, ctx.today, settings.backfill_lower_bound),
    )
    logger.info("[sync_registry] session ready db=%s datasets=%s", db_path, [d.value for d in jobs])
    return session
