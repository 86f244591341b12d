from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import config
from wbsync.dates import default_high_watermark
from wbsync.models import (
    ApplyResult,
    Checkpoint,
    CheckpointKey,
    CheckpointVariant,
    DatasetKey,
    EventSink,
    SyncMode,
    SyncPlan,
    emit,
)
from wbsync.planning import build_catchup_plan
from wbsync.policy import DatasetPolicy
from wbsync.report_tasks import ReportTaskSettings
from wbsync.state import CheckpointStore, LoadedPeriodRegistry, SyncRegistryStore
from wbsync.tables import KeyedTable
from wbsync.wb_api import WbApiClient

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncSettings:
    report_poll_interval_seconds: float = 2.0
    task_rate_limit_retry_seconds: float = 10.0
    report_rate_limit_retry_seconds: float = 61.0
    orders_rate_limit_seconds: float = 21.0
    storage_report_timeout_seconds: float = 300.0
    acceptance_report_timeout_seconds: float = 300.0
    stocks_report_timeout_seconds: float = 120.0
    backfill_lower_bound: date = date(2024, 1, 29)

    @classmethod
    def from_config(cls) -> "SyncSettings":
        return cls(
            report_poll_interval_seconds=config.REPORT_POLL_INTERVAL_SECONDS,
            task_rate_limit_retry_seconds=config.TASK_RATE_LIMIT_RETRY_SECONDS,
            report_rate_limit_retry_seconds=config.REPORT_RATE_LIMIT_RETRY_SECONDS,
            orders_rate_limit_seconds=config.ORDERS_RATE_LIMIT_SECONDS,
            storage_report_timeout_seconds=config.STORAGE_REPORT_TIMEOUT_SECONDS,
            acceptance_report_timeout_seconds=config.ACCEPTANCE_REPORT_TIMEOUT_SECONDS,
            stocks_report_timeout_seconds=config.STOCKS_REPORT_TIMEOUT_SECONDS,
            backfill_lower_bound=date.fromisoformat(config.BACKFILL_LOWER_BOUND),
        )

    def report_task(self, timeout_seconds: float) -> ReportTaskSettings:
        return ReportTaskSettings(
            poll_interval_seconds=self.report_poll_interval_seconds,
            rate_limit_delay_seconds=self.task_rate_limit_retry_seconds,
            timeout_seconds=timeout_seconds,
        )


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


@dataclass
class SyncContext:
    """Everything a job needs for one session; built once by the registry."""

    client: WbApiClient
    checkpoints: CheckpointStore
    periods: LoadedPeriodRegistry
    registry: SyncRegistryStore
    tables: Dict[DatasetKey, KeyedTable]
    settings: SyncSettings = field(default_factory=SyncSettings)
    today: Callable[[], date] = today_utc
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic
    on_event: Optional[EventSink] = None

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def watermark(self) -> date:
        return default_high_watermark(self.today())

    def table(self, dataset: DatasetKey) -> KeyedTable:
        return self.tables[dataset]

    def emit(self, kind: str, dataset: Optional[DatasetKey] = None, **detail: Any) -> None:
        emit(self.on_event, kind, dataset, **detail)


class GroupAccumulator:
    """
    Group records by their business key and sum numeric measures on
    collision; non-measure fields keep the first value seen.
    """

    def __init__(self, key_columns: Sequence[str], sum_fields: Sequence[str]):
        self.key_columns = tuple(key_columns)
        self.sum_fields = tuple(sum_fields)
        self._groups: Dict[Tuple[Any, ...], Dict[str, Any]] = {}

    def add(self, record: Mapping[str, Any]) -> None:
        key = tuple(record.get(k) for k in self.key_columns)
        existing = self._groups.get(key)
        if existing is None:
            self._groups[key] = dict(record)
            return
        for name in self.sum_fields:
            existing[name] = (existing.get(name) or 0) + (record.get(name) or 0)

    def add_all(self, records: Iterable[Mapping[str, Any]]) -> "GroupAccumulator":
        for record in records:
            self.add(record)
        return self

    def records(self) -> List[Dict[str, Any]]:
        return list(self._groups.values())

    def __len__(self) -> int:
        return len(self._groups)


def checkpoint_variant_for(plan: SyncPlan) -> CheckpointVariant:
    if plan.mode == SyncMode.BACKFILL:
        return CheckpointVariant.BACKFILL
    if plan.is_weekly:
        return CheckpointVariant.WEEKLY
    return CheckpointVariant.FORWARD


class SyncJob:
    """
    One dataset's plan/fetch/apply/checkpoint adapter.

    Subclasses set ``dataset`` and ``sum_fields`` and implement ``fetch``.
    ``apply`` groups the fetched records by the results table's key and
    upserts them, so applying the same rows twice stores the same values.
    """

    dataset: DatasetKey
    sum_fields: Tuple[str, ...] = ()

    def __init__(self, policy: DatasetPolicy):
        self.policy = policy

    def plan(self, ctx: SyncContext, checkpoint: Optional[Checkpoint]) -> Optional[SyncPlan]:
        return build_catchup_plan(self.dataset, self.policy, checkpoint, ctx.today())

    def fetch(self, ctx: SyncContext, plan: SyncPlan) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def group(self, ctx: SyncContext, rows: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        table = ctx.table(self.dataset)
        return GroupAccumulator(table.spec.key_columns, self.sum_fields).add_all(rows).records()

    def apply(self, ctx: SyncContext, plan: SyncPlan, rows: List[Dict[str, Any]]) -> ApplyResult:
        grouped = self.group(ctx, rows)
        if not grouped:
            return ApplyResult(applied=0)
        applied = ctx.table(self.dataset).bulk_upsert(grouped)
        LOGGER.info("[sync_job] %s applied=%s (rows=%s)", plan.describe(), applied, len(rows))
        return ApplyResult(applied=applied)

    def build_next_checkpoint(
        self,
        ctx: SyncContext,
        plan: SyncPlan,
        previous: Optional[Checkpoint],
        fetched_count: int,
    ) -> Checkpoint:
        if plan.is_weekly:
            watermark = plan.range.end
        else:
            watermark = ctx.watermark()
        return Checkpoint(
            key=CheckpointKey(self.dataset, checkpoint_variant_for(plan)),
            cursor_time=plan.range.end,
            cursor_token=previous.cursor_token if previous else None,
            high_watermark_time=watermark,
            updated_at=ctx.now(),
        )


class SnapshotJob(SyncJob):
    """Datasets that mirror the current upstream state; apply replaces the table."""

    def apply(self, ctx: SyncContext, plan: SyncPlan, rows: List[Dict[str, Any]]) -> ApplyResult:
        grouped = self.group(ctx, rows)
        if not grouped:
            LOGGER.warning("[sync_job] %s snapshot came back empty; keeping previous rows", self.dataset.value)
            return ApplyResult(applied=0)
        applied = ctx.table(self.dataset).replace_all(grouped)
        LOGGER.info("[sync_job] %s snapshot replaced rows=%s", self.dataset.value, applied)
        return ApplyResult(applied=applied)
