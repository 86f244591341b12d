"""
Composes runner calls into waves and ticks.

- priority wave: trailing priority window for every configured dataset,
  branches run concurrently; the finance datasets other than sales share one
  report stream.
- catch-up tick: a bounded number of forward chunks.
- refresh wave: trailing overlap window per dataset.
- backfill tick: one closed week behind the backfill cursor.

Per-dataset failures are collected, logged and returned; a wave only raises
when nothing succeeded.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from wbsync.async_utils import run_branches
from wbsync.dates import (
    WEEKLY,
    add_days,
    build_sync_ranges_for_window,
    default_high_watermark,
    is_week_closed,
)
from wbsync.finance_jobs import FinanceBatch
from wbsync.models import (
    FINANCE_DATASETS,
    SNAPSHOT_DATASETS,
    BackfillProgress,
    CheckpointKey,
    CheckpointVariant,
    DatasetKey,
    SyncMode,
    SyncPlan,
    SyncRunResult,
    coerce_dataset,
)
from wbsync.planning import (
    build_closed_week_plan,
    build_sales_plan,
    get_sales_backfill_progress,
    plan_for_mode,
    resolve_lower_bound,
)
from wbsync.policy import DatasetPolicy, policy_for
from wbsync.runner import SyncInProgressError, SyncRunner

logger = logging.getLogger("sync_orchestrator")

# Finance datasets that ride the shared batch in the priority wave; sales
# runs its own branch because it also owns the closed-week weekly plan.
BATCHED_FINANCE_DATASETS = tuple(d for d in FINANCE_DATASETS if d != DatasetKey.SALES)


def _summarize(run: SyncRunResult) -> Dict[str, Any]:
    return {
        "plan": run.plan.describe(),
        "fetched": run.fetched,
        "applied": run.applied,
        "cursor": run.checkpoint.cursor_time.isoformat() if run.checkpoint and run.checkpoint.cursor_time else None,
        "elapsed_seconds": round(run.elapsed_seconds, 2),
    }


@dataclass
class WaveResult:
    mode: SyncMode
    runs: Dict[DatasetKey, List[SyncRunResult]] = field(default_factory=dict)
    skipped: Dict[DatasetKey, List[str]] = field(default_factory=dict)
    errors: Dict[DatasetKey, str] = field(default_factory=dict)
    datasets: List[DatasetKey] = field(default_factory=list)
    done: bool = False

    def add_run(self, run: Optional[SyncRunResult]) -> None:
        if run is not None:
            self.runs.setdefault(run.plan.dataset, []).append(run)

    def add_skip(self, dataset: DatasetKey, reason: str) -> None:
        self.skipped.setdefault(dataset, []).append(reason)

    @property
    def succeeded(self) -> List[DatasetKey]:
        return [d for d in self.datasets if d not in self.errors]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "done": self.done,
            "runs": {d.value: [_summarize(r) for r in runs] for d, runs in self.runs.items()},
            "skipped": {d.value: reasons for d, reasons in self.skipped.items()},
            "errors": {d.value: msg for d, msg in self.errors.items()},
        }


class WaveFailedError(RuntimeError):
    def __init__(self, result: WaveResult):
        self.result = result
        self.errors = dict(result.errors)
        names = ", ".join(f"{d.value}: {msg}" for d, msg in self.errors.items())
        super().__init__(f"{result.mode.value} wave failed for every dataset ({names})")


@dataclass
class BackfillTickResult:
    dataset: DatasetKey
    run: Optional[SyncRunResult]
    progress: BackfillProgress

    def as_dict(self) -> Dict[str, Any]:
        return {
            "dataset": self.dataset.value,
            "run": _summarize(self.run) if self.run else None,
            "progress": self.progress.as_dict(),
        }


class SyncOrchestrator:
    def __init__(
        self,
        runner: SyncRunner,
        policies: Mapping[DatasetKey, DatasetPolicy],
        priority_datasets: Optional[Sequence[DatasetKey]] = None,
        max_concurrency: int = 4,
        max_catchup_runs_per_tick: int = 3,
    ):
        self.runner = runner
        self.ctx = runner.ctx
        self.policies = dict(policies)
        datasets = priority_datasets if priority_datasets is not None else list(runner.jobs)
        self.priority_datasets = [coerce_dataset(d) for d in datasets if coerce_dataset(d) in runner.jobs]
        self.max_concurrency = max_concurrency
        self.max_catchup_runs_per_tick = max_catchup_runs_per_tick

    def _policy(self, dataset: DatasetKey) -> DatasetPolicy:
        return policy_for(self.policies, dataset)

    def _sales_weekly_loaded(self, window) -> bool:
        return self.ctx.periods.has_weekly_coverage(DatasetKey.SALES, window)

    def _finish(self, result: WaveResult) -> WaveResult:
        if result.errors and not result.succeeded:
            logger.error("[sync_orchestrator] %s wave: every dataset failed", result.mode.value)
            raise WaveFailedError(result)
        if result.errors:
            logger.warning(
                "[sync_orchestrator] %s wave partial: ok=%s failed=%s",
                result.mode.value,
                [d.value for d in result.succeeded],
                [d.value for d in result.errors],
            )
        else:
            logger.info(
                "[sync_orchestrator] %s wave ok: %s",
                result.mode.value,
                [d.value for d in result.runs],
            )
        return result

    def _record_error(self, result: WaveResult, dataset: DatasetKey, exc: BaseException) -> None:
        result.errors[dataset] = f"{type(exc).__name__}: {exc}"
        self.ctx.emit("error", dataset, error=str(exc), mode=result.mode.value)

    # ---------------- priority wave ----------------

    def _finance_batch_branch(self, datasets: Sequence[DatasetKey]) -> List[SyncRunResult]:
        today = self.ctx.today()
        watermark = default_high_watermark(today)
        days = max(self._policy(d).priority_days for d in datasets)
        batch_runs: List[SyncRunResult] = []
        for sync_range in build_sync_ranges_for_window(add_days(watermark, 1 - days), watermark):
            target = list(datasets)
            if sync_range.period_type == WEEKLY and is_week_closed(sync_range.range.start, today):
                target = [d for d in datasets if not self.ctx.periods.is_covered(d, sync_range.range)]
                for covered in (d for d in datasets if d not in target):
                    self.ctx.emit("skip", covered, window=sync_range.range.label(), reason="covered")
                if not target:
                    logger.info("[sync_orchestrator] finance batch %s already loaded", sync_range.range.label())
                    continue
            grouped, ledger_rows = FinanceBatch(target).fetch_fanout(self.ctx, sync_range.range, sync_range.period_type)
            for dataset in target:
                plan = SyncPlan(
                    dataset=dataset,
                    range=sync_range.range,
                    mode=SyncMode.REFRESH,
                    granularity=sync_range.period_type,
                    overlap_days=days,
                )
                batch_runs.append(self.runner.apply_prefetched(plan, grouped[dataset], len(grouped[dataset])))
            logger.info(
                "[sync_orchestrator] finance batch %s/%s ledger_rows=%s datasets=%s",
                sync_range.range.label(),
                sync_range.period_type,
                ledger_rows,
                [d.value for d in target],
            )
        return batch_runs

    def _sales_branch(self) -> List[SyncRunResult]:
        plans = build_sales_plan(self._policy(DatasetKey.SALES), self.ctx.today(), self._sales_weekly_loaded)
        return [self.runner.run_with_plan(plan) for plan in plans]

    def _dataset_plan(self, dataset: DatasetKey, mode: SyncMode) -> Optional[SyncPlan]:
        if dataset in SNAPSHOT_DATASETS:
            return self.runner.job_for(dataset).plan(self.ctx, self.ctx.checkpoints.get(CheckpointKey(dataset)))
        return plan_for_mode(mode, dataset, self._policy(dataset), None, self.ctx.today())

    def _single_branch(self, dataset: DatasetKey) -> List[SyncRunResult]:
        plan = self._dataset_plan(dataset, SyncMode.PRIORITY)
        return [self.runner.run_with_plan(plan)] if plan else []

    async def run_priority_wave_async(self) -> WaveResult:
        result = WaveResult(mode=SyncMode.PRIORITY, datasets=list(self.priority_datasets))
        batched = [d for d in self.priority_datasets if d in BATCHED_FINANCE_DATASETS]

        branches: Dict[str, Any] = {}
        owners: Dict[str, List[DatasetKey]] = {}
        if batched:
            branches["finance_batch"] = lambda: self._finance_batch_branch(batched)
            owners["finance_batch"] = batched
        for dataset in self.priority_datasets:
            if dataset in batched:
                continue
            if dataset == DatasetKey.SALES:
                branches[dataset.value] = self._sales_branch
            else:
                branches[dataset.value] = lambda d=dataset: self._single_branch(d)
            owners[dataset.value] = [dataset]

        logger.info("[sync_orchestrator] priority wave branches=%s", list(branches))
        outcomes = await run_branches(branches, max_concurrency=self.max_concurrency)
        for name, outcome in outcomes.items():
            if isinstance(outcome, BaseException):
                logger.error("[sync_orchestrator] priority branch %s failed: %s", name, outcome, exc_info=outcome)
                for dataset in owners[name]:
                    self._record_error(result, dataset, outcome)
                continue
            for run in outcome:
                result.add_run(run)
        result.done = True
        return self._finish(result)

    def run_priority_wave(self) -> WaveResult:
        return asyncio.run(self.run_priority_wave_async())

    # ---------------- catch-up / refresh ----------------

    def run_catchup_tick(self) -> WaveResult:
        candidates = [d for d in self.priority_datasets if d not in SNAPSHOT_DATASETS]
        result = WaveResult(mode=SyncMode.CATCHUP, datasets=candidates)
        runs = 0
        idle = 0
        for dataset in candidates:
            if runs >= self.max_catchup_runs_per_tick:
                break
            try:
                run = self.runner.run(dataset)
            except SyncInProgressError as exc:
                result.add_skip(dataset, str(exc))
                continue
            except Exception as exc:
                logger.error("[sync_orchestrator] catch-up %s failed", dataset.value, exc_info=True)
                self._record_error(result, dataset, exc)
                continue
            if run is None:
                idle += 1
                continue
            runs += 1
            result.add_run(run)
        result.done = idle == len(candidates)
        logger.info("[sync_orchestrator] catch-up tick runs=%s idle=%s done=%s", runs, idle, result.done)
        return self._finish(result)

    def run_refresh_wave(self) -> WaveResult:
        result = WaveResult(mode=SyncMode.REFRESH, datasets=list(self.priority_datasets))
        today = self.ctx.today()
        for dataset in self.priority_datasets:
            plans: List[SyncPlan] = []
            plan = self._dataset_plan(dataset, SyncMode.REFRESH)
            if plan is not None:
                plans.append(plan)
            if dataset == DatasetKey.SALES:
                weekly = build_closed_week_plan(DatasetKey.SALES, today)
                if weekly is not None and not self._sales_weekly_loaded(weekly.range):
                    plans.append(weekly)
            try:
                for item in plans:
                    result.add_run(self.runner.run_with_plan(item))
            except SyncInProgressError as exc:
                result.add_skip(dataset, str(exc))
            except Exception as exc:
                logger.error("[sync_orchestrator] refresh %s failed", dataset.value, exc_info=True)
                self._record_error(result, dataset, exc)
        result.done = True
        return self._finish(result)

    # ---------------- backfill ----------------

    def backfill_progress(self, dataset=DatasetKey.SALES) -> BackfillProgress:
        key = coerce_dataset(dataset)
        policy = self._policy(key)
        lower_bound = resolve_lower_bound(policy)
        if not policy.backfill_enabled:
            return BackfillProgress(
                lower_bound=lower_bound,
                weeks_done=0,
                weeks_total=0,
                weeks_remaining=0,
                percent=100,
                completed=True,
            )
        checkpoint = self.ctx.checkpoints.get(CheckpointKey(key, CheckpointVariant.BACKFILL))
        return get_sales_backfill_progress(checkpoint, self.ctx.today(), lower_bound)

    def run_backfill_tick(self, dataset=DatasetKey.SALES) -> BackfillTickResult:
        key = coerce_dataset(dataset)
        policy = self._policy(key)
        if not policy.backfill_enabled:
            logger.info("[sync_orchestrator] backfill disabled for %s", key.value)
            return BackfillTickResult(dataset=key, run=None, progress=self.backfill_progress(key))

        checkpoint = self.ctx.checkpoints.get(CheckpointKey(key, CheckpointVariant.BACKFILL))
        plan = plan_for_mode(SyncMode.BACKFILL, key, policy, checkpoint, self.ctx.today())
        run = None
        if plan is None:
            logger.info("[sync_orchestrator] backfill %s: nothing to do", key.value)
        else:
            run = self.runner.run_with_plan(plan)
        progress = self.backfill_progress(key)
        logger.info(
            "[sync_orchestrator] backfill %s progress %s/%s (%s%%)",
            key.value,
            progress.weeks_done,
            progress.weeks_total,
            progress.percent,
        )
        return BackfillTickResult(dataset=key, run=run, progress=progress)
