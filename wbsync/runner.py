"""
Runs one dataset job against one plan:
fetch -> apply -> advance checkpoint -> record loaded period.

The checkpoint only moves after apply has committed. Apply is an upsert on
natural keys, so a crash between the two is safe to replay.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from threading import Lock
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set

from wbsync.job_base import SyncContext, SyncJob, checkpoint_variant_for
from wbsync.models import CheckpointKey, DatasetKey, SyncPlan, SyncRunResult, coerce_dataset
from wbsync.planning import build_refresh_plan

logger = logging.getLogger("sync_runner")


class SyncInProgressError(RuntimeError):
    """A run for this dataset is already executing."""


class SyncRunner:
    def __init__(self, ctx: SyncContext, jobs: Mapping[DatasetKey, SyncJob]):
        self.ctx = ctx
        self.jobs: Dict[DatasetKey, SyncJob] = dict(jobs)
        self._lock = Lock()
        self._in_flight: Set[DatasetKey] = set()

    def job_for(self, dataset) -> SyncJob:
        key = coerce_dataset(dataset)
        try:
            return self.jobs[key]
        except KeyError as exc:
            raise KeyError(f"No job registered for dataset {key.value}") from exc

    def is_running(self, dataset) -> bool:
        with self._lock:
            return coerce_dataset(dataset) in self._in_flight

    @contextmanager
    def _single_flight(self, dataset: DatasetKey) -> Iterator[None]:
        with self._lock:
            if dataset in self._in_flight:
                raise SyncInProgressError(f"Sync already running for {dataset.value}")
            self._in_flight.add(dataset)
        try:
            yield
        finally:
            with self._lock:
                self._in_flight.discard(dataset)

    def run(self, dataset, overlap_days: Optional[int] = None) -> Optional[SyncRunResult]:
        """
        Plan and execute one run. With ``overlap_days`` a refresh plan over the
        trailing window is used instead of the job's own plan. Returns None
        when there is nothing to do.
        """
        key = coerce_dataset(dataset)
        job = self.job_for(key)
        with self._single_flight(key):
            previous = self.ctx.checkpoints.get(CheckpointKey(key))
            if overlap_days:
                plan = build_refresh_plan(key, job.policy, self.ctx.today(), overlap_days)
            else:
                plan = job.plan(self.ctx, previous)
            if plan is None:
                logger.info("[sync_runner] %s: no plan (up to date)", key.value)
                self.ctx.emit("plan", key, plan=None)
                return None
            return self._execute(job, plan)

    def run_with_plan(self, plan: SyncPlan) -> SyncRunResult:
        job = self.job_for(plan.dataset)
        with self._single_flight(plan.dataset):
            return self._execute(job, plan)

    def apply_prefetched(self, plan: SyncPlan, rows: List[Dict[str, Any]], fetched_count: int) -> SyncRunResult:
        """Apply rows fetched elsewhere (shared report stream) with the same bookkeeping."""
        job = self.job_for(plan.dataset)
        with self._single_flight(plan.dataset):
            return self._commit(job, plan, rows, fetched_count, time.monotonic())

    def _execute(self, job: SyncJob, plan: SyncPlan) -> SyncRunResult:
        started = time.monotonic()
        logger.info("[sync_runner] start %s", plan.describe())
        self.ctx.emit("plan", plan.dataset, plan=plan.describe())
        rows = job.fetch(self.ctx, plan)
        return self._commit(job, plan, rows, len(rows), started)

    def _commit(
        self,
        job: SyncJob,
        plan: SyncPlan,
        rows: List[Dict[str, Any]],
        fetched_count: int,
        started: float,
    ) -> SyncRunResult:
        ctx = self.ctx
        applied = job.apply(ctx, plan, rows).applied
        ctx.emit("apply", plan.dataset, plan=plan.describe(), fetched=fetched_count, applied=applied)

        key = CheckpointKey(plan.dataset, checkpoint_variant_for(plan))
        previous = ctx.checkpoints.get(key)
        checkpoint = ctx.checkpoints.advance(job.build_next_checkpoint(ctx, plan, previous, fetched_count))
        ctx.emit(
            "checkpoint",
            plan.dataset,
            variant=key.variant.value,
            cursor=checkpoint.cursor_time.isoformat() if checkpoint.cursor_time else None,
        )

        try:
            ctx.periods.add(plan.dataset, plan.granularity, plan.range, applied)
        except sqlite3.Error:
            # rows and checkpoint are already committed; replaying the plan re-records it
            logger.error(
                "[sync_runner] %s: failed to record loaded period", plan.describe(), exc_info=True
            )
            raise

        elapsed = time.monotonic() - started
        logger.info(
            "[sync_runner] done %s fetched=%s applied=%s cursor=%s in %.1fs",
            plan.describe(),
            fetched_count,
            applied,
            checkpoint.cursor_time,
            elapsed,
        )
        return SyncRunResult(
            plan=plan,
            fetched=fetched_count,
            applied=applied,
            checkpoint=checkpoint,
            elapsed_seconds=elapsed,
        )
