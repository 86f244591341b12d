"""
Week-by-week historical sweep across several datasets.

Walks from the still-open current week back to the lower bound, newest
first, skipping (dataset, window) pairs the loaded-period log already
covers. Finance datasets share one report fetch per window. A resume cursor
in sync_registry lets an interrupted sweep continue where it stopped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from wbsync.dates import (
    DAILY,
    WEEKLY,
    DateRange,
    SyncRange,
    build_weeks,
    default_high_watermark,
    iter_days,
    parse_date,
)
from wbsync.finance_jobs import FinanceBatch
from wbsync.models import (
    DATED_DATASETS,
    FINANCE_DATASETS,
    DatasetKey,
    SyncMode,
    SyncPlan,
    coerce_dataset,
)
from wbsync.runner import SyncRunner
from wbsync.wb_api import AuthorizationError

logger = logging.getLogger("week_sync")

ProgressCallback = Callable[[int, int, str], None]

RESUME_KEY_PREFIX = "week_sync_resume:"

# Fetched one day at a time inside a week; coverage is recorded daily.
DAY_BY_DAY_DATASETS = (DatasetKey.ADV_COSTS, DatasetKey.PRODUCT_ORDERS)


def resume_key(datasets: Iterable[DatasetKey]) -> str:
    return RESUME_KEY_PREFIX + ",".join(sorted(d.value for d in datasets))


@dataclass
class WeekSyncResult:
    datasets: List[DatasetKey]
    windows_total: int = 0
    windows_processed: int = 0
    windows_skipped: int = 0
    runs: int = 0
    failed: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "datasets": [d.value for d in self.datasets],
            "windows_total": self.windows_total,
            "windows_processed": self.windows_processed,
            "windows_skipped": self.windows_skipped,
            "runs": self.runs,
            "failed": list(self.failed),
        }


class WeekSyncCoordinator:
    def __init__(
        self,
        runner: SyncRunner,
        lower_bound: Optional[date] = None,
        max_attempts: int = 5,
        initial_delay_seconds: float = 1.5,
        max_delay_seconds: float = 15.0,
        range_delay_seconds: float = 1.0,
    ):
        self.runner = runner
        self.ctx = runner.ctx
        self.lower_bound = lower_bound or self.ctx.settings.backfill_lower_bound
        self.max_attempts = max(1, max_attempts)
        self.initial_delay_seconds = initial_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.range_delay_seconds = range_delay_seconds

    def build_windows(self) -> List[SyncRange]:
        """Open current week (daily, clamped to the watermark) then closed weeks, newest first."""
        today = self.ctx.today()
        watermark = default_high_watermark(today)
        current, weeks = build_weeks(today, self.lower_bound)
        windows: List[SyncRange] = []
        if current.start <= watermark:
            windows.append(SyncRange(DateRange(current.start, min(current.end, watermark)), DAILY))
        windows.extend(SyncRange(week, WEEKLY) for week in weeks)
        return windows

    def run(self, datasets: Sequence[Any], on_progress: Optional[ProgressCallback] = None) -> WeekSyncResult:
        return self.run_ranges(self.build_windows(), datasets, use_resume=True, on_progress=on_progress)

    def run_ranges(
        self,
        ranges: Sequence[SyncRange],
        datasets: Sequence[Any],
        use_resume: bool = True,
        on_progress: Optional[ProgressCallback] = None,
    ) -> WeekSyncResult:
        keys = self._dated(datasets)
        result = WeekSyncResult(datasets=keys, windows_total=len(ranges))
        if not keys:
            logger.warning("[week_sync] no dated datasets requested; nothing to do")
            return result

        cursor_key = resume_key(keys)
        resume_from = self._load_resume(cursor_key) if use_resume else None
        if resume_from:
            logger.info("[week_sync] resuming %s below %s", cursor_key, resume_from)

        failed_earlier = False
        made_requests = False
        for index, window in enumerate(ranges, start=1):
            label = f"{window.range.label()} ({window.period_type})"
            if resume_from and window.range.start >= resume_from:
                result.windows_skipped += 1
                self._progress(on_progress, index, len(ranges), label)
                continue

            if made_requests and self.range_delay_seconds:
                self.ctx.sleep(self.range_delay_seconds)

            ok, runs = self._run_with_retry(window, keys)
            made_requests = runs > 0 or not ok
            result.runs += runs
            if ok:
                if runs:
                    result.windows_processed += 1
                else:
                    result.windows_skipped += 1
                if use_resume and not failed_earlier:
                    self.ctx.registry.set(cursor_key, window.range.start.isoformat())
            else:
                failed_earlier = True
                result.failed.append(window.range.label())
            self._progress(on_progress, index, len(ranges), label)

        if use_resume and not result.failed:
            self.ctx.registry.delete(cursor_key)
        logger.info(
            "[week_sync] done datasets=%s processed=%s skipped=%s failed=%s",
            [d.value for d in keys],
            result.windows_processed,
            result.windows_skipped,
            result.failed,
        )
        return result

    @staticmethod
    def _dated(datasets: Sequence[Any]) -> List[DatasetKey]:
        keys: List[DatasetKey] = []
        for item in datasets:
            key = coerce_dataset(item)
            if key not in DATED_DATASETS:
                logger.info("[week_sync] %s is a snapshot dataset; skipped", key.value)
                continue
            if key not in keys:
                keys.append(key)
        return keys

    def _load_resume(self, cursor_key: str) -> Optional[date]:
        value = self.ctx.registry.get(cursor_key)
        if not value:
            return None
        try:
            return parse_date(value)
        except ValueError:
            logger.warning("[week_sync] ignoring unreadable resume cursor %r", value)
            return None

    @staticmethod
    def _progress(on_progress: Optional[ProgressCallback], current: int, total: int, label: str) -> None:
        if on_progress is not None:
            on_progress(current, total, label)

    def _run_with_retry(self, window: SyncRange, datasets: Sequence[DatasetKey]):
        delay = self.initial_delay_seconds
        for attempt in range(1, self.max_attempts + 1):
            try:
                return True, self._process_window(window, datasets)
            except AuthorizationError:
                raise
            except Exception as exc:
                if attempt >= self.max_attempts:
                    logger.error(
                        "[week_sync] %s failed after %s attempts; skipping",
                        window.range.label(),
                        attempt,
                        exc_info=True,
                    )
                    self.ctx.emit("error", None, window=window.range.label(), error=str(exc))
                    return False, 0
                logger.warning(
                    "[week_sync] %s attempt %s/%s failed (%s); retrying in %.1fs",
                    window.range.label(),
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                self.ctx.sleep(delay)
                delay = min(delay * 2, self.max_delay_seconds)
        return False, 0

    def _covered(self, dataset: DatasetKey, window: DateRange) -> bool:
        return self.ctx.periods.is_covered(dataset, window)

    def _process_window(self, window: SyncRange, datasets: Sequence[DatasetKey]) -> int:
        """Returns the number of runner calls made for this window."""
        needed = [d for d in datasets if not self._covered(d, window.range)]
        for covered in (d for d in datasets if d not in needed):
            self.ctx.emit("skip", covered, window=window.range.label(), reason="covered")
        if not needed:
            logger.info("[week_sync] %s already loaded for all datasets", window.range.label())
            return 0

        runs = 0
        finance = [d for d in needed if d in FINANCE_DATASETS]
        if finance:
            grouped, _ = FinanceBatch(finance).fetch_fanout(self.ctx, window.range, window.period_type)
            for dataset in finance:
                plan = SyncPlan(dataset=dataset, range=window.range, mode=SyncMode.BACKFILL, granularity=window.period_type)
                self.runner.apply_prefetched(plan, grouped[dataset], len(grouped[dataset]))
                runs += 1

        for dataset in needed:
            if dataset in FINANCE_DATASETS:
                continue
            if dataset in DAY_BY_DAY_DATASETS:
                for day in iter_days(window.range):
                    day_range = DateRange(day, day)
                    if self._covered(dataset, day_range):
                        continue
                    self.runner.run_with_plan(
                        SyncPlan(dataset=dataset, range=day_range, mode=SyncMode.BACKFILL, granularity=DAILY)
                    )
                    runs += 1
                continue
            self.runner.run_with_plan(
                SyncPlan(dataset=dataset, range=window.range, mode=SyncMode.BACKFILL, granularity=window.period_type)
            )
            runs += 1
        logger.info(
            "[week_sync] %s (%s) loaded %s",
            window.range.label(),
            window.period_type,
            [d.value for d in needed],
        )
        return runs
