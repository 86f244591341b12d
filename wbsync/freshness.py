"""
Freshness reporting and gap catch-up, plus the weekly report readiness probe.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from wbsync.dates import DateRange, build_sync_ranges_for_window, default_high_watermark, last_closed_week_range
from wbsync.models import DATED_DATASETS, DatasetKey, coerce_dataset
from wbsync.policy import DatasetPolicy, policy_for
from wbsync.state import LoadedPeriodRegistry
from wbsync.wb_api import UpstreamApiError, WbApiClient
from wbsync.week_sync import ProgressCallback, WeekSyncCoordinator, WeekSyncResult

logger = logging.getLogger("data_freshness")


class DataFreshnessService:
    def __init__(
        self,
        periods: LoadedPeriodRegistry,
        policies: Mapping[DatasetKey, DatasetPolicy],
        today: Callable[[], date],
    ):
        self.periods = periods
        self.policies = dict(policies)
        self.today = today

    def _first_missing_day(self, dataset: DatasetKey, watermark: date) -> date:
        latest = self.periods.latest_end(dataset)
        if latest is not None:
            return latest + timedelta(days=1)
        policy = policy_for(self.policies, dataset)
        if policy.backfill_lower_bound:
            return policy.backfill_lower_bound
        history = policy.max_history_days or 365
        return watermark - timedelta(days=history - 1)

    def get_missing_ranges(self, datasets: Optional[Sequence[Any]] = None) -> Dict[DatasetKey, DateRange]:
        """Per dataset, the days between its latest loaded period and the watermark."""
        watermark = default_high_watermark(self.today())
        keys = [coerce_dataset(d) for d in datasets] if datasets else list(DATED_DATASETS)
        missing: Dict[DatasetKey, DateRange] = {}
        for dataset in keys:
            if dataset not in DATED_DATASETS:
                continue
            start = self._first_missing_day(dataset, watermark)
            if start > watermark:
                continue
            missing[dataset] = DateRange(start, watermark)
        return missing


class DataFreshnessCatchupService:
    """Closes the gaps reported by DataFreshnessService through the week-sync core."""

    def __init__(self, freshness: DataFreshnessService, coordinator: WeekSyncCoordinator):
        self.freshness = freshness
        self.coordinator = coordinator

    def run(
        self,
        datasets: Optional[Sequence[Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Optional[WeekSyncResult]:
        missing = self.freshness.get_missing_ranges(datasets)
        if not missing:
            logger.info("[data_freshness] all datasets up to date")
            return None
        start = min(r.start for r in missing.values())
        end = max(r.end for r in missing.values())
        ranges = build_sync_ranges_for_window(start, end)
        logger.info(
            "[data_freshness] catching up %s over %s..%s (%s windows)",
            [d.value for d in missing],
            start,
            end,
            len(ranges),
        )
        return self.coordinator.run_ranges(ranges, list(missing), use_resume=False, on_progress=on_progress)


@dataclass(frozen=True)
class WeeklyReadiness:
    ready: bool
    reason: str
    week: DateRange
    detail: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ready": self.ready,
            "reason": self.reason,
            "week": self.week.label(),
            "detail": self.detail,
        }


class WeeklyReportReadinessService:
    """Probe whether the upstream weekly finance report for the last closed week exists yet."""

    def __init__(self, client: WbApiClient, today: Callable[[], date], lower_bound: date):
        self.client = client
        self.today = today
        self.lower_bound = lower_bound

    def check(self) -> WeeklyReadiness:
        week = last_closed_week_range(self.today())
        if week.start < self.lower_bound:
            return WeeklyReadiness(ready=False, reason="before_lower_bound", week=week)
        try:
            page = self.client.fetch_report_page(
                week.start.isoformat(),
                week.end.isoformat(),
                period="weekly",
                rrd_id=0,
                limit=1,
            )
        except UpstreamApiError as exc:
            logger.warning("[data_freshness] readiness probe for %s failed: %s", week.label(), exc)
            return WeeklyReadiness(ready=False, reason="error", week=week, detail=str(exc))
        if not page:
            return WeeklyReadiness(ready=False, reason="no_data", week=week)
        return WeeklyReadiness(ready=True, reason="ready", week=week)
