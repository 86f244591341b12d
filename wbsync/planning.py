"""
Pure planning functions: (policy, checkpoint, today) -> SyncPlan | None.

Nothing here touches storage or the network; callers pass "today" in and
read checkpoints/coverage themselves.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Callable, List, Optional

from wbsync.dates import (
    DAILY,
    WEEKLY,
    DateRange,
    backfill_anchor_week,
    count_weeks_between,
    default_high_watermark,
    is_week_closed,
    last_closed_week_range,
    week_range,
    week_start,
)
from wbsync.models import BackfillProgress, Checkpoint, DatasetKey, SyncMode, SyncPlan
from wbsync.policy import DatasetPolicy

DEFAULT_BACKFILL_LOWER_BOUND = date(2024, 1, 29)
UNBOUNDED_HISTORY_FALLBACK_DAYS = 365


def _trailing_window(watermark: date, days: int) -> DateRange:
    return DateRange(watermark - timedelta(days=max(1, days) - 1), watermark)


def build_priority_plan(dataset: DatasetKey, policy: DatasetPolicy, today: date) -> SyncPlan:
    watermark = default_high_watermark(today)
    return SyncPlan(
        dataset=dataset,
        range=_trailing_window(watermark, policy.priority_days),
        mode=SyncMode.REFRESH,
        granularity=DAILY,
        overlap_days=policy.priority_days,
    )


def build_refresh_plan(
    dataset: DatasetKey,
    policy: DatasetPolicy,
    today: date,
    overlap_days: Optional[int] = None,
) -> SyncPlan:
    overlap = overlap_days if overlap_days is not None else policy.refresh_overlap_days
    watermark = default_high_watermark(today)
    return SyncPlan(
        dataset=dataset,
        range=_trailing_window(watermark, overlap),
        mode=SyncMode.REFRESH,
        granularity=DAILY,
        overlap_days=overlap,
    )


def history_floor(policy: DatasetPolicy, watermark: date) -> date:
    """Oldest date forward catch-up will reach for."""
    if policy.max_history_days:
        return watermark - timedelta(days=policy.max_history_days - 1)
    if policy.backfill_lower_bound:
        return policy.backfill_lower_bound
    return watermark - timedelta(days=UNBOUNDED_HISTORY_FALLBACK_DAYS - 1)


def build_catchup_plan(
    dataset: DatasetKey,
    policy: DatasetPolicy,
    checkpoint: Optional[Checkpoint],
    today: date,
) -> Optional[SyncPlan]:
    """Next forward chunk after the checkpoint; None once caught up."""
    watermark = default_high_watermark(today)
    floor = history_floor(policy, watermark)
    if checkpoint and checkpoint.cursor_time:
        start = max(checkpoint.cursor_time + timedelta(days=1), floor)
    else:
        start = floor
    if start > watermark:
        return None
    end = min(start + timedelta(days=policy.catchup_chunk_days - 1), watermark)
    return SyncPlan(dataset=dataset, range=DateRange(start, end), mode=SyncMode.CATCHUP, granularity=DAILY)


def resolve_lower_bound(policy: DatasetPolicy, lower_bound: Optional[date] = None) -> date:
    return lower_bound or policy.backfill_lower_bound or DEFAULT_BACKFILL_LOWER_BOUND


def build_backfill_plan(
    dataset: DatasetKey,
    policy: DatasetPolicy,
    checkpoint: Optional[Checkpoint],
    today: date,
    lower_bound: Optional[date] = None,
) -> Optional[SyncPlan]:
    """One closed week behind the backfill cursor, or None when exhausted."""
    bound = resolve_lower_bound(policy, lower_bound)
    if checkpoint is None:
        target = backfill_anchor_week(today)
    elif checkpoint.cursor_time is None:
        return None
    else:
        target = week_range(checkpoint.cursor_time - timedelta(days=7))
    if target is None:
        return None
    if target.end > default_high_watermark(today):
        return None
    if not is_week_closed(target.start, today):
        return None
    if target.start < bound:
        return None
    return SyncPlan(dataset=dataset, range=target, mode=SyncMode.BACKFILL, granularity=WEEKLY)


def build_sales_backfill_plan(
    policy: DatasetPolicy,
    checkpoint: Optional[Checkpoint],
    today: date,
    lower_bound: Optional[date] = None,
) -> Optional[SyncPlan]:
    return build_backfill_plan(DatasetKey.SALES, policy, checkpoint, today, lower_bound)


def build_closed_week_plan(dataset: DatasetKey, today: date) -> Optional[SyncPlan]:
    week = last_closed_week_range(today)
    if not is_week_closed(week.start, today) or week.end > default_high_watermark(today):
        return None
    return SyncPlan(dataset=dataset, range=week, mode=SyncMode.REFRESH, granularity=WEEKLY)


def build_sales_plan(
    policy: DatasetPolicy,
    today: date,
    weekly_loaded: Callable[[DateRange], bool],
) -> List[SyncPlan]:
    """
    Daily refresh over the priority window, plus a weekly plan for the last
    closed week unless ``weekly_loaded`` reports it as already covered.
    """
    plans = [build_priority_plan(DatasetKey.SALES, policy, today)]
    weekly = build_closed_week_plan(DatasetKey.SALES, today)
    if weekly is not None and not weekly_loaded(weekly.range):
        plans.append(weekly)
    return plans


def plan_for_mode(
    mode: SyncMode,
    dataset: DatasetKey,
    policy: DatasetPolicy,
    checkpoint: Optional[Checkpoint],
    today: date,
) -> Optional[SyncPlan]:
    if mode == SyncMode.PRIORITY:
        return build_priority_plan(dataset, policy, today)
    if mode == SyncMode.REFRESH:
        return build_refresh_plan(dataset, policy, today)
    if mode == SyncMode.CATCHUP:
        return build_catchup_plan(dataset, policy, checkpoint, today)
    if mode == SyncMode.BACKFILL:
        return build_backfill_plan(dataset, policy, checkpoint, today)
    raise ValueError(f"Unknown sync mode {mode!r}")


def _first_monday_on_or_after(value: date) -> date:
    return value + timedelta(days=(7 - value.weekday()) % 7)


def get_sales_backfill_progress(
    checkpoint: Optional[Checkpoint],
    today: date,
    lower_bound: date = DEFAULT_BACKFILL_LOWER_BOUND,
) -> BackfillProgress:
    # Sunday has no backfill target; count against Saturday's anchor week.
    anchor = backfill_anchor_week(today) or backfill_anchor_week(today - timedelta(days=1))

    total = count_weeks_between(_first_monday_on_or_after(lower_bound), anchor.start)
    current_week = None
    done = 0
    if checkpoint and checkpoint.cursor_time:
        current_week = week_range(checkpoint.cursor_time)
        done = min(count_weeks_between(week_start(checkpoint.cursor_time), anchor.start), total)

    remaining = max(total - done, 0)
    percent = 100 if total == 0 else round(done / total * 100)
    percent = max(0, min(100, percent))
    return BackfillProgress(
        lower_bound=lower_bound,
        weeks_done=done,
        weeks_total=total,
        weeks_remaining=remaining,
        percent=percent,
        completed=remaining == 0,
        current_week=current_week,
    )
