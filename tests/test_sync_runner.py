from __future__ import annotations

import sqlite3
import threading
from datetime import date

import pytest

from conftest import report_row
from wbsync.dates import DAILY, WEEKLY, DateRange
from wbsync.models import CheckpointKey, CheckpointVariant, DatasetKey, SyncMode, SyncPlan
from wbsync.runner import SyncInProgressError
from wbsync.wb_api import UpstreamUnavailableError

TODAY = date(2024, 2, 7)


def test_run_applies_then_checkpoints_then_records_period(make_session, fake_client, events):
    fake_client.report_rows = [report_row(1, "2024-01-30"), report_row(2, "2024-02-05")]
    session = make_session(TODAY)
    plan = SyncPlan(DatasetKey.SALES, DateRange(date(2024, 1, 29), date(2024, 2, 6)), SyncMode.CATCHUP)

    result = session.runner.run_with_plan(plan)

    kinds = [e.kind for e in events if e.dataset == DatasetKey.SALES]
    assert kinds.index("apply") < kinds.index("checkpoint")
    assert result.applied == 2
    assert result.checkpoint.cursor_time == date(2024, 2, 6)
    assert session.ctx.checkpoints.get(CheckpointKey(DatasetKey.SALES)).cursor_time == date(2024, 2, 6)
    assert session.ctx.periods.is_covered(DatasetKey.SALES, plan.range)


def test_empty_window_still_counts_as_loaded(make_session, fake_client):
    session = make_session(TODAY)
    week = DateRange(date(2024, 1, 22), date(2024, 1, 28))

    result = session.runner.run_with_plan(SyncPlan(DatasetKey.RETURNS, week, SyncMode.REFRESH, WEEKLY))

    assert result.fetched == 0
    assert result.applied == 0
    periods = session.ctx.periods.list_for_dataset(DatasetKey.RETURNS)
    assert [(p.period_type, p.record_count) for p in periods] == [(WEEKLY, 0)]
    weekly = session.ctx.checkpoints.get(CheckpointKey(DatasetKey.RETURNS, CheckpointVariant.WEEKLY))
    assert weekly.cursor_time == week.end
    assert weekly.high_watermark_time == week.end


def test_failed_fetch_leaves_no_checkpoint_or_period(make_session, fake_client):
    fake_client.errors["fetch_report_page"] = [UpstreamUnavailableError("502", status_code=502)]
    session = make_session(TODAY)
    plan = SyncPlan(DatasetKey.SALES, DateRange(date(2024, 2, 5), date(2024, 2, 6)), SyncMode.REFRESH)

    with pytest.raises(UpstreamUnavailableError):
        session.runner.run_with_plan(plan)

    assert session.ctx.checkpoints.list_all() == []
    assert session.ctx.periods.list_for_dataset(DatasetKey.SALES) == []
    assert not session.runner.is_running(DatasetKey.SALES)


def test_period_bookkeeping_failure_fails_the_run_and_replays_cleanly(make_session, fake_client, monkeypatch):
    fake_client.report_rows = [report_row(1, "2024-02-05")]
    session = make_session(TODAY)
    plan = SyncPlan(DatasetKey.SALES, DateRange(date(2024, 2, 5), date(2024, 2, 6)), SyncMode.REFRESH)

    def broken_add(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    with monkeypatch.context() as patch:
        patch.setattr(session.ctx.periods, "add", broken_add)
        with pytest.raises(sqlite3.OperationalError):
            session.runner.run_with_plan(plan)

    assert session.ctx.checkpoints.get(CheckpointKey(DatasetKey.SALES)).cursor_time == date(2024, 2, 6)
    assert not session.ctx.periods.is_covered(DatasetKey.SALES, plan.range)
    assert not session.runner.is_running(DatasetKey.SALES)

    result = session.runner.run_with_plan(plan)
    assert result.applied == 1
    assert session.ctx.table(DatasetKey.SALES).count() == 1
    assert session.ctx.periods.is_covered(DatasetKey.SALES, plan.range)


def test_second_run_for_same_dataset_is_rejected_while_first_is_active(make_session, fake_client):
    session = make_session(TODAY)
    entered = threading.Event()
    release = threading.Event()
    job = session.jobs[DatasetKey.SALES]
    real_fetch = job.fetch

    def slow_fetch(ctx, plan):
        entered.set()
        release.wait(timeout=5)
        return real_fetch(ctx, plan)

    job.fetch = slow_fetch
    plan = SyncPlan(DatasetKey.SALES, DateRange(date(2024, 2, 5), date(2024, 2, 6)), SyncMode.REFRESH)
    worker = threading.Thread(target=session.runner.run_with_plan, args=(plan,))
    worker.start()
    try:
        assert entered.wait(timeout=5)
        assert session.runner.is_running("sales")
        with pytest.raises(SyncInProgressError):
            session.runner.run_with_plan(plan)
        # other datasets are not blocked
        session.runner.run_with_plan(SyncPlan(DatasetKey.RETURNS, plan.range, SyncMode.REFRESH))
    finally:
        release.set()
        worker.join(timeout=5)
    assert not session.runner.is_running("sales")


def test_run_without_plan_returns_none(make_session, fake_client, events):
    session = make_session(TODAY, policy_overrides={"returns": {"max_history_days": 2}})
    first = session.runner.run(DatasetKey.RETURNS)
    assert first.plan.range == DateRange(date(2024, 2, 5), date(2024, 2, 6))

    assert session.runner.run(DatasetKey.RETURNS) is None
    assert events[-1].kind == "plan"
    assert events[-1].detail == {"plan": None}


def test_run_with_overlap_uses_trailing_refresh_window(make_session, fake_client):
    session = make_session(TODAY)
    result = session.runner.run(DatasetKey.RETURNS, overlap_days=3)
    assert result.plan.mode == SyncMode.REFRESH
    assert result.plan.granularity == DAILY
    assert result.plan.range == DateRange(date(2024, 2, 4), date(2024, 2, 6))


def test_unknown_dataset_is_rejected(make_session):
    session = make_session(TODAY)
    with pytest.raises(ValueError):
        session.runner.run("orders")
