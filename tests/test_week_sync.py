from __future__ import annotations

from datetime import date

import pytest

from wbsync.dates import DAILY, WEEKLY, DateRange
from wbsync.models import DatasetKey
from wbsync.wb_api import AuthorizationError, UpstreamUnavailableError
from wbsync.week_sync import WeekSyncCoordinator, resume_key

TODAY = date(2024, 2, 7)
OPEN_WEEK = DateRange(date(2024, 2, 5), date(2024, 2, 6))
LAST_WEEK = DateRange(date(2024, 1, 29), date(2024, 2, 4))
OLDEST_WEEK = DateRange(date(2024, 1, 22), date(2024, 1, 28))


def _coordinator(session, **overrides):
    params = dict(max_attempts=3, initial_delay_seconds=2, max_delay_seconds=3, range_delay_seconds=0)
    params.update(overrides)
    return WeekSyncCoordinator(session.runner, **params)


def test_windows_run_newest_first_from_open_week(make_session):
    session = make_session(TODAY)
    windows = _coordinator(session).build_windows()
    assert [(w.range, w.period_type) for w in windows] == [
        (OPEN_WEEK, DAILY),
        (LAST_WEEK, WEEKLY),
        (OLDEST_WEEK, WEEKLY),
    ]


def test_open_week_is_left_out_on_monday(make_session):
    session = make_session(date(2024, 2, 5))
    windows = _coordinator(session).build_windows()
    assert windows[0].range == LAST_WEEK


def test_covered_windows_are_skipped_per_dataset(make_session, fake_client, fake_clock, events):
    session = make_session(TODAY)
    session.ctx.periods.add(DatasetKey.SALES, WEEKLY, LAST_WEEK, 4)
    coordinator = _coordinator(session, range_delay_seconds=1)
    progress = []

    result = coordinator.run(["sales", "returns"], on_progress=lambda *args: progress.append(args))

    assert result.windows_total == 3
    assert result.windows_processed == 3
    assert result.runs == 5
    assert [(c[1], c[2]) for c in fake_client.calls_to("fetch_report_page")] == [
        ("2024-02-05", "2024-02-06"),
        ("2024-01-29", "2024-02-04"),
        ("2024-01-22", "2024-01-28"),
    ]
    assert fake_clock.sleeps == [1, 1]
    assert [(current, total) for current, total, _ in progress] == [(1, 3), (2, 3), (3, 3)]
    assert [(e.dataset, e.detail["window"]) for e in events if e.kind == "skip"] == [
        (DatasetKey.SALES, LAST_WEEK.label())
    ]
    assert session.ctx.registry.get(resume_key([DatasetKey.SALES, DatasetKey.RETURNS])) is None

    rerun = coordinator.run(["returns", "sales"])
    assert rerun.runs == 0
    assert rerun.windows_skipped == 3
    assert len(fake_client.calls_to("fetch_report_page")) == 3


def test_resume_cursor_skips_windows_already_swept(make_session, fake_client):
    session = make_session(TODAY)
    session.ctx.registry.set(resume_key([DatasetKey.RETURNS]), LAST_WEEK.start.isoformat())

    result = _coordinator(session).run(["returns"])

    assert result.windows_skipped == 2
    assert [(c[1], c[2]) for c in fake_client.calls_to("fetch_report_page")] == [("2024-01-22", "2024-01-28")]
    assert session.ctx.registry.get(resume_key([DatasetKey.RETURNS])) is None


def test_failed_window_holds_cursor_and_is_retried_next_run(make_session, fake_client, fake_clock):
    session = make_session(TODAY)
    session.ctx.periods.add(DatasetKey.RETURNS, DAILY, OPEN_WEEK, 0)
    fake_client.errors["fetch_report_page"] = [UpstreamUnavailableError("502", status_code=502) for _ in range(3)]
    coordinator = _coordinator(session)
    key = resume_key([DatasetKey.RETURNS])

    first = coordinator.run(["returns"])

    assert first.failed == [LAST_WEEK.label()]
    assert fake_clock.sleeps == [2, 3]
    assert session.ctx.periods.is_covered(DatasetKey.RETURNS, OLDEST_WEEK)
    assert session.ctx.registry.get(key) == OPEN_WEEK.start.isoformat()

    second = coordinator.run(["returns"])

    assert second.failed == []
    assert second.windows_processed == 1
    assert session.ctx.periods.is_covered(DatasetKey.RETURNS, LAST_WEEK)
    assert session.ctx.registry.get(key) is None


def test_authorization_errors_are_not_retried(make_session, fake_client, fake_clock):
    session = make_session(TODAY)
    fake_client.errors["fetch_report_page"] = [AuthorizationError("bad key", status_code=401)]

    with pytest.raises(AuthorizationError):
        _coordinator(session).run(["sales"])

    assert len(fake_client.calls_to("fetch_report_page")) == 1
    assert fake_clock.sleeps == []


def test_day_by_day_datasets_are_requested_per_uncovered_day(make_session, fake_client):
    session = make_session(TODAY)
    session.ctx.periods.add(DatasetKey.ADV_COSTS, DAILY, DateRange(date(2024, 2, 1), date(2024, 2, 1)), 0)

    result = _coordinator(session).run(["adv_costs"])

    days = [c[1] for c in fake_client.calls_to("get_adv_history")]
    assert all(c[1] == c[2] for c in fake_client.calls_to("get_adv_history"))
    assert len(days) == 15
    assert "2024-02-01" not in days
    assert result.runs == 15
    assert session.ctx.periods.is_covered(DatasetKey.ADV_COSTS, LAST_WEEK)


def test_snapshot_datasets_are_ignored(make_session, fake_client):
    session = make_session(TODAY)
    result = _coordinator(session).run(["stocks", "catalog"])
    assert result.datasets == []
    assert result.runs == 0
    assert fake_client.calls == []
