from __future__ import annotations

from datetime import date

from conftest import report_row
from wbsync.dates import DAILY, WEEKLY, DateRange
from wbsync.models import DatasetKey
from wbsync.wb_api import UpstreamUnavailableError

TODAY = date(2024, 2, 7)
WATERMARK = date(2024, 2, 6)


def test_missing_ranges_start_after_latest_loaded_period(make_session):
    session = make_session(TODAY)
    freshness = session.freshness

    missing = freshness.get_missing_ranges()
    assert missing[DatasetKey.SALES] == DateRange(date(2024, 1, 22), WATERMARK)
    assert missing[DatasetKey.RETURNS] == DateRange(date(2023, 2, 7), WATERMARK)
    assert DatasetKey.STOCKS not in missing

    session.ctx.periods.add(DatasetKey.RETURNS, DAILY, DateRange(date(2024, 1, 1), date(2024, 2, 3)), 12)
    assert freshness.get_missing_ranges(["returns"]) == {
        DatasetKey.RETURNS: DateRange(date(2024, 2, 4), WATERMARK)
    }

    session.ctx.periods.add(DatasetKey.RETURNS, DAILY, DateRange(date(2024, 2, 4), WATERMARK), 0)
    assert freshness.get_missing_ranges(["returns", "catalog"]) == {}


def test_catchup_fills_gap_through_week_sync_and_then_idles(make_session, fake_client):
    session = make_session(TODAY)
    session.ctx.periods.add(DatasetKey.SALES, WEEKLY, DateRange(date(2024, 1, 22), date(2024, 1, 28)), 3)
    session.ctx.periods.add(DatasetKey.SALES, DAILY, DateRange(date(2024, 1, 29), date(2024, 1, 31)), 1)
    fake_client.report_rows = [report_row(1, "2024-02-02")]
    progress = []

    result = session.freshness_catchup.run(["sales"], on_progress=lambda *args: progress.append(args))

    assert result.windows_total == 2
    assert result.failed == []
    assert [(c[1], c[2], c[3]) for c in fake_client.calls_to("fetch_report_page")] == [
        ("2024-02-01", "2024-02-04", "daily"),
        ("2024-02-05", "2024-02-06", "daily"),
    ]
    assert [p[:2] for p in progress] == [(1, 2), (2, 2)]
    assert session.ctx.table(DatasetKey.SALES).count() == 1
    assert session.freshness.get_missing_ranges(["sales"]) == {}
    assert session.ctx.registry.get("week_sync_resume:sales") is None

    assert session.freshness_catchup.run(["sales"]) is None


def test_readiness_probe_reports_each_state(make_session, fake_client):
    session = make_session(TODAY)

    pending = session.readiness.check()
    assert (pending.ready, pending.reason) == (False, "no_data")
    assert pending.week == DateRange(date(2024, 1, 29), date(2024, 2, 4))
    assert fake_client.calls_to("fetch_report_page")[0][3] == "weekly"

    fake_client.report_rows = [report_row(1, "2024-02-01")]
    assert session.readiness.check().as_dict() == {
        "ready": True,
        "reason": "ready",
        "week": "2024-01-29..2024-02-04",
        "detail": None,
    }

    fake_client.errors["fetch_report_page"] = [UpstreamUnavailableError("down", status_code=503)]
    failed = session.readiness.check()
    assert failed.reason == "error"
    assert failed.detail == "down"


def test_readiness_before_lower_bound_does_not_call_upstream(make_session, fake_client):
    session = make_session(TODAY, lower_bound=date(2024, 2, 5))
    assert session.readiness.check().reason == "before_lower_bound"
    assert fake_client.calls == []
