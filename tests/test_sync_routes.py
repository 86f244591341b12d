from __future__ import annotations

from datetime import date

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import report_row
from routes import register_sync_routes
from routes import sync_routes
from wbsync.dates import DAILY, DateRange
from wbsync.models import DatasetKey
from wbsync.runner import SyncInProgressError
from wbsync.wb_api import AuthorizationError, UpstreamUnavailableError

TODAY = date(2024, 2, 7)


def _build_app(session) -> FastAPI:
    app = FastAPI()
    register_sync_routes(app, session)
    return app


@pytest.fixture
def session(make_session):
    return make_session(TODAY, priority_datasets=[DatasetKey.RETURNS, DatasetKey.ADV_COSTS])


@pytest.fixture
def client(session):
    return TestClient(_build_app(session))


def test_routes_without_session_return_503():
    app = FastAPI()
    app.include_router(sync_routes.router)
    resp = TestClient(app).get("/api/sync/status")
    assert resp.status_code == 503


def test_status_reports_watermark_and_backfill(client, session):
    session.ctx.periods.add(DatasetKey.RETURNS, DAILY, DateRange(date(2024, 2, 1), date(2024, 2, 6)), 3)
    resp = client.get("/api/sync/status")
    assert resp.status_code == 200
    body = resp.json()
    assert body["watermark"] == "2024-02-06"
    assert body["backfill"]["lower_bound"] == "2024-01-22"
    assert body["loaded_periods"]["returns"]["periods"] == 1
    assert "returns" not in body["missing_ranges"]
    assert body["running"] == []


def test_priority_wave_partial_failure_is_200_with_errors(client, fake_client):
    fake_client.errors["get_adv_history"] = [UpstreamUnavailableError("advert api down", status_code=503)]
    resp = client.post("/api/sync/priority")
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is False
    assert body["errors"] == {"adv_costs": "UpstreamUnavailableError: advert api down"}
    assert "returns" in body["runs"]


def test_wave_failing_everywhere_is_502(make_session, fake_client):
    fake_client.errors["get_adv_history"] = [UpstreamUnavailableError("advert api down", status_code=503)]
    session = make_session(TODAY, priority_datasets=[DatasetKey.ADV_COSTS])
    resp = TestClient(_build_app(session)).post("/api/sync/priority")
    assert resp.status_code == 502
    assert resp.json()["detail"]["errors"] == {"adv_costs": "UpstreamUnavailableError: advert api down"}


def test_run_in_progress_is_409(client, session, monkeypatch):
    def busy():
        raise SyncInProgressError("Sync already running for returns")

    monkeypatch.setattr(session.orchestrator, "run_refresh_wave", busy)
    resp = client.post("/api/sync/refresh")
    assert resp.status_code == 409


def test_week_sync_validates_datasets(client):
    resp = client.post("/api/sync/week-sync", json={"datasets": ["returns", "orders"]})
    assert resp.status_code == 422


def test_week_sync_runs_requested_datasets(client, fake_client):
    fake_client.report_rows = [report_row(1, "2024-01-30", oper="Возврат")]
    resp = client.post("/api/sync/week-sync", json={"datasets": ["returns"]})
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["datasets"] == ["returns"]
    assert body["windows_total"] == 3


def test_rejected_api_key_is_502(client, fake_client):
    fake_client.errors["fetch_report_page"] = [AuthorizationError("bad key", status_code=401)]
    resp = client.post("/api/sync/week-sync", json={"datasets": ["sales"]})
    assert resp.status_code == 502
    assert "API key" in resp.json()["detail"]


def test_backfill_tick_defaults_to_sales(client):
    resp = client.post("/api/sync/backfill")
    assert resp.status_code == 200
    body = resp.json()
    assert body["dataset"] == "sales"
    assert body["run"]["plan"] == "sales/backfill/weekly 2024-01-22..2024-01-28"
    assert body["progress"]["completed"] is True


def test_freshness_lists_gaps_and_weekly_report_state(client):
    resp = client.get("/api/sync/freshness")
    assert resp.status_code == 200
    body = resp.json()
    assert body["missing_ranges"]["sales"] == "2024-01-22..2024-02-06"
    assert body["weekly_report"]["reason"] == "no_data"


def test_freshness_catchup_reports_up_to_date(client, session):
    session.ctx.periods.add(DatasetKey.RETURNS, DAILY, DateRange(date(2024, 1, 1), date(2024, 2, 6)), 0)
    resp = client.post("/api/sync/freshness/catchup", json={"datasets": ["returns"]})
    assert resp.json() == {"ok": True, "up_to_date": True}


def test_reset_dataset(client, session, monkeypatch):
    session.ctx.periods.add(DatasetKey.RETURNS, DAILY, DateRange(date(2024, 2, 1), date(2024, 2, 6)), 0)

    assert client.post("/api/sync/reset/orders").status_code == 404

    monkeypatch.setattr(session.runner, "is_running", lambda dataset: True)
    assert client.post("/api/sync/reset/returns").status_code == 409
    monkeypatch.undo()

    resp = client.post("/api/sync/reset/returns")
    assert resp.status_code == 200
    assert resp.json()["deleted"] == {"checkpoints": 0, "loaded_periods": 1, "rows": 0}
    assert session.ctx.periods.list_for_dataset(DatasetKey.RETURNS) == []


def test_create_app_exposes_health(session):
    from main import create_app

    resp = TestClient(create_app(session)).get("/health")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True
