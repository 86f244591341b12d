from __future__ import annotations

import logging
from typing import Callable, List, Optional, TypeVar

from fastapi import APIRouter, Body, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from wbsync.models import DatasetKey, coerce_dataset
from wbsync.orchestrator import WaveFailedError
from wbsync.registry import SyncSession
from wbsync.runner import SyncInProgressError
from wbsync.wb_api import AuthorizationError, UpstreamApiError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync")

T = TypeVar("T")


def _validate_dataset_names(values: List[str]) -> List[str]:
    for value in values:
        coerce_dataset(value)
    return values


class WeekSyncRequest(BaseModel):
    datasets: List[str] = Field(default_factory=lambda: [d.value for d in DatasetKey])

    @field_validator("datasets")
    @classmethod
    def _known_datasets(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("datasets must not be empty")
        return _validate_dataset_names(value)


class FreshnessRequest(BaseModel):
    datasets: Optional[List[str]] = None

    @field_validator("datasets")
    @classmethod
    def _known_datasets(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _validate_dataset_names(value) if value else value


class BackfillRequest(BaseModel):
    dataset: str = DatasetKey.SALES.value

    @field_validator("dataset")
    @classmethod
    def _known_dataset(cls, value: str) -> str:
        return coerce_dataset(value).value


def _session(request: Request) -> SyncSession:
    session = getattr(request.app.state, "sync_session", None)
    if session is None:
        raise HTTPException(status_code=503, detail="Sync session is not initialized")
    return session


def _guarded(label: str, fn: Callable[[], T]) -> T:
    try:
        return fn()
    except SyncInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except WaveFailedError as exc:
        logger.error("[sync_routes] %s failed for every dataset", label)
        raise HTTPException(status_code=502, detail={"message": str(exc), **exc.result.as_dict()})
    except AuthorizationError as exc:
        raise HTTPException(status_code=502, detail=f"Upstream rejected the API key: {exc}")
    except UpstreamApiError as exc:
        logger.error("[sync_routes] %s upstream failure: %s", label, exc, exc_info=True)
        raise HTTPException(status_code=502, detail=str(exc))
    except HTTPException:
        raise
    except Exception as exc:
        logger.error("[sync_routes] %s failed: %s", label, exc, exc_info=True)
        raise HTTPException(status_code=500, detail=str(exc))


@router.get("/status")
def get_sync_status(request: Request) -> dict:
    return _session(request).status()


@router.post("/priority")
def run_priority(request: Request) -> dict:
    session = _session(request)
    result = _guarded("priority wave", session.orchestrator.run_priority_wave)
    return {"ok": not result.errors, **result.as_dict()}


@router.post("/refresh")
def run_refresh(request: Request) -> dict:
    session = _session(request)
    result = _guarded("refresh wave", session.orchestrator.run_refresh_wave)
    return {"ok": not result.errors, **result.as_dict()}


@router.post("/catchup")
def run_catchup(request: Request) -> dict:
    session = _session(request)
    result = _guarded("catch-up tick", session.orchestrator.run_catchup_tick)
    return {"ok": not result.errors, **result.as_dict()}


@router.post("/backfill")
def run_backfill(request: Request, payload: Optional[BackfillRequest] = Body(None)) -> dict:
    session = _session(request)
    payload = payload or BackfillRequest()
    result = _guarded("backfill tick", lambda: session.orchestrator.run_backfill_tick(payload.dataset))
    return {"ok": True, **result.as_dict()}


@router.post("/week-sync")
def run_week_sync(request: Request, payload: Optional[WeekSyncRequest] = Body(None)) -> dict:
    session = _session(request)
    payload = payload or WeekSyncRequest()
    result = _guarded("week sync", lambda: session.coordinator.run(payload.datasets))
    return {"ok": not result.failed, **result.as_dict()}


@router.get("/freshness")
def get_freshness(request: Request) -> dict:
    session = _session(request)
    missing = session.freshness.get_missing_ranges()
    return {
        "missing_ranges": {d.value: r.label() for d, r in missing.items()},
        "weekly_report": session.readiness.check().as_dict(),
    }


@router.post("/freshness/catchup")
def run_freshness_catchup(
    request: Request, payload: Optional[FreshnessRequest] = Body(None)
) -> dict:
    session = _session(request)
    payload = payload or FreshnessRequest()
    result = _guarded("freshness catch-up", lambda: session.freshness_catchup.run(payload.datasets))
    if result is None:
        return {"ok": True, "up_to_date": True}
    return {"ok": not result.failed, "up_to_date": False, **result.as_dict()}


@router.post("/reset/{dataset}")
def reset_dataset(dataset: str, request: Request) -> dict:
    session = _session(request)
    try:
        key = coerce_dataset(dataset)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    if session.runner.is_running(key):
        raise HTTPException(status_code=409, detail=f"Sync already running for {key.value}")
    return {"ok": True, "dataset": key.value, "deleted": session.reset_dataset(key)}


def register_sync_routes(app: FastAPI, session: SyncSession) -> None:
    app.state.sync_session = session
    app.include_router(router)
