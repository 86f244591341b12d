"""
Thin requests-based client for the Wildberries seller APIs.

Every call maps HTTP outcomes onto one error taxonomy:
  401/403 -> AuthorizationError (fatal, never retried)
  429     -> RateLimitError (callers retry at a fixed interval)
  404     -> NotFoundError
  5xx / connection / timeout -> UpstreamUnavailableError
  204 / empty body -> "no data", returned as an empty result

Recent changes:
- Rate-limit retry lives in call_with_rate_limit_retry so jobs pick their own
  fixed delay per endpoint family.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import requests

import config

logger = logging.getLogger("wb_api")

T = TypeVar("T")

REPORT_PAGE_LIMIT = 100000
ADV_INFO_BATCH_SIZE = 50
ORDERS_PAGE_LIMIT = 1000
SUPPLIES_PAGE_LIMIT = 1000
CARDS_PAGE_LIMIT = 100
SUPPLY_STATUS_IDS = (5, 6)


class UpstreamApiError(RuntimeError):
    """Base for upstream failures; carries the HTTP status and URL when known."""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class AuthorizationError(UpstreamApiError):
    """Raised on 401/403. Never retried."""


class RateLimitError(UpstreamApiError):
    """Raised when the upstream answers 429."""


class NotFoundError(UpstreamApiError):
    """Raised on 404, e.g. an expired report task."""


class UpstreamUnavailableError(UpstreamApiError):
    """Network failure, timeout or 5xx: the service is unreachable, not the data bad."""


def _payload_text(resp: requests.Response) -> str:
    text = resp.text or ""
    return text[:500]


class WbApiClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ):
        self._api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT_SECONDS

    @property
    def api_key(self) -> str:
        if not self._api_key:
            self._api_key = config.get_api_key()
        return self._api_key

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
        label: str,
    ) -> Any:
        headers = {"Authorization": self.api_key, "Accept": "application/json"}
        try:
            resp = self.session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            logger.warning("[wb_api] %s unreachable: %s", label, exc)
            raise UpstreamUnavailableError(f"{label}: upstream unreachable: {exc}", url=url) from exc

        status = resp.status_code
        if status == 204:
            return None
        if status in (401, 403):
            logger.error("[wb_api] %s rejected credentials (%s)", label, status)
            raise AuthorizationError(
                f"{label}: authorization failed ({status}): {_payload_text(resp)}",
                status_code=status,
                url=url,
            )
        if status == 429:
            logger.warning("[wb_api] %s rate limited (429)", label)
            raise RateLimitError(f"{label}: rate limited", status_code=status, url=url)
        if status == 404:
            raise NotFoundError(f"{label}: not found: {_payload_text(resp)}", status_code=status, url=url)
        if status >= 500:
            logger.warning("[wb_api] %s upstream %s: %s", label, status, _payload_text(resp))
            raise UpstreamUnavailableError(
                f"{label}: upstream error {status}", status_code=status, url=url
            )
        if status >= 300:
            logger.error("[wb_api] %s failed %s: %s", label, status, _payload_text(resp))
            raise UpstreamApiError(
                f"{label}: request failed {status}: {_payload_text(resp)}",
                status_code=status,
                url=url,
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamApiError(f"{label}: response is not JSON", status_code=status, url=url) from exc

    # ------------------------------------------------------------------
    # Finance report stream
    # ------------------------------------------------------------------
    def fetch_report_page(
        self,
        date_from: str,
        date_to: str,
        period: str = "weekly",
        rrd_id: int = 0,
        limit: int = REPORT_PAGE_LIMIT,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"dateFrom": date_from, "dateTo": date_to, "limit": limit, "period": period}
        if rrd_id and rrd_id > 0:
            params["rrdid"] = rrd_id
        data = self._request(
            "GET",
            f"{config.STATISTICS_API_URL}/api/v5/supplier/reportDetailByPeriod",
            params=params,
            label="reportDetailByPeriod",
        )
        return list(data or [])

    # ------------------------------------------------------------------
    # Advertising
    # ------------------------------------------------------------------
    def get_adv_history(self, date_from: str, date_to: str) -> List[Dict[str, Any]]:
        data = self._request(
            "GET",
            f"{config.ADVERT_API_URL}/adv/v1/upd",
            params={"from": date_from, "to": date_to},
            label="adv/upd",
        )
        return list(data or [])

    def get_adv_info(self, advert_ids: Sequence[int]) -> List[Dict[str, Any]]:
        if len(advert_ids) > ADV_INFO_BATCH_SIZE:
            raise ValueError(f"get_adv_info accepts at most {ADV_INFO_BATCH_SIZE} ids")
        if not advert_ids:
            return []
        data = self._request(
            "GET",
            f"{config.ADVERT_API_URL}/api/advert/v2/adverts",
            params={"ids": ",".join(str(i) for i in advert_ids)},
            label="advert/adverts",
        )
        if isinstance(data, dict):
            return list(data.get("adverts") or [])
        return list(data or [])

    # ------------------------------------------------------------------
    # Async report tasks (seller analytics)
    # ------------------------------------------------------------------
    def _create_task(self, path: str, params: Dict[str, Any], label: str) -> str:
        data = self._request("GET", f"{config.ANALYTICS_API_URL}{path}", params=params, label=label)
        task_id = ((data or {}).get("data") or {}).get("taskId")
        if not task_id:
            raise UpstreamApiError(f"{label}: response carried no taskId: {data}")
        return str(task_id)

    def _task_status(self, path: str, task_id: str, label: str) -> str:
        data = self._request(
            "GET", f"{config.ANALYTICS_API_URL}{path}/tasks/{task_id}/status", label=label
        )
        return str(((data or {}).get("data") or {}).get("status") or "").lower()

    def _task_download(self, path: str, task_id: str, label: str) -> List[Dict[str, Any]]:
        data = self._request(
            "GET", f"{config.ANALYTICS_API_URL}{path}/tasks/{task_id}/download", label=label
        )
        if isinstance(data, dict):
            return list(data.get("data") or [])
        return list(data or [])

    def create_storage_task(self, date_from: str, date_to: str) -> str:
        return self._create_task(
            "/api/v1/paid_storage", {"dateFrom": date_from, "dateTo": date_to}, "paid_storage/create"
        )

    def get_storage_status(self, task_id: str) -> str:
        return self._task_status("/api/v1/paid_storage", task_id, "paid_storage/status")

    def download_storage_report(self, task_id: str) -> List[Dict[str, Any]]:
        return self._task_download("/api/v1/paid_storage", task_id, "paid_storage/download")

    def create_acceptance_task(self, date_from: str, date_to: str) -> str:
        return self._create_task(
            "/api/v1/acceptance_report",
            {"dateFrom": date_from, "dateTo": date_to},
            "acceptance_report/create",
        )

    def get_acceptance_status(self, task_id: str) -> str:
        return self._task_status("/api/v1/acceptance_report", task_id, "acceptance_report/status")

    def download_acceptance_report(self, task_id: str) -> List[Dict[str, Any]]:
        return self._task_download("/api/v1/acceptance_report", task_id, "acceptance_report/download")

    def create_stocks_task(self) -> str:
        return self._create_task(
            "/api/v1/warehouse_remains",
            {"groupByNm": "true", "groupBySize": "true"},
            "warehouse_remains/create",
        )

    def get_stocks_status(self, task_id: str) -> str:
        return self._task_status("/api/v1/warehouse_remains", task_id, "warehouse_remains/status")

    def download_stocks_report(self, task_id: str) -> List[Dict[str, Any]]:
        return self._task_download("/api/v1/warehouse_remains", task_id, "warehouse_remains/download")

    # ------------------------------------------------------------------
    # Sales funnel, supplies, catalog
    # ------------------------------------------------------------------
    def fetch_orders_stats(
        self, date_from: str, date_to: str, offset: int = 0, limit: int = ORDERS_PAGE_LIMIT
    ) -> List[Dict[str, Any]]:
        data = self._request(
            "POST",
            f"{config.ANALYTICS_API_URL}/api/analytics/v3/sales-funnel/products",
            json_body={
                "selectedPeriod": {"start": date_from, "end": date_to},
                "limit": limit,
                "offset": offset,
            },
            label="sales-funnel/products",
        )
        return list(((data or {}).get("data") or {}).get("products") or [])

    def get_supplies(
        self, date_from: str, date_to: str, offset: int = 0, limit: int = SUPPLIES_PAGE_LIMIT
    ) -> List[Dict[str, Any]]:
        data = self._request(
            "POST",
            f"{config.SUPPLIES_API_URL}/api/v1/supplies",
            params={"limit": limit, "offset": offset},
            json_body={
                "dates": [{"from": date_from, "till": date_to, "type": "createDate"}],
                "statusIDs": list(SUPPLY_STATUS_IDS),
            },
            label="supplies/list",
        )
        return list(data or [])

    def get_supply_goods(self, supply_id: int) -> List[Dict[str, Any]]:
        data = self._request(
            "GET",
            f"{config.SUPPLIES_API_URL}/api/v1/supplies/{supply_id}/goods",
            params={"limit": SUPPLIES_PAGE_LIMIT, "offset": 0},
            label="supplies/goods",
        )
        return list(data or [])

    def fetch_cards_page(self, cursor: Optional[Dict[str, Any]] = None, limit: int = CARDS_PAGE_LIMIT) -> Dict[str, Any]:
        cursor_body: Dict[str, Any] = {"limit": limit}
        if cursor:
            cursor_body.update({k: v for k, v in cursor.items() if k in ("updatedAt", "nmID")})
        data = self._request(
            "POST",
            f"{config.CONTENT_API_URL}/content/v2/get/cards/list",
            json_body={"settings": {"cursor": cursor_body, "filter": {"withPhoto": -1}}},
            label="cards/list",
        )
        return data or {"cards": [], "cursor": {"total": 0, "limit": limit}}


def get_wb_client(api_key: Optional[str] = None) -> WbApiClient:
    return WbApiClient(api_key=api_key)


def call_with_rate_limit_retry(
    fn: Callable[[], T],
    *,
    delay_seconds: float,
    label: str,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int], None]] = None,
) -> T:
    """
    Invoke ``fn`` until it stops raising RateLimitError.

    Fixed delay, no attempt cap: a rate limit alone is never fatal. Any
    other error propagates immediately.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except RateLimitError:
            attempt += 1
            logger.info(
                "[wb_api] %s rate limited (attempt %s); retrying in %.0fs",
                label,
                attempt,
                delay_seconds,
            )
            if on_retry is not None:
                on_retry(attempt)
            sleep(delay_seconds)
