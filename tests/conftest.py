from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional

import pytest

from wbsync.job_base import SyncSettings
from wbsync.models import SyncEvent
from wbsync.policy import build_policies
from wbsync.registry import build_sync_session

DEFAULT_LOWER_BOUND = date(2024, 1, 22)


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is called."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeWbClient:
    """
    In-memory stand-in for WbApiClient. Report rows are filtered by the
    requested dates; ``errors`` maps a method name to exceptions raised (in
    order) before the method starts answering normally.
    """

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.errors: Dict[str, List[Exception]] = {}
        self.report_rows: List[Dict[str, Any]] = []
        self.adv_history: List[Dict[str, Any]] = []
        self.adv_campaigns: List[Dict[str, Any]] = []
        self.storage_rows: List[Dict[str, Any]] = []
        self.acceptance_rows: List[Dict[str, Any]] = []
        self.stock_rows: List[Dict[str, Any]] = []
        self.task_statuses: List[str] = []
        self.orders: Dict[str, List[Dict[str, Any]]] = {}
        self.supplies: List[Dict[str, Any]] = []
        self.supply_goods: Dict[int, List[Dict[str, Any]]] = {}
        self.card_pages: List[Dict[str, Any]] = []

    def _maybe_fail(self, name: str) -> None:
        queue = self.errors.get(name)
        if queue:
            raise queue.pop(0)

    def calls_to(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    # finance
    def fetch_report_page(self, date_from, date_to, period="weekly", rrd_id=0, limit=100000):
        self.calls.append(("fetch_report_page", date_from, date_to, period, rrd_id))
        self._maybe_fail("fetch_report_page")
        rows = [
            r
            for r in self.report_rows
            if date_from <= str(r["rr_dt"])[:10] <= date_to and int(r.get("rrd_id") or 0) > rrd_id
        ]
        return rows[:limit]

    # advertising
    def get_adv_history(self, date_from, date_to):
        self.calls.append(("get_adv_history", date_from, date_to))
        self._maybe_fail("get_adv_history")
        return [e for e in self.adv_history if date_from <= e["updTime"][:10] <= date_to]

    def get_adv_info(self, advert_ids):
        self.calls.append(("get_adv_info", tuple(advert_ids)))
        self._maybe_fail("get_adv_info")
        return [c for c in self.adv_campaigns if c["advertId"] in advert_ids]

    # async report tasks
    def _status(self, task_id):
        self.calls.append(("get_status", task_id))
        self._maybe_fail("get_status")
        return self.task_statuses.pop(0) if self.task_statuses else "done"

    def create_storage_task(self, date_from, date_to):
        self.calls.append(("create_storage_task", date_from, date_to))
        self._maybe_fail("create_storage_task")
        return f"storage:{date_from}:{date_to}"

    def get_storage_status(self, task_id):
        return self._status(task_id)

    def download_storage_report(self, task_id):
        _, date_from, date_to = task_id.split(":")
        return [r for r in self.storage_rows if date_from <= r["date"] <= date_to]

    def create_acceptance_task(self, date_from, date_to):
        self.calls.append(("create_acceptance_task", date_from, date_to))
        return f"acceptance:{date_from}:{date_to}"

    def get_acceptance_status(self, task_id):
        return self._status(task_id)

    def download_acceptance_report(self, task_id):
        _, date_from, date_to = task_id.split(":")
        return [r for r in self.acceptance_rows if date_from <= r["shkCreateDate"][:10] <= date_to]

    def create_stocks_task(self):
        self.calls.append(("create_stocks_task",))
        return "stocks"

    def get_stocks_status(self, task_id):
        return self._status(task_id)

    def download_stocks_report(self, task_id):
        return list(self.stock_rows)

    # analytics
    def fetch_orders_stats(self, date_from, date_to, offset=0, limit=1000):
        self.calls.append(("fetch_orders_stats", date_from, date_to, offset))
        self._maybe_fail("fetch_orders_stats")
        items = self.orders.get(date_from, [])
        return items[offset : offset + limit]

    def get_supplies(self, date_from, date_to, offset=0, limit=1000):
        self.calls.append(("get_supplies", date_from, date_to, offset))
        rows = [s for s in self.supplies if date_from <= s["createDate"][:10] <= date_to]
        return rows[offset : offset + limit]

    def get_supply_goods(self, supply_id):
        self.calls.append(("get_supply_goods", supply_id))
        return list(self.supply_goods.get(supply_id, []))

    def fetch_cards_page(self, cursor=None, limit=100):
        self.calls.append(("fetch_cards_page", cursor))
        if not self.card_pages:
            return {"cards": [], "cursor": {"total": 0}}
        return self.card_pages.pop(0)


def report_row(
    rrd_id: int,
    day: str,
    nm_id: int = 101,
    size: str = "M",
    oper: str = "Продажа",
    **values: Any,
) -> Dict[str, Any]:
    row = {
        "rrd_id": rrd_id,
        "rr_dt": day,
        "nm_id": nm_id,
        "ts_name": size,
        "sa_name": f"ART-{nm_id}",
        "brand_name": "Brand",
        "subject_name": "Shirts",
        "supplier_oper_name": oper,
        "quantity": 1,
        "retail_price": 1000,
        "retail_amount": 900,
        "ppvz_for_pay": 800,
    }
    row.update(values)
    return row


@pytest.fixture
def fake_client() -> FakeWbClient:
    return FakeWbClient()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def events() -> List[SyncEvent]:
    return []


@pytest.fixture
def make_session(tmp_path, fake_client, fake_clock, events):
    def _make(
        today: date,
        priority_datasets: Optional[List[Any]] = None,
        lower_bound: date = DEFAULT_LOWER_BOUND,
        policy_overrides: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        settings = SyncSettings(backfill_lower_bound=lower_bound)
        policies = build_policies(policy_overrides, backfill_lower_bound=lower_bound.isoformat())
        return build_sync_session(
            db_path=tmp_path / "wb_sync.db",
            client=fake_client,
            policies=policies,
            settings=settings,
            today=lambda: today,
            sleep=fake_clock.sleep,
            clock=fake_clock,
            on_event=events.append,
            priority_datasets=priority_datasets,
        )

    return _make
