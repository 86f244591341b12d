from __future__ import annotations

import json
from datetime import date

from conftest import report_row
from wbsync.dates import DAILY, WEEKLY, DateRange
from wbsync.finance_jobs import FinanceBatch
from wbsync.models import CheckpointKey, DatasetKey, SyncMode, SyncPlan
from wbsync.wb_api import ORDERS_PAGE_LIMIT, RateLimitError
from wbsync.wb_rows import IN_TRANSIT_TO_CUSTOMERS, WAREHOUSES_TOTAL

TODAY = date(2024, 2, 7)
WEEK = DateRange(date(2024, 1, 29), date(2024, 2, 4))


def _plan(dataset, window=WEEK, granularity=DAILY, mode=SyncMode.CATCHUP):
    return SyncPlan(dataset=dataset, range=window, mode=mode, granularity=granularity)


def _ledger(fake_client):
    fake_client.report_rows = [
        report_row(1, "2024-01-29", quantity=1, retail_amount=900),
        report_row(2, "2024-01-29", quantity=2, retail_amount=1800),
        report_row(3, "2024-01-30", oper="Возврат", quantity=1),
        report_row(4, "2024-01-30", oper="Логистика", quantity=0, delivery_rub=50, delivery_amount=1),
        report_row(5, "2024-01-31", oper="Штраф", quantity=0, penalty=300, bonus_type_name="Late"),
    ]


def test_finance_batch_fetches_once_and_fans_out(make_session, fake_client):
    _ledger(fake_client)
    session = make_session(TODAY)

    grouped, ledger_rows = FinanceBatch().fetch_fanout(session.ctx, WEEK, WEEKLY)

    assert ledger_rows == 5
    assert len(fake_client.calls_to("fetch_report_page")) == 1
    assert len(grouped[DatasetKey.SALES]) == 1
    assert grouped[DatasetKey.SALES][0]["quantity"] == 3
    assert grouped[DatasetKey.SALES][0]["retail_amount"] == 2700
    assert [r["date"] for r in grouped[DatasetKey.RETURNS]] == ["2024-01-30"]
    assert grouped[DatasetKey.LOGISTICS][0]["delivery_rub"] == 50
    assert grouped[DatasetKey.PENALTIES][0]["penalty"] == 300
    assert grouped[DatasetKey.PENALTIES][0]["bonus_type"] == "Late"


def test_reapplying_same_window_keeps_values(make_session, fake_client):
    _ledger(fake_client)
    session = make_session(TODAY)
    plan = _plan(DatasetKey.SALES, granularity=WEEKLY)

    first = session.runner.run_with_plan(plan)
    second = session.runner.run_with_plan(plan)

    table = session.ctx.table(DatasetKey.SALES)
    assert first.applied == second.applied == 1
    assert table.count() == 1
    assert table.get((101, "2024-01-29", "M"))["quantity"] == 3


def test_adv_spend_is_split_across_campaign_articles(make_session, fake_client):
    fake_client.adv_history = [
        {"advertId": 7, "updTime": "2024-02-01T10:00:00", "updSum": 90},
        {"advertId": 8, "updTime": "2024-02-01T11:00:00", "updSum": 10},
        {"advertId": 999, "updTime": "2024-02-01T12:00:00", "updSum": 500},
    ]
    fake_client.adv_campaigns = [
        {"advertId": 7, "nm_settings": [{"nm_id": 1}, {"nm_id": 2}, {"nm_id": 3}]},
        {"advertId": 8, "nm_settings": [{"nm_id": 1}]},
    ]
    session = make_session(TODAY)

    result = session.runner.run_with_plan(_plan(DatasetKey.ADV_COSTS, DateRange(date(2024, 2, 1), date(2024, 2, 1))))

    table = session.ctx.table(DatasetKey.ADV_COSTS)
    assert result.applied == 3
    assert table.get((1, "2024-02-01"))["cost"] == 40
    assert table.get((2, "2024-02-01"))["cost"] == 30
    assert table.get((999, "2024-02-01")) is None


def test_adv_campaign_lookup_is_batched(make_session, fake_client):
    fake_client.adv_history = [
        {"advertId": advert_id, "updTime": "2024-02-01", "updSum": 1} for advert_id in range(1, 61)
    ]
    fake_client.adv_campaigns = [
        {"advertId": advert_id, "nm_settings": [{"nm_id": advert_id}]} for advert_id in range(1, 61)
    ]
    session = make_session(TODAY)

    session.runner.run_with_plan(_plan(DatasetKey.ADV_COSTS, DateRange(date(2024, 2, 1), date(2024, 2, 1))))

    batches = [len(c[1]) for c in fake_client.calls_to("get_adv_info")]
    assert batches == [50, 10]
    assert session.ctx.table(DatasetKey.ADV_COSTS).count() == 60


def test_storage_plan_is_split_into_eight_day_tasks(make_session, fake_client, fake_clock):
    fake_client.storage_rows = [
        {"date": "2024-01-02", "nmId": 1, "size": "M", "warehousePrice": 5.5},
        {"date": "2024-01-02", "nmId": 1, "size": "M", "warehousePrice": 1.5},
        {"date": "2024-01-18", "nmId": 2, "size": "L", "warehousePrice": 2.0},
    ]
    fake_client.task_statuses = ["processing", "done"]
    session = make_session(TODAY)

    result = session.runner.run_with_plan(
        _plan(DatasetKey.STORAGE_COSTS, DateRange(date(2024, 1, 1), date(2024, 1, 20)))
    )

    assert [c[1:] for c in fake_client.calls_to("create_storage_task")] == [
        ("2024-01-01", "2024-01-08"),
        ("2024-01-09", "2024-01-16"),
        ("2024-01-17", "2024-01-20"),
    ]
    assert fake_clock.sleeps == [2.0]
    assert result.fetched == 3
    table = session.ctx.table(DatasetKey.STORAGE_COSTS)
    assert table.get(("2024-01-02", 1, "M"))["cost"] == 7.0


def test_storage_run_survives_rate_limited_polling(make_session, fake_client, fake_clock, events):
    fake_client.storage_rows = [
        {"date": "2024-01-30", "nmId": 1, "size": "M", "warehousePrice": 5.5},
        {"date": "2024-01-30", "nmId": 1, "size": "M", "warehousePrice": 1.5},
        {"date": "2024-02-02", "nmId": 2, "size": "L", "warehousePrice": 2.0},
    ]
    fake_client.errors["get_status"] = [RateLimitError("429", status_code=429) for _ in range(3)]
    fake_client.task_statuses = ["processing", "done"]
    session = make_session(TODAY)

    result = session.runner.run_with_plan(_plan(DatasetKey.STORAGE_COSTS))

    assert fake_clock.sleeps == [10.0, 10.0, 10.0, 2.0]
    assert len(fake_client.calls_to("create_storage_task")) == 1
    assert [e.kind for e in events].count("rate_limited") == 3
    assert result.fetched == 3
    assert result.applied == 2
    assert session.ctx.table(DatasetKey.STORAGE_COSTS).count() == 2
    assert session.ctx.checkpoints.get(CheckpointKey(DatasetKey.STORAGE_COSTS)).cursor_time == WEEK.end
    periods = session.ctx.periods.list_for_dataset(DatasetKey.STORAGE_COSTS)
    assert [(p.period_type, p.start, p.end, p.record_count) for p in periods] == [(DAILY, WEEK.start, WEEK.end, 2)]


def _funnel_item(nm_id):
    return {
        "product": {"nmId": nm_id, "vendorCode": f"ART-{nm_id}", "brandName": "Brand"},
        "statistic": {"selected": {"openCount": 10, "cartCount": 3, "orderCount": 1, "orderSum": 500}},
    }


def test_product_orders_request_next_offset_after_full_page(make_session, fake_client, fake_clock):
    fake_client.orders = {
        "2024-02-01": [_funnel_item(n) for n in range(1, ORDERS_PAGE_LIMIT + 6)],
        "2024-02-02": [_funnel_item(1)],
    }
    session = make_session(TODAY)

    result = session.runner.run_with_plan(
        _plan(DatasetKey.PRODUCT_ORDERS, DateRange(date(2024, 2, 1), date(2024, 2, 2)))
    )

    assert [(c[1], c[3]) for c in fake_client.calls_to("fetch_orders_stats")] == [
        ("2024-02-01", 0),
        ("2024-02-01", ORDERS_PAGE_LIMIT),
        ("2024-02-02", 0),
    ]
    assert fake_clock.sleeps == [21.0, 21.0]
    assert result.applied == ORDERS_PAGE_LIMIT + 6
    row = session.ctx.table(DatasetKey.PRODUCT_ORDERS).get(("2024-02-02", 1))
    assert row["open_count"] == 10
    assert row["order_sum"] == 500


def test_catalog_pages_by_cursor_and_stores_last_cursor(make_session, fake_client, fake_clock):
    fake_client.card_pages = [
        {
            "cards": [
                {
                    "nmID": 11,
                    "vendorCode": "A-11",
                    "sizes": [{"techSize": "S", "skus": ["111"]}, {"techSize": "M", "skus": ["112"]}],
                }
            ],
            "cursor": {"updatedAt": "2024-02-01T00:00:00Z", "nmID": 11, "total": 100},
        },
        {
            "cards": [{"nmID": 12, "vendorCode": "A-12", "sizes": []}],
            "cursor": {"updatedAt": "2024-02-02T00:00:00Z", "nmID": 12, "total": 1},
        },
    ]
    session = make_session(TODAY)

    result = session.runner.run(DatasetKey.CATALOG)

    assert [c[1] for c in fake_client.calls_to("fetch_cards_page")] == [
        None,
        {"updatedAt": "2024-02-01T00:00:00Z", "nmID": 11},
    ]
    assert fake_clock.sleeps == [0.6]
    assert result.applied == 3
    checkpoint = session.ctx.checkpoints.get(CheckpointKey(DatasetKey.CATALOG))
    assert json.loads(checkpoint.cursor_token) == {"updatedAt": "2024-02-02T00:00:00Z", "nmID": 12}
    assert json.loads(session.ctx.table(DatasetKey.CATALOG).get((11, "M"))["barcodes_json"]) == ["112"]


def _stock(nm_id, size, total, in_transit=0):
    return {
        "nmId": nm_id,
        "techSize": size,
        "warehouses": [
            {"warehouseName": WAREHOUSES_TOTAL, "quantity": total},
            {"warehouseName": IN_TRANSIT_TO_CUSTOMERS, "quantity": in_transit},
            {"warehouseName": "Коледино", "quantity": total},
        ],
    }


def test_stock_snapshot_replaces_rows_but_ignores_empty_snapshot(make_session, fake_client):
    session = make_session(TODAY)
    table = session.ctx.table(DatasetKey.STOCKS)

    fake_client.stock_rows = [_stock(1, "M", 5, 2), _stock(2, "L", 3)]
    session.runner.run(DatasetKey.STOCKS)
    assert table.count() == 2

    fake_client.stock_rows = [_stock(1, "M", 4)]
    session.runner.run(DatasetKey.STOCKS)
    assert table.count() == 1
    assert table.get((1, "M"))["qty_warehouses"] == 4

    fake_client.stock_rows = []
    result = session.runner.run(DatasetKey.STOCKS)
    assert result.applied == 0
    assert table.count() == 1
