"""
Analytics and reference datasets: sales funnel (product orders), supplies,
warehouse stock snapshot and the product catalog snapshot.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from wbsync.dates import DAILY, DateRange, iter_days
from wbsync.job_base import SnapshotJob, SyncContext, SyncJob
from wbsync.models import Checkpoint, DatasetKey, SyncMode, SyncPlan
from wbsync.report_tasks import run_report_task
from wbsync.wb_api import (
    CARDS_PAGE_LIMIT,
    ORDERS_PAGE_LIMIT,
    SUPPLIES_PAGE_LIMIT,
    call_with_rate_limit_retry,
)
from wbsync.wb_rows import (
    CardRow,
    OrdersStatsItem,
    StockRow,
    SupplyGood,
    SupplyRow,
    catalog_records,
    orders_record,
    parse_rows,
    stock_record,
    supply_record,
)

logger = logging.getLogger("analytics_jobs")

SUPPLY_GOODS_PACING_SECONDS = 0.3
CARDS_PACING_SECONDS = 0.6


class ProductOrdersJob(SyncJob):
    """
    Sales-funnel counters per article per day.

    The endpoint aggregates over the requested period, so each day is
    requested separately and paged by offset. A full page means there may be
    more; the next offset is requested until a short or empty page arrives.
    """

    dataset = DatasetKey.PRODUCT_ORDERS
    sum_fields = (
        "open_count",
        "cart_count",
        "order_count",
        "order_sum",
        "buyout_count",
        "buyout_sum",
        "cancel_count",
        "cancel_sum",
        "add_to_wishlist",
    )

    def fetch(self, ctx: SyncContext, plan: SyncPlan) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        requests_made = 0
        for day in iter_days(plan.range):
            offset = 0
            while True:
                if requests_made:
                    ctx.sleep(ctx.settings.orders_rate_limit_seconds)
                requests_made += 1
                page = call_with_rate_limit_retry(
                    lambda: ctx.client.fetch_orders_stats(
                        day.isoformat(), day.isoformat(), offset=offset, limit=ORDERS_PAGE_LIMIT
                    ),
                    delay_seconds=ctx.settings.orders_rate_limit_seconds,
                    label=f"sales-funnel {day.isoformat()}",
                    sleep=ctx.sleep,
                )
                items, _ = parse_rows(OrdersStatsItem, page, f"sales funnel {day.isoformat()}")
                records.extend(orders_record(item, day) for item in items)
                ctx.emit("page", self.dataset, day=day.isoformat(), offset=offset, rows=len(page))
                if len(page) < ORDERS_PAGE_LIMIT:
                    break
                offset += ORDERS_PAGE_LIMIT
        logger.info("[analytics_jobs] %s requests=%s records=%s", plan.describe(), requests_made, len(records))
        return records


class SuppliesJob(SyncJob):
    """Accepted/shipped supplies created within the plan window, with their goods."""

    dataset = DatasetKey.SUPPLIES

    def fetch(self, ctx: SyncContext, plan: SyncPlan) -> List[Dict[str, Any]]:
        supplies: List[SupplyRow] = []
        offset = 0
        while True:
            page = call_with_rate_limit_retry(
                lambda: ctx.client.get_supplies(
                    plan.range.start.isoformat(),
                    plan.range.end.isoformat(),
                    offset=offset,
                    limit=SUPPLIES_PAGE_LIMIT,
                ),
                delay_seconds=ctx.settings.task_rate_limit_retry_seconds,
                label="supplies/list",
                sleep=ctx.sleep,
            )
            parsed, _ = parse_rows(SupplyRow, page, "supplies")
            supplies.extend(parsed)
            if len(page) < SUPPLIES_PAGE_LIMIT:
                break
            offset += SUPPLIES_PAGE_LIMIT

        records: List[Dict[str, Any]] = []
        for index, supply in enumerate(supplies):
            if index:
                ctx.sleep(SUPPLY_GOODS_PACING_SECONDS)
            raw_goods = call_with_rate_limit_retry(
                lambda: ctx.client.get_supply_goods(supply.supply_id),
                delay_seconds=ctx.settings.task_rate_limit_retry_seconds,
                label=f"supplies/{supply.supply_id}/goods",
                sleep=ctx.sleep,
            )
            goods, _ = parse_rows(SupplyGood, raw_goods, f"supply {supply.supply_id} goods")
            records.append(supply_record(supply, goods))
        logger.info("[analytics_jobs] %s supplies=%s", plan.describe(), len(records))
        return records


def _snapshot_plan(dataset: DatasetKey, ctx: SyncContext) -> SyncPlan:
    watermark = ctx.watermark()
    return SyncPlan(dataset=dataset, range=DateRange(watermark, watermark), mode=SyncMode.REFRESH, granularity=DAILY)


class StocksJob(SnapshotJob):
    dataset = DatasetKey.STOCKS
    sum_fields = ("qty_warehouses", "qty_to_customers", "qty_returns_to_warehouse")

    def plan(self, ctx: SyncContext, checkpoint: Optional[Checkpoint]) -> Optional[SyncPlan]:
        return _snapshot_plan(self.dataset, ctx)

    def fetch(self, ctx: SyncContext, plan: SyncPlan) -> List[Dict[str, Any]]:
        raw = run_report_task(
            label="warehouse_remains",
            submit=ctx.client.create_stocks_task,
            get_status=ctx.client.get_stocks_status,
            download=ctx.client.download_stocks_report,
            settings=ctx.settings.report_task(ctx.settings.stocks_report_timeout_seconds),
            sleep=ctx.sleep,
            clock=ctx.clock,
            on_event=ctx.on_event,
            dataset=self.dataset,
        )
        rows, _ = parse_rows(StockRow, raw, "warehouse remains")
        return [stock_record(r) for r in rows]


class CatalogJob(SnapshotJob):
    """Content cards, one row per article size; cursor-paginated."""

    dataset = DatasetKey.CATALOG

    def __init__(self, policy):
        super().__init__(policy)
        self._last_cursor: Optional[Dict[str, Any]] = None

    def plan(self, ctx: SyncContext, checkpoint: Optional[Checkpoint]) -> Optional[SyncPlan]:
        return _snapshot_plan(self.dataset, ctx)

    def fetch(self, ctx: SyncContext, plan: SyncPlan) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        cursor: Optional[Dict[str, Any]] = None
        self._last_cursor = None
        page_no = 0
        while True:
            if page_no:
                ctx.sleep(CARDS_PACING_SECONDS)
            page_no += 1
            page = call_with_rate_limit_retry(
                lambda: ctx.client.fetch_cards_page(cursor, limit=CARDS_PAGE_LIMIT),
                delay_seconds=ctx.settings.task_rate_limit_retry_seconds,
                label="cards/list",
                sleep=ctx.sleep,
            )
            cards, _ = parse_rows(CardRow, page.get("cards") or [], f"cards page {page_no}")
            for card in cards:
                records.extend(catalog_records(card))
            page_cursor = page.get("cursor") or {}
            total = int(page_cursor.get("total") or 0)
            if page_cursor.get("updatedAt") and page_cursor.get("nmID"):
                cursor = {"updatedAt": page_cursor["updatedAt"], "nmID": page_cursor["nmID"]}
                self._last_cursor = cursor
            else:
                break
            if total < CARDS_PAGE_LIMIT:
                break
        logger.info("[analytics_jobs] catalog pages=%s rows=%s", page_no, len(records))
        return records

    def build_next_checkpoint(self, ctx, plan, previous, fetched_count) -> Checkpoint:
        checkpoint = super().build_next_checkpoint(ctx, plan, previous, fetched_count)
        if self._last_cursor is None:
            return checkpoint
        return Checkpoint(
            key=checkpoint.key,
            cursor_time=checkpoint.cursor_time,
            cursor_token=json.dumps(self._last_cursor),
            high_watermark_time=checkpoint.high_watermark_time,
            updated_at=checkpoint.updated_at,
        )
