"""
Finance datasets (sales, returns, logistics, penalties) carved out of the
reportDetailByPeriod ledger.

The report endpoint allows roughly one request per minute, so the batch
path fetches a window once and fans each ledger line out to every dataset
it contributes to.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from wbsync.dates import DateRange
from wbsync.job_base import GroupAccumulator, SyncContext, SyncJob
from wbsync.models import FINANCE_DATASETS, DatasetKey, SyncPlan
from wbsync.policy import DatasetPolicy
from wbsync.wb_api import REPORT_PAGE_LIMIT, call_with_rate_limit_retry
from wbsync.wb_rows import ReportRow, finance_datasets_for, finance_record, parse_rows

logger = logging.getLogger("finance_jobs")

FINANCE_SUM_FIELDS: Dict[DatasetKey, Tuple[str, ...]] = {
    DatasetKey.SALES: ("quantity", "retail_price", "retail_amount", "for_pay"),
    DatasetKey.RETURNS: ("quantity", "retail_price", "retail_amount", "for_pay"),
    DatasetKey.LOGISTICS: ("delivery_amount", "return_amount", "delivery_rub"),
    DatasetKey.PENALTIES: ("penalty",),
}


def fetch_report_rows(ctx: SyncContext, window: DateRange, period: str) -> List[ReportRow]:
    """
    Page through reportDetailByPeriod for ``window``.

    Stops on an empty page (204) or a page shorter than the page size;
    otherwise continues from the last row's ``rrd_id``.
    """
    rows: List[ReportRow] = []
    rrd_id = 0
    page_no = 0
    while True:
        page_no += 1
        page = call_with_rate_limit_retry(
            lambda: ctx.client.fetch_report_page(
                window.start.isoformat(),
                window.end.isoformat(),
                period=period,
                rrd_id=rrd_id,
                limit=REPORT_PAGE_LIMIT,
            ),
            delay_seconds=ctx.settings.report_rate_limit_retry_seconds,
            label=f"reportDetailByPeriod {window.label()}",
            sleep=ctx.sleep,
        )
        if not page:
            break
        parsed, _skipped = parse_rows(ReportRow, page, f"report page {page_no}")
        rows.extend(parsed)
        ctx.emit("page", None, window=window.label(), page=page_no, rows=len(page))
        logger.info(
            "[finance_jobs] %s period=%s page=%s rows=%s",
            window.label(),
            period,
            page_no,
            len(page),
        )
        if len(page) < REPORT_PAGE_LIMIT:
            break
        next_rrd_id = int((page[-1] or {}).get("rrd_id") or 0)
        if next_rrd_id <= rrd_id:
            logger.warning(
                "[finance_jobs] %s cursor did not advance (rrd_id=%s); stopping",
                window.label(),
                next_rrd_id,
            )
            break
        rrd_id = next_rrd_id
    return rows


def records_for(dataset: DatasetKey, rows: Iterable[ReportRow]) -> List[Dict[str, Any]]:
    return [finance_record(dataset, row) for row in rows if dataset in finance_datasets_for(row)]


class FinanceReportJob(SyncJob):
    def __init__(self, dataset: DatasetKey, policy: DatasetPolicy):
        if dataset not in FINANCE_SUM_FIELDS:
            raise ValueError(f"{dataset.value} is not a finance dataset")
        super().__init__(policy)
        self.dataset = dataset
        self.sum_fields = FINANCE_SUM_FIELDS[dataset]

    def fetch(self, ctx: SyncContext, plan: SyncPlan) -> List[Dict[str, Any]]:
        rows = fetch_report_rows(ctx, plan.range, plan.granularity)
        records = records_for(self.dataset, rows)
        logger.info(
            "[finance_jobs] %s ledger_rows=%s dataset_rows=%s",
            plan.describe(),
            len(rows),
            len(records),
        )
        return records


class FinanceBatch:
    """Fetch one report window and split it across several finance datasets."""

    def __init__(self, datasets: Sequence[DatasetKey] = FINANCE_DATASETS):
        unknown = [d for d in datasets if d not in FINANCE_SUM_FIELDS]
        if unknown:
            raise ValueError(f"Not finance datasets: {[d.value for d in unknown]}")
        self.datasets = tuple(datasets)

    def fetch_fanout(
        self, ctx: SyncContext, window: DateRange, period: str
    ) -> Tuple[Dict[DatasetKey, List[Dict[str, Any]]], int]:
        """Returns ``({dataset: grouped records}, ledger_row_count)``."""
        rows = fetch_report_rows(ctx, window, period)
        accumulators = {
            ds: GroupAccumulator(ctx.table(ds).spec.key_columns, FINANCE_SUM_FIELDS[ds])
            for ds in self.datasets
        }
        for row in rows:
            for ds in finance_datasets_for(row):
                acc = accumulators.get(ds)
                if acc is not None:
                    acc.add(finance_record(ds, row))
        grouped = {ds: acc.records() for ds, acc in accumulators.items()}
        logger.info(
            "[finance_jobs] batch %s period=%s ledger_rows=%s %s",
            window.label(),
            period,
            len(rows),
            ", ".join(f"{ds.value}={len(recs)}" for ds, recs in grouped.items()),
        )
        return grouped, len(rows)
