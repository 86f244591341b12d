"""
Cost datasets: advertising spend, paid storage, acceptance.

Storage and acceptance use the async report protocol (report_tasks); the
upstream caps each task's period, so plans are split into chunks.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from wbsync.dates import iter_date_chunks
from wbsync.job_base import SyncContext, SyncJob
from wbsync.models import DatasetKey, SyncPlan
from wbsync.report_tasks import run_report_task
from wbsync.wb_api import ADV_INFO_BATCH_SIZE, call_with_rate_limit_retry
from wbsync.wb_rows import (
    AcceptanceRow,
    AdvCampaign,
    AdvHistoryEntry,
    StorageRow,
    acceptance_record,
    parse_rows,
    storage_record,
)

logger = logging.getLogger("cost_jobs")

STORAGE_MAX_TASK_DAYS = 8
ACCEPTANCE_MAX_TASK_DAYS = 31


class AdvCostsJob(SyncJob):
    """Campaign spend split evenly across the campaign's articles per day."""

    dataset = DatasetKey.ADV_COSTS
    sum_fields = ("cost",)

    def _campaign_articles(self, ctx: SyncContext, advert_ids: List[int]) -> Dict[int, List[int]]:
        articles: Dict[int, List[int]] = {}
        for offset in range(0, len(advert_ids), ADV_INFO_BATCH_SIZE):
            batch = advert_ids[offset : offset + ADV_INFO_BATCH_SIZE]
            raw = call_with_rate_limit_retry(
                lambda: ctx.client.get_adv_info(batch),
                delay_seconds=ctx.settings.task_rate_limit_retry_seconds,
                label="advert/adverts",
                sleep=ctx.sleep,
            )
            campaigns, _ = parse_rows(AdvCampaign, raw, "advert info")
            for campaign in campaigns:
                if campaign.nm_ids:
                    articles[campaign.advert_id] = campaign.nm_ids
        return articles

    def fetch(self, ctx: SyncContext, plan: SyncPlan) -> List[Dict[str, Any]]:
        raw = call_with_rate_limit_retry(
            lambda: ctx.client.get_adv_history(plan.range.start.isoformat(), plan.range.end.isoformat()),
            delay_seconds=ctx.settings.task_rate_limit_retry_seconds,
            label="adv/upd",
            sleep=ctx.sleep,
        )
        entries, _ = parse_rows(AdvHistoryEntry, raw, "adv history")
        if not entries:
            logger.info("[cost_jobs] %s no advertising spend", plan.describe())
            return []

        advert_ids = sorted({e.advert_id for e in entries if e.advert_id})
        articles = self._campaign_articles(ctx, advert_ids)

        records: List[Dict[str, Any]] = []
        unmatched = 0
        for entry in entries:
            nm_ids = articles.get(entry.advert_id)
            if not nm_ids:
                unmatched += 1
                continue
            day = (entry.day or plan.range.start).isoformat()
            share = entry.amount / len(nm_ids)
            for nm_id in nm_ids:
                records.append({"nm_id": nm_id, "date": day, "cost": share})
        if unmatched:
            logger.warning("[cost_jobs] %s %s spend entries had no campaign articles", plan.describe(), unmatched)
        logger.info(
            "[cost_jobs] %s entries=%s campaigns=%s records=%s",
            plan.describe(),
            len(entries),
            len(articles),
            len(records),
        )
        return records


class StorageCostsJob(SyncJob):
    dataset = DatasetKey.STORAGE_COSTS
    sum_fields = ("cost",)

    def fetch(self, ctx: SyncContext, plan: SyncPlan) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        settings = ctx.settings.report_task(ctx.settings.storage_report_timeout_seconds)
        for chunk in iter_date_chunks(plan.range, STORAGE_MAX_TASK_DAYS):
            raw = run_report_task(
                label=f"paid_storage {chunk.label()}",
                submit=lambda: ctx.client.create_storage_task(chunk.start.isoformat(), chunk.end.isoformat()),
                get_status=ctx.client.get_storage_status,
                download=ctx.client.download_storage_report,
                settings=settings,
                sleep=ctx.sleep,
                clock=ctx.clock,
                on_event=ctx.on_event,
                dataset=self.dataset,
            )
            rows, _ = parse_rows(StorageRow, raw, "paid storage")
            records.extend(storage_record(r) for r in rows)
        return records


class AcceptanceCostsJob(SyncJob):
    dataset = DatasetKey.ACCEPTANCE_COSTS
    sum_fields = ("cost",)

    def fetch(self, ctx: SyncContext, plan: SyncPlan) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        settings = ctx.settings.report_task(ctx.settings.acceptance_report_timeout_seconds)
        for chunk in iter_date_chunks(plan.range, ACCEPTANCE_MAX_TASK_DAYS):
            raw = run_report_task(
                label=f"acceptance_report {chunk.label()}",
                submit=lambda: ctx.client.create_acceptance_task(chunk.start.isoformat(), chunk.end.isoformat()),
                get_status=ctx.client.get_acceptance_status,
                download=ctx.client.download_acceptance_report,
                settings=settings,
                sleep=ctx.sleep,
                clock=ctx.clock,
                on_event=ctx.on_event,
                dataset=self.dataset,
            )
            rows, _ = parse_rows(AcceptanceRow, raw, "acceptance")
            records.extend(acceptance_record(r) for r in rows)
        return records
