"""
Submit -> poll -> download protocol for asynchronous upstream reports
(paid storage, acceptance, warehouse remains).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from wbsync.models import DatasetKey, EventSink, emit
from wbsync.wb_api import RateLimitError, call_with_rate_limit_retry

logger = logging.getLogger("report_tasks")

STATUS_DONE = "done"
FAILED_STATUSES = ("canceled", "cancelled", "purged")


class ReportTaskFailedError(RuntimeError):
    """The upstream canceled or purged a report task."""

    def __init__(self, label: str, task_id: str, status: str):
        super().__init__(f"{label}: task {task_id} ended with status {status}")
        self.task_id = task_id
        self.status = status


class ReportTimeoutError(TimeoutError):
    def __init__(self, label: str, task_id: str, elapsed_seconds: float, last_status: Optional[str]):
        super().__init__(
            f"{label}: task {task_id} not ready after {elapsed_seconds:.0f}s (last status={last_status})"
        )
        self.task_id = task_id
        self.elapsed_seconds = elapsed_seconds
        self.last_status = last_status


@dataclass(frozen=True)
class ReportTaskSettings:
    poll_interval_seconds: float
    rate_limit_delay_seconds: float
    timeout_seconds: float


def run_report_task(
    *,
    label: str,
    submit: Callable[[], str],
    get_status: Callable[[str], str],
    download: Callable[[str], List[Dict[str, Any]]],
    settings: ReportTaskSettings,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    on_event: Optional[EventSink] = None,
    dataset: Optional[DatasetKey] = None,
) -> List[Dict[str, Any]]:
    """
    Run one report task to completion and return the downloaded rows.

    Rate limits on any step wait ``rate_limit_delay_seconds`` and repeat the
    same call. The poll phase is bounded by ``timeout_seconds`` of wall-clock
    time; canceled/purged raises ReportTaskFailedError.
    """
    task_id = call_with_rate_limit_retry(
        submit,
        delay_seconds=settings.rate_limit_delay_seconds,
        label=f"{label}/submit",
        sleep=sleep,
    )
    logger.info("[report_tasks] %s task=%s submitted", label, task_id)
    emit(on_event, "task_submitted", dataset, label=label, task_id=task_id)

    started = clock()
    last_status: Optional[str] = None
    while True:
        try:
            status = (get_status(task_id) or "").lower()
        except RateLimitError:
            logger.info(
                "[report_tasks] %s task=%s status rate limited; retrying in %.0fs",
                label,
                task_id,
                settings.rate_limit_delay_seconds,
            )
            emit(on_event, "rate_limited", dataset, label=label, task_id=task_id)
            sleep(settings.rate_limit_delay_seconds)
            status = None

        if status is not None:
            if status != last_status:
                logger.info("[report_tasks] %s task=%s status=%s", label, task_id, status)
                last_status = status
            if status == STATUS_DONE:
                break
            if status in FAILED_STATUSES:
                raise ReportTaskFailedError(label, task_id, status)

        elapsed = clock() - started
        if elapsed >= settings.timeout_seconds:
            logger.error(
                "[report_tasks] %s task=%s timed out after %.0fs (last status=%s)",
                label,
                task_id,
                elapsed,
                last_status,
            )
            raise ReportTimeoutError(label, task_id, elapsed, last_status)
        if status is not None:
            sleep(settings.poll_interval_seconds)

    rows = call_with_rate_limit_retry(
        lambda: download(task_id),
        delay_seconds=settings.rate_limit_delay_seconds,
        label=f"{label}/download",
        sleep=sleep,
    )
    logger.info("[report_tasks] %s task=%s downloaded rows=%s", label, task_id, len(rows))
    emit(on_event, "task_downloaded", dataset, label=label, task_id=task_id, rows=len(rows))
    return rows
