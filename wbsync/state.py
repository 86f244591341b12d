"""
Durable sync bookkeeping: checkpoints, the loaded-period coverage log and
free-form registry values (resume cursors).

Recent changes:
- Checkpoints are keyed by (dataset, variant) instead of suffixed strings.
- Checkpoint writes are monotonic per variant: forward/weekly cursors only
  move forward, backfill cursors only move backward.
- Coverage checks treat the log as a union of days, so an exact record, a
  containing record, or a contiguous run of daily records all count.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from wbsync.dates import DAILY, WEEKLY, DateRange, parse_date
from wbsync.db import execute_write, get_db_connection, write_transaction
from wbsync.models import (
    Checkpoint,
    CheckpointKey,
    CheckpointVariant,
    DatasetKey,
    LoadedPeriod,
    coerce_dataset,
)

LOGGER = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> datetime:
    if not value:
        return _utc_now()
    return datetime.fromisoformat(value)


def covers(periods: Iterable[LoadedPeriod], window: DateRange) -> bool:
    """True when every day of ``window`` lies inside at least one period."""
    cursor = window.start
    for period in sorted(periods, key=lambda p: p.start):
        if period.end < cursor:
            continue
        if period.start > cursor:
            return False
        cursor = period.end + timedelta(days=1)
        if cursor > window.end:
            return True
    return cursor > window.end


class CheckpointStore:
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def _row_to_checkpoint(self, row) -> Checkpoint:
        return Checkpoint(
            key=CheckpointKey(DatasetKey(row["dataset"]), CheckpointVariant(row["variant"])),
            cursor_time=parse_date(row["cursor_time"]) if row["cursor_time"] else None,
            cursor_token=row["cursor_token"],
            high_watermark_time=parse_date(row["high_watermark_time"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    def get(self, key: CheckpointKey) -> Optional[Checkpoint]:
        with get_db_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM sync_checkpoints WHERE dataset = ? AND variant = ?",
                (key.dataset.value, key.variant.value),
            ).fetchone()
        return self._row_to_checkpoint(row) if row else None

    def list_all(self) -> List[Checkpoint]:
        with get_db_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM sync_checkpoints ORDER BY dataset, variant"
            ).fetchall()
        return [self._row_to_checkpoint(r) for r in rows]

    def advance(self, checkpoint: Checkpoint) -> Checkpoint:
        """
        Persist checkpoint monotonically:
          forward/weekly: cursor = max(incoming, stored)
          backfill:       cursor = min(incoming, stored)
        Returns the checkpoint as stored.
        """
        key = checkpoint.key
        with write_transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM sync_checkpoints WHERE dataset = ? AND variant = ?",
                (key.dataset.value, key.variant.value),
            ).fetchone()
            previous = self._row_to_checkpoint(row) if row else None

            cursor = checkpoint.cursor_time
            if previous and previous.cursor_time and cursor:
                if key.variant == CheckpointVariant.BACKFILL:
                    cursor = min(cursor, previous.cursor_time)
                else:
                    cursor = max(cursor, previous.cursor_time)
                if cursor != checkpoint.cursor_time:
                    LOGGER.info(
                        "[sync_state] %s/%s kept cursor %s (incoming %s)",
                        key.dataset.value,
                        key.variant.value,
                        cursor,
                        checkpoint.cursor_time,
                    )
            elif previous and cursor is None:
                cursor = previous.cursor_time

            watermark = checkpoint.high_watermark_time
            if previous and key.variant != CheckpointVariant.BACKFILL:
                watermark = max(watermark, previous.high_watermark_time)

            stored = Checkpoint(
                key=key,
                cursor_time=cursor,
                cursor_token=checkpoint.cursor_token,
                high_watermark_time=watermark,
                updated_at=checkpoint.updated_at,
            )
            conn.execute(
                """
                INSERT INTO sync_checkpoints (
                    dataset, variant, cursor_time, cursor_token, high_watermark_time, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(dataset, variant) DO UPDATE SET
                    cursor_time=excluded.cursor_time,
                    cursor_token=excluded.cursor_token,
                    high_watermark_time=excluded.high_watermark_time,
                    updated_at=excluded.updated_at
                """,
                (
                    key.dataset.value,
                    key.variant.value,
                    _iso(stored.cursor_time),
                    stored.cursor_token,
                    stored.high_watermark_time.isoformat(),
                    stored.updated_at.isoformat(),
                ),
            )
        return stored

    def delete_dataset(self, dataset: DatasetKey) -> int:
        with write_transaction(self.db_path) as conn:
            cur = conn.execute("DELETE FROM sync_checkpoints WHERE dataset = ?", (dataset.value,))
            return cur.rowcount


class LoadedPeriodRegistry:
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    @staticmethod
    def _row_to_period(row) -> LoadedPeriod:
        return LoadedPeriod(
            dataset=DatasetKey(row["dataset"]),
            period_type=row["period_type"],
            start=parse_date(row["date_from"]),
            end=parse_date(row["date_to"]),
            applied_at=_parse_ts(row["applied_at"]),
            record_count=int(row["record_count"] or 0),
        )

    def add(
        self,
        dataset: DatasetKey,
        period_type: str,
        window: DateRange,
        record_count: int,
        applied_at: Optional[datetime] = None,
    ) -> LoadedPeriod:
        if period_type not in (DAILY, WEEKLY):
            raise ValueError(f"Unknown period type {period_type!r}")
        period = LoadedPeriod(
            dataset=dataset,
            period_type=period_type,
            start=window.start,
            end=window.end,
            applied_at=applied_at or _utc_now(),
            record_count=int(record_count),
        )
        execute_write(
            self.db_path,
            """
            INSERT INTO sync_loaded_periods (dataset, period_type, date_from, date_to, applied_at, record_count)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                dataset.value,
                period_type,
                window.start.isoformat(),
                window.end.isoformat(),
                period.applied_at.isoformat(),
                period.record_count,
            ),
        )
        return period

    def list_for_dataset(self, dataset) -> List[LoadedPeriod]:
        key = coerce_dataset(dataset)
        with get_db_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM sync_loaded_periods WHERE dataset = ? ORDER BY date_from, id",
                (key.value,),
            ).fetchall()
        return [self._row_to_period(r) for r in rows]

    def overlapping(
        self,
        dataset: DatasetKey,
        window: DateRange,
        period_types: Sequence[str] = (DAILY, WEEKLY),
    ) -> List[LoadedPeriod]:
        placeholders = ",".join("?" for _ in period_types)
        with get_db_connection(self.db_path) as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM sync_loaded_periods
                WHERE dataset = ?
                  AND date_from <= ?
                  AND date_to >= ?
                  AND period_type IN ({placeholders})
                ORDER BY date_from, id
                """,
                (dataset.value, window.end.isoformat(), window.start.isoformat(), *period_types),
            ).fetchall()
        return [self._row_to_period(r) for r in rows]

    def is_covered(
        self,
        dataset: DatasetKey,
        window: DateRange,
        period_types: Sequence[str] = (DAILY, WEEKLY),
    ) -> bool:
        return covers(self.overlapping(dataset, window, period_types), window)

    def has_weekly_coverage(self, dataset: DatasetKey, window: DateRange) -> bool:
        return self.is_covered(dataset, window, (WEEKLY,))

    def latest_end(self, dataset: DatasetKey) -> Optional[date]:
        with get_db_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT MAX(date_to) AS max_to FROM sync_loaded_periods WHERE dataset = ?",
                (dataset.value,),
            ).fetchone()
        if not row or not row["max_to"]:
            return None
        return parse_date(row["max_to"])

    def latest_by_dataset(self) -> dict:
        with get_db_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT dataset, MAX(date_to) AS max_to, MAX(applied_at) AS last_applied, COUNT(*) AS periods
                FROM sync_loaded_periods
                GROUP BY dataset
                """
            ).fetchall()
        return {
            r["dataset"]: {
                "latest_to": r["max_to"],
                "last_applied_at": r["last_applied"],
                "periods": int(r["periods"] or 0),
            }
            for r in rows
        }

    def delete_dataset(self, dataset: DatasetKey) -> int:
        with write_transaction(self.db_path) as conn:
            cur = conn.execute("DELETE FROM sync_loaded_periods WHERE dataset = ?", (dataset.value,))
            return cur.rowcount


class SyncRegistryStore:
    """Small key/value table for resume cursors and similar markers."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def get(self, key: str) -> Optional[str]:
        with get_db_connection(self.db_path) as conn:
            row = conn.execute("SELECT value FROM sync_registry WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: Optional[str]) -> None:
        execute_write(
            self.db_path,
            """
            INSERT INTO sync_registry (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """,
            (key, value, _utc_now().isoformat()),
        )

    def delete(self, key: str) -> None:
        execute_write(self.db_path, "DELETE FROM sync_registry WHERE key = ?", (key,))
