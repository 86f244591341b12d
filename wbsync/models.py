from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from wbsync.dates import DAILY, WEEKLY, DateRange


class DatasetKey(str, Enum):
    SALES = "sales"
    RETURNS = "returns"
    LOGISTICS = "logistics"
    PENALTIES = "penalties"
    ADV_COSTS = "adv_costs"
    STORAGE_COSTS = "storage_costs"
    ACCEPTANCE_COSTS = "acceptance_costs"
    PRODUCT_ORDERS = "product_orders"
    SUPPLIES = "supplies"
    STOCKS = "stocks"
    CATALOG = "catalog"


# Datasets carved out of the shared finance report stream.
FINANCE_DATASETS = (
    DatasetKey.SALES,
    DatasetKey.RETURNS,
    DatasetKey.LOGISTICS,
    DatasetKey.PENALTIES,
)

# Datasets whose tables are replaced wholesale on each run.
SNAPSHOT_DATASETS = (DatasetKey.STOCKS, DatasetKey.CATALOG)

DATED_DATASETS = tuple(d for d in DatasetKey if d not in SNAPSHOT_DATASETS)


class CheckpointVariant(str, Enum):
    FORWARD = "forward"
    WEEKLY = "weekly"
    BACKFILL = "backfill"


class SyncMode(str, Enum):
    PRIORITY = "priority"
    REFRESH = "refresh"
    CATCHUP = "catchup"
    BACKFILL = "backfill"


@dataclass(frozen=True)
class CheckpointKey:
    dataset: DatasetKey
    variant: CheckpointVariant = CheckpointVariant.FORWARD


@dataclass(frozen=True)
class Checkpoint:
    key: CheckpointKey
    cursor_time: Optional[date]
    high_watermark_time: date
    updated_at: datetime
    cursor_token: Optional[str] = None


@dataclass(frozen=True)
class LoadedPeriod:
    dataset: DatasetKey
    period_type: str
    start: date
    end: date
    applied_at: datetime
    record_count: int = 0

    @property
    def range(self) -> DateRange:
        return DateRange(self.start, self.end)


@dataclass(frozen=True)
class SyncPlan:
    dataset: DatasetKey
    range: DateRange
    mode: SyncMode
    granularity: str = DAILY
    overlap_days: Optional[int] = None

    @property
    def is_weekly(self) -> bool:
        return self.granularity == WEEKLY

    def describe(self) -> str:
        return f"{self.dataset.value}/{self.mode.value}/{self.granularity} {self.range.label()}"


@dataclass(frozen=True)
class ApplyResult:
    applied: int


@dataclass
class SyncRunResult:
    plan: SyncPlan
    fetched: int
    applied: int
    checkpoint: Optional[Checkpoint]
    elapsed_seconds: float = 0.0


@dataclass(frozen=True)
class BackfillProgress:
    lower_bound: date
    weeks_done: int
    weeks_total: int
    weeks_remaining: int
    percent: int
    completed: bool
    current_week: Optional[DateRange] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "lower_bound": self.lower_bound.isoformat(),
            "weeks_done": self.weeks_done,
            "weeks_total": self.weeks_total,
            "weeks_remaining": self.weeks_remaining,
            "percent": self.percent,
            "completed": self.completed,
            "current_week": self.current_week.label() if self.current_week else None,
        }


@dataclass(frozen=True)
class SyncEvent:
    """Progress notification handed to an optional ``on_event`` callable."""

    kind: str
    dataset: Optional[DatasetKey] = None
    detail: Dict[str, Any] = field(default_factory=dict)


EventSink = Callable[[SyncEvent], None]


def emit(sink: Optional[EventSink], kind: str, dataset: Optional[DatasetKey] = None, **detail: Any) -> None:
    if sink is None:
        return
    sink(SyncEvent(kind=kind, dataset=dataset, detail=detail))


def coerce_dataset(value: Any) -> DatasetKey:
    if isinstance(value, DatasetKey):
        return value
    try:
        return DatasetKey(str(value).strip())
    except ValueError as exc:
        raise ValueError(f"Unknown dataset {value!r}") from exc
