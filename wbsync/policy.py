"""
Per-dataset sync tuning.

Policies are built once when a session starts and are read-only afterwards.
Defaults can be overridden per dataset with the JSON file named by
``WB_POLICY_OVERRIDES_PATH`` (see config.load_policy_overrides).
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from wbsync.dates import parse_date
from wbsync.models import DatasetKey, coerce_dataset

LOGGER = logging.getLogger(__name__)


class DatasetPolicy(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    priority_days: int = Field(30, ge=1)
    refresh_overlap_days: int = Field(3, ge=1)
    catchup_chunk_days: int = Field(30, ge=1)
    # None means unbounded history.
    max_history_days: Optional[int] = Field(365, ge=1)
    refresh_every_minutes: int = Field(30, ge=1)
    backfill_enabled: bool = False
    backfill_chunk_days: int = Field(7, ge=1)
    backfill_lower_bound: Optional[date] = None

    @field_validator("backfill_lower_bound", mode="before")
    @classmethod
    def _parse_lower_bound(cls, value):
        if value is None or value == "":
            return None
        return parse_date(value)


_DEFAULTS: Dict[DatasetKey, dict] = {
    DatasetKey.SALES: dict(
        priority_days=30,
        refresh_overlap_days=3,
        catchup_chunk_days=30,
        max_history_days=365,
        refresh_every_minutes=30,
        backfill_enabled=True,
        backfill_chunk_days=7,
    ),
    DatasetKey.RETURNS: dict(refresh_overlap_days=3, refresh_every_minutes=30),
    DatasetKey.LOGISTICS: dict(refresh_overlap_days=7, refresh_every_minutes=60),
    DatasetKey.PENALTIES: dict(refresh_overlap_days=7, refresh_every_minutes=60),
    DatasetKey.ADV_COSTS: dict(refresh_overlap_days=7, refresh_every_minutes=60),
    DatasetKey.STORAGE_COSTS: dict(refresh_overlap_days=7, refresh_every_minutes=120),
    DatasetKey.ACCEPTANCE_COSTS: dict(refresh_overlap_days=7, refresh_every_minutes=120),
    DatasetKey.PRODUCT_ORDERS: dict(refresh_overlap_days=3, refresh_every_minutes=30),
    DatasetKey.SUPPLIES: dict(
        priority_days=90,
        refresh_overlap_days=14,
        catchup_chunk_days=90,
        max_history_days=730,
        refresh_every_minutes=180,
    ),
    DatasetKey.STOCKS: dict(
        priority_days=1,
        refresh_overlap_days=1,
        catchup_chunk_days=1,
        max_history_days=1,
        refresh_every_minutes=60,
    ),
    DatasetKey.CATALOG: dict(
        priority_days=1,
        refresh_overlap_days=1,
        catchup_chunk_days=1,
        max_history_days=1,
        refresh_every_minutes=720,
    ),
}


def build_policies(
    overrides: Optional[Mapping[str, Mapping[str, object]]] = None,
    backfill_lower_bound: Optional[str] = None,
) -> Dict[DatasetKey, DatasetPolicy]:
    """
    Build the immutable policy table.

    ``backfill_lower_bound`` is applied to datasets with backfill enabled that
    do not set their own bound.
    """
    overrides = overrides or {}
    unknown = [name for name in overrides if name not in {d.value for d in DatasetKey}]
    if unknown:
        raise ValueError(f"Policy overrides name unknown datasets: {', '.join(sorted(unknown))}")

    policies: Dict[DatasetKey, DatasetPolicy] = {}
    for dataset, defaults in _DEFAULTS.items():
        values = dict(defaults)
        values.update(overrides.get(dataset.value) or {})
        if values.get("backfill_enabled") and not values.get("backfill_lower_bound") and backfill_lower_bound:
            values["backfill_lower_bound"] = backfill_lower_bound
        policies[dataset] = DatasetPolicy(**values)
        if dataset.value in overrides:
            LOGGER.info("[sync_policy] %s overridden: %s", dataset.value, sorted(overrides[dataset.value]))
    return policies


def policy_for(policies: Mapping[DatasetKey, DatasetPolicy], dataset) -> DatasetPolicy:
    key = coerce_dataset(dataset)
    try:
        return policies[key]
    except KeyError as exc:
        raise KeyError(f"No policy configured for dataset {key.value}") from exc
