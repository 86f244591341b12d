"""
Parse/validate/normalize layer for upstream rows.

One pydantic model per endpoint. Missing or null fields fall back to the
declared defaults (``_drop_nulls`` runs before field validation), so jobs
never do ad-hoc ``row.get(...) or 0`` access. Rows that still fail
validation are counted and skipped by ``parse_rows``.
"""

from __future__ import annotations

import json
import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from wbsync.dates import parse_date
from wbsync.models import DatasetKey

LOGGER = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

SALE_OPERATION = "Продажа"
RETURN_OPERATION = "Возврат"

# Named pseudo-warehouses in the warehouse remains report.
WAREHOUSES_TOTAL = "Всего находится на складах"
IN_TRANSIT_TO_CUSTOMERS = "В пути до получателей"
IN_TRANSIT_RETURNS = "В пути возвраты на склад WB"


class _Row(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


def _to_date(value: Any) -> date:
    return parse_date(value)


class ReportRow(_Row):
    """One ledger line of reportDetailByPeriod."""

    rrd_id: int = 0
    nm_id: int = 0
    rr_dt: date
    ts_name: str = ""
    sa_name: str = ""
    brand_name: str = ""
    subject_name: str = ""
    supplier_oper_name: str = ""
    bonus_type_name: str = ""
    quantity: float = 0
    retail_price: float = 0
    retail_amount: float = 0
    ppvz_for_pay: float = 0
    delivery_amount: float = 0
    return_amount: float = 0
    delivery_rub: float = 0
    penalty: float = 0
    gi_id: Optional[int] = None

    @field_validator("rr_dt", mode="before")
    @classmethod
    def _parse_rr_dt(cls, value):
        return _to_date(value)


class AdvHistoryEntry(_Row):
    advert_id: int = Field(validation_alias=AliasChoices("advertId", "advert_id"))
    sum: Optional[float] = None
    upd_sum: Optional[float] = Field(None, validation_alias=AliasChoices("updSum", "upd_sum"))
    day: Optional[date] = Field(None, validation_alias=AliasChoices("date", "updTime", "upd_time"))

    @field_validator("day", mode="before")
    @classmethod
    def _parse_date(cls, value):
        return _to_date(value) if value else None

    @property
    def amount(self) -> float:
        if self.sum is not None:
            return self.sum
        return self.upd_sum or 0.0


class AdvCampaign(_Row):
    advert_id: int = Field(validation_alias=AliasChoices("advertId", "id", "advert_id"))
    nm_ids: List[int] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _collect_nm_ids(cls, data: Any) -> Any:
        if isinstance(data, dict) and "nm_ids" not in data:
            settings = data.get("nm_settings") or []
            data = dict(data)
            data["nm_ids"] = [s.get("nm_id") for s in settings if isinstance(s, dict) and s.get("nm_id")]
        return data


class StorageRow(_Row):
    day: date = Field(validation_alias=AliasChoices("date", "day"))
    nm_id: int = Field(0, validation_alias=AliasChoices("nmId", "nm_id"))
    size: str = Field("", validation_alias=AliasChoices("size", "techSize"))
    vendor_code: str = Field("", validation_alias=AliasChoices("vendorCode", "vendor_code"))
    brand: str = Field("", validation_alias=AliasChoices("brand", "brandName", "brand_name"))
    subject: str = Field("", validation_alias=AliasChoices("subject", "subjectName", "subject_name"))
    cost: float = Field(0, validation_alias=AliasChoices("warehousePrice", "cost", "storageCost"))

    @field_validator("day", mode="before")
    @classmethod
    def _parse_day(cls, value):
        return _to_date(value)


class AcceptanceRow(_Row):
    day: date = Field(validation_alias=AliasChoices("shkCreateDate", "shk_create_date", "date"))
    nm_id: int = Field(0, validation_alias=AliasChoices("nmID", "nmId", "nm_id"))
    cost: float = Field(0, validation_alias=AliasChoices("total", "cost", "acceptanceCost"))

    @field_validator("day", mode="before")
    @classmethod
    def _parse_day(cls, value):
        return _to_date(value)


class OrdersStatsItem(_Row):
    """Flattened ``{product: {...}, statistic: {selected: {...}}}`` entry."""

    nm_id: int = Field(validation_alias=AliasChoices("nmId", "nm_id"))
    vendor_code: str = Field("", validation_alias=AliasChoices("vendorCode", "vendor_code"))
    brand: str = Field("", validation_alias=AliasChoices("brandName", "brand"))
    subject: str = Field("", validation_alias=AliasChoices("subjectName", "subject"))
    open_count: float = Field(0, validation_alias=AliasChoices("openCount", "open_count"))
    cart_count: float = Field(0, validation_alias=AliasChoices("cartCount", "cart_count"))
    order_count: float = Field(0, validation_alias=AliasChoices("orderCount", "order_count"))
    order_sum: float = Field(0, validation_alias=AliasChoices("orderSum", "order_sum"))
    buyout_count: float = Field(0, validation_alias=AliasChoices("buyoutCount", "buyout_count"))
    buyout_sum: float = Field(0, validation_alias=AliasChoices("buyoutSum", "buyout_sum"))
    cancel_count: float = Field(0, validation_alias=AliasChoices("cancelCount", "cancel_count"))
    cancel_sum: float = Field(0, validation_alias=AliasChoices("cancelSum", "cancel_sum"))
    add_to_wishlist: float = Field(0, validation_alias=AliasChoices("addToWishlist", "add_to_wishlist"))

    @model_validator(mode="before")
    @classmethod
    def _flatten(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "product" not in data:
            return data
        product = data.get("product") or {}
        statistic = (data.get("statistic") or {}).get("selected") or {}
        merged = {k: v for k, v in statistic.items() if v is not None and not isinstance(v, dict)}
        merged.update({k: v for k, v in product.items() if v is not None})
        return merged


class WarehouseQuantity(_Row):
    warehouse_name: str = Field("", validation_alias=AliasChoices("warehouseName", "warehouse_name"))
    quantity: float = 0


class StockRow(_Row):
    nm_id: int = Field(validation_alias=AliasChoices("nmId", "nm_id"))
    size: str = Field(min_length=1, validation_alias=AliasChoices("techSize", "size"))
    vendor_code: str = Field("", validation_alias=AliasChoices("vendorCode", "vendor_code"))
    brand: str = ""
    subject: str = Field("", validation_alias=AliasChoices("subjectName", "subject"))
    warehouses: List[WarehouseQuantity] = Field(default_factory=list)

    def quantity_for(self, name: str) -> float:
        return sum(w.quantity for w in self.warehouses if w.warehouse_name == name)


class SupplyRow(_Row):
    supply_id: int = Field(validation_alias=AliasChoices("supplyID", "supply_id"))
    create_date: Optional[date] = Field(None, validation_alias=AliasChoices("createDate", "create_date"))
    supply_date: Optional[date] = Field(None, validation_alias=AliasChoices("supplyDate", "supply_date"))
    fact_date: Optional[date] = Field(None, validation_alias=AliasChoices("factDate", "fact_date"))
    status_id: Optional[int] = Field(None, validation_alias=AliasChoices("statusID", "status_id"))

    @field_validator("create_date", "supply_date", "fact_date", mode="before")
    @classmethod
    def _parse_dates(cls, value):
        return _to_date(value) if value else None


class SupplyGood(_Row):
    nm_id: int = Field(validation_alias=AliasChoices("nmID", "nmId", "nm_id"))
    size: str = Field("", validation_alias=AliasChoices("techSize", "size"))
    vendor_code: str = Field("", validation_alias=AliasChoices("vendorCode", "vendor_code"))
    barcode: str = ""
    quantity: float = 0
    accepted_quantity: Optional[float] = Field(None, validation_alias=AliasChoices("acceptedQuantity", "accepted_quantity"))


class CardSize(_Row):
    size: str = Field("", validation_alias=AliasChoices("techSize", "size"))
    skus: List[str] = Field(default_factory=list)


class CardRow(_Row):
    nm_id: int = Field(validation_alias=AliasChoices("nmID", "nm_id"))
    vendor_code: str = Field("", validation_alias=AliasChoices("vendorCode", "vendor_code"))
    brand: str = ""
    subject: str = Field("", validation_alias=AliasChoices("subjectName", "subject"))
    title: str = ""
    updated_at: str = Field("", validation_alias=AliasChoices("updatedAt", "updated_at"))
    sizes: List[CardSize] = Field(default_factory=list)


def parse_rows(model: Type[M], raw_rows: Iterable[Any], label: str) -> Tuple[List[M], int]:
    """Validate ``raw_rows``; returns ``(valid, skipped)``."""
    valid: List[M] = []
    skipped = 0
    first_error: Optional[str] = None
    for raw in raw_rows:
        try:
            valid.append(model.model_validate(raw))
        except ValidationError as exc:
            skipped += 1
            if first_error is None:
                first_error = str(exc.errors()[:1])
    if skipped:
        LOGGER.warning("[wb_rows] %s: skipped %s invalid rows (first: %s)", label, skipped, first_error)
    return valid, skipped


# ----------------------------------------------------------------------
# Finance stream fan-out
# ----------------------------------------------------------------------
def finance_datasets_for(row: ReportRow) -> List[DatasetKey]:
    """Which finance datasets a ledger line contributes to."""
    targets: List[DatasetKey] = []
    if row.supplier_oper_name == SALE_OPERATION:
        targets.append(DatasetKey.SALES)
    elif row.supplier_oper_name == RETURN_OPERATION:
        targets.append(DatasetKey.RETURNS)
    if row.delivery_amount or row.return_amount or row.delivery_rub:
        targets.append(DatasetKey.LOGISTICS)
    if row.penalty:
        targets.append(DatasetKey.PENALTIES)
    return targets


def finance_record(dataset: DatasetKey, row: ReportRow) -> Dict[str, Any]:
    base = {
        "nm_id": row.nm_id,
        "date": row.rr_dt.isoformat(),
        "size": row.ts_name,
        "vendor_code": row.sa_name,
        "brand": row.brand_name,
        "subject": row.subject_name,
    }
    if dataset in (DatasetKey.SALES, DatasetKey.RETURNS):
        base.update(
            quantity=row.quantity,
            retail_price=row.retail_price,
            retail_amount=row.retail_amount,
            for_pay=row.ppvz_for_pay,
        )
        if dataset == DatasetKey.SALES:
            base["gi_id"] = row.gi_id
    elif dataset == DatasetKey.LOGISTICS:
        base.update(
            delivery_amount=row.delivery_amount,
            return_amount=row.return_amount,
            delivery_rub=row.delivery_rub,
        )
    elif dataset == DatasetKey.PENALTIES:
        base.update(bonus_type=row.bonus_type_name, penalty=row.penalty)
    else:
        raise ValueError(f"{dataset.value} is not a finance dataset")
    return base


def storage_record(row: StorageRow) -> Dict[str, Any]:
    return {
        "date": row.day.isoformat(),
        "nm_id": row.nm_id,
        "size": row.size,
        "vendor_code": row.vendor_code,
        "brand": row.brand,
        "subject": row.subject,
        "cost": row.cost,
    }


def acceptance_record(row: AcceptanceRow) -> Dict[str, Any]:
    return {"nm_id": row.nm_id, "date": row.day.isoformat(), "cost": row.cost}


def orders_record(row: OrdersStatsItem, day: date) -> Dict[str, Any]:
    record = row.model_dump(exclude={"nm_id", "vendor_code", "brand", "subject"})
    record.update(
        date=day.isoformat(),
        nm_id=row.nm_id,
        vendor_code=row.vendor_code,
        brand=row.brand,
        subject=row.subject,
    )
    return record


def stock_record(row: StockRow) -> Dict[str, Any]:
    return {
        "nm_id": row.nm_id,
        "size": row.size,
        "vendor_code": row.vendor_code,
        "brand": row.brand,
        "subject": row.subject,
        "qty_warehouses": row.quantity_for(WAREHOUSES_TOTAL),
        "qty_to_customers": row.quantity_for(IN_TRANSIT_TO_CUSTOMERS),
        "qty_returns_to_warehouse": row.quantity_for(IN_TRANSIT_RETURNS),
        "details_json": json.dumps([w.model_dump() for w in row.warehouses], ensure_ascii=False),
    }


def supply_record(row: SupplyRow, goods: List[SupplyGood]) -> Dict[str, Any]:
    return {
        "supply_id": row.supply_id,
        "create_date": row.create_date.isoformat() if row.create_date else None,
        "supply_date": row.supply_date.isoformat() if row.supply_date else None,
        "fact_date": row.fact_date.isoformat() if row.fact_date else None,
        "status_id": row.status_id,
        "items_json": json.dumps([g.model_dump() for g in goods], ensure_ascii=False),
    }


def catalog_records(card: CardRow) -> List[Dict[str, Any]]:
    records = []
    for size in card.sizes or [CardSize()]:
        records.append(
            {
                "nm_id": card.nm_id,
                "size": size.size,
                "vendor_code": card.vendor_code,
                "brand": card.brand,
                "subject": card.subject,
                "title": card.title,
                "barcodes_json": json.dumps(size.skus, ensure_ascii=False),
                "updated_at": card.updated_at,
            }
        )
    return records
