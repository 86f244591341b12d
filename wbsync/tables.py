"""
Generic keyed-table store over SQLite, plus one results table per dataset.

Each table is described by a ``TableSpec``: its natural key columns, an
optional sortable date column for range queries, and the remaining value
columns. Writes are upserts on the natural key, so applying the same batch
twice leaves the same rows behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from wbsync.db import execute_many_write, get_db_connection, write_transaction
from wbsync.models import DatasetKey

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableSpec:
    name: str
    key_columns: Tuple[str, ...]
    columns: Tuple[Tuple[str, str], ...]
    date_column: Optional[str] = None

    @property
    def column_names(self) -> List[str]:
        return [name for name, _ in self.columns]

    def ddl(self) -> str:
        cols = ",\n    ".join(f"{name} {sql_type}" for name, sql_type in self.columns)
        keys = ", ".join(self.key_columns)
        return f"CREATE TABLE IF NOT EXISTS {self.name} (\n    {cols},\n    PRIMARY KEY ({keys})\n)"


class KeyedTable:
    def __init__(self, db_path: Path, spec: TableSpec):
        self.db_path = Path(db_path)
        self.spec = spec

    def ensure(self) -> None:
        with write_transaction(self.db_path) as conn:
            conn.execute(self.spec.ddl())
            if self.spec.date_column:
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{self.spec.name}_{self.spec.date_column} "
                    f"ON {self.spec.name}({self.spec.date_column})"
                )

    def _row_params(self, record: Mapping[str, Any]) -> tuple:
        missing = [k for k in self.spec.key_columns if record.get(k) is None]
        if missing:
            raise ValueError(f"{self.spec.name}: record missing key columns {missing}")
        return tuple(record.get(name) for name in self.spec.column_names)

    def _upsert_sql(self) -> str:
        names = self.spec.column_names
        updates = [n for n in names if n not in self.spec.key_columns]
        placeholders = ", ".join("?" for _ in names)
        conflict = ", ".join(self.spec.key_columns)
        if not updates:
            return (
                f"INSERT INTO {self.spec.name} ({', '.join(names)}) VALUES ({placeholders}) "
                f"ON CONFLICT({conflict}) DO NOTHING"
            )
        assignments = ", ".join(f"{n}=excluded.{n}" for n in updates)
        return (
            f"INSERT INTO {self.spec.name} ({', '.join(names)}) VALUES ({placeholders}) "
            f"ON CONFLICT({conflict}) DO UPDATE SET {assignments}"
        )

    def put(self, record: Mapping[str, Any]) -> None:
        self.bulk_upsert([record])

    def bulk_upsert(self, records: Iterable[Mapping[str, Any]]) -> int:
        params = [self._row_params(r) for r in records]
        execute_many_write(self.db_path, self._upsert_sql(), params)
        return len(params)

    def replace_all(self, records: Iterable[Mapping[str, Any]]) -> int:
        """Swap the whole table contents in one transaction (snapshot datasets)."""
        params = [self._row_params(r) for r in records]
        with write_transaction(self.db_path) as conn:
            conn.execute(f"DELETE FROM {self.spec.name}")
            if params:
                conn.executemany(self._upsert_sql(), params)
        return len(params)

    def get(self, key: Sequence[Any]) -> Optional[Dict[str, Any]]:
        if len(key) != len(self.spec.key_columns):
            raise ValueError(f"{self.spec.name}: key needs {len(self.spec.key_columns)} parts")
        where = " AND ".join(f"{k} = ?" for k in self.spec.key_columns)
        with get_db_connection(self.db_path) as conn:
            row = conn.execute(f"SELECT * FROM {self.spec.name} WHERE {where}", tuple(key)).fetchone()
        return dict(row) if row else None

    def range_query(self, start: date, end: date) -> List[Dict[str, Any]]:
        column = self.spec.date_column
        if not column:
            raise ValueError(f"{self.spec.name} has no date column for range queries")
        with get_db_connection(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM {self.spec.name} WHERE {column} BETWEEN ? AND ? "
                f"ORDER BY {column}, {', '.join(self.spec.key_columns)}",
                (start.isoformat(), end.isoformat()),
            ).fetchall()
        return [dict(r) for r in rows]

    def count(self) -> int:
        with get_db_connection(self.db_path) as conn:
            row = conn.execute(f"SELECT COUNT(*) AS n FROM {self.spec.name}").fetchone()
        return int(row["n"] or 0)

    def delete_all(self) -> int:
        with write_transaction(self.db_path) as conn:
            cur = conn.execute(f"DELETE FROM {self.spec.name}")
            return cur.rowcount


_ARTICLE_COLUMNS = (
    ("vendor_code", "TEXT"),
    ("brand", "TEXT"),
    ("subject", "TEXT"),
)

RESULT_TABLES: Dict[DatasetKey, TableSpec] = {
    DatasetKey.SALES: TableSpec(
        name="wb_sales",
        key_columns=("nm_id", "date", "size"),
        date_column="date",
        columns=(
            ("nm_id", "INTEGER NOT NULL"),
            ("date", "TEXT NOT NULL"),
            ("size", "TEXT NOT NULL"),
            *_ARTICLE_COLUMNS,
            ("quantity", "REAL NOT NULL DEFAULT 0"),
            ("retail_price", "REAL NOT NULL DEFAULT 0"),
            ("retail_amount", "REAL NOT NULL DEFAULT 0"),
            ("for_pay", "REAL NOT NULL DEFAULT 0"),
            ("gi_id", "INTEGER"),
        ),
    ),
    DatasetKey.RETURNS: TableSpec(
        name="wb_returns",
        key_columns=("nm_id", "date", "size"),
        date_column="date",
        columns=(
            ("nm_id", "INTEGER NOT NULL"),
            ("date", "TEXT NOT NULL"),
            ("size", "TEXT NOT NULL"),
            *_ARTICLE_COLUMNS,
            ("quantity", "REAL NOT NULL DEFAULT 0"),
            ("retail_price", "REAL NOT NULL DEFAULT 0"),
            ("retail_amount", "REAL NOT NULL DEFAULT 0"),
            ("for_pay", "REAL NOT NULL DEFAULT 0"),
        ),
    ),
    DatasetKey.LOGISTICS: TableSpec(
        name="wb_logistics",
        key_columns=("nm_id", "date", "size"),
        date_column="date",
        columns=(
            ("nm_id", "INTEGER NOT NULL"),
            ("date", "TEXT NOT NULL"),
            ("size", "TEXT NOT NULL"),
            *_ARTICLE_COLUMNS,
            ("delivery_amount", "REAL NOT NULL DEFAULT 0"),
            ("return_amount", "REAL NOT NULL DEFAULT 0"),
            ("delivery_rub", "REAL NOT NULL DEFAULT 0"),
        ),
    ),
    DatasetKey.PENALTIES: TableSpec(
        name="wb_penalties",
        key_columns=("nm_id", "date", "size"),
        date_column="date",
        columns=(
            ("nm_id", "INTEGER NOT NULL"),
            ("date", "TEXT NOT NULL"),
            ("size", "TEXT NOT NULL"),
            *_ARTICLE_COLUMNS,
            ("bonus_type", "TEXT"),
            ("penalty", "REAL NOT NULL DEFAULT 0"),
        ),
    ),
    DatasetKey.ADV_COSTS: TableSpec(
        name="wb_adv_costs",
        key_columns=("nm_id", "date"),
        date_column="date",
        columns=(
            ("nm_id", "INTEGER NOT NULL"),
            ("date", "TEXT NOT NULL"),
            ("cost", "REAL NOT NULL DEFAULT 0"),
        ),
    ),
    DatasetKey.STORAGE_COSTS: TableSpec(
        name="wb_storage_costs",
        key_columns=("date", "nm_id", "size"),
        date_column="date",
        columns=(
            ("date", "TEXT NOT NULL"),
            ("nm_id", "INTEGER NOT NULL"),
            ("size", "TEXT NOT NULL"),
            *_ARTICLE_COLUMNS,
            ("cost", "REAL NOT NULL DEFAULT 0"),
        ),
    ),
    DatasetKey.ACCEPTANCE_COSTS: TableSpec(
        name="wb_acceptance_costs",
        key_columns=("nm_id", "date"),
        date_column="date",
        columns=(
            ("nm_id", "INTEGER NOT NULL"),
            ("date", "TEXT NOT NULL"),
            ("cost", "REAL NOT NULL DEFAULT 0"),
        ),
    ),
    DatasetKey.PRODUCT_ORDERS: TableSpec(
        name="wb_product_orders",
        key_columns=("date", "nm_id"),
        date_column="date",
        columns=(
            ("date", "TEXT NOT NULL"),
            ("nm_id", "INTEGER NOT NULL"),
            *_ARTICLE_COLUMNS,
            ("open_count", "REAL NOT NULL DEFAULT 0"),
            ("cart_count", "REAL NOT NULL DEFAULT 0"),
            ("order_count", "REAL NOT NULL DEFAULT 0"),
            ("order_sum", "REAL NOT NULL DEFAULT 0"),
            ("buyout_count", "REAL NOT NULL DEFAULT 0"),
            ("buyout_sum", "REAL NOT NULL DEFAULT 0"),
            ("cancel_count", "REAL NOT NULL DEFAULT 0"),
            ("cancel_sum", "REAL NOT NULL DEFAULT 0"),
            ("add_to_wishlist", "REAL NOT NULL DEFAULT 0"),
        ),
    ),
    DatasetKey.SUPPLIES: TableSpec(
        name="wb_supplies",
        key_columns=("supply_id",),
        date_column="create_date",
        columns=(
            ("supply_id", "INTEGER NOT NULL"),
            ("create_date", "TEXT"),
            ("supply_date", "TEXT"),
            ("fact_date", "TEXT"),
            ("status_id", "INTEGER"),
            ("items_json", "TEXT NOT NULL DEFAULT '[]'"),
        ),
    ),
    DatasetKey.STOCKS: TableSpec(
        name="wb_stocks",
        key_columns=("nm_id", "size"),
        columns=(
            ("nm_id", "INTEGER NOT NULL"),
            ("size", "TEXT NOT NULL"),
            *_ARTICLE_COLUMNS,
            ("qty_warehouses", "REAL NOT NULL DEFAULT 0"),
            ("qty_to_customers", "REAL NOT NULL DEFAULT 0"),
            ("qty_returns_to_warehouse", "REAL NOT NULL DEFAULT 0"),
            ("details_json", "TEXT NOT NULL DEFAULT '[]'"),
        ),
    ),
    DatasetKey.CATALOG: TableSpec(
        name="wb_catalog",
        key_columns=("nm_id", "size"),
        columns=(
            ("nm_id", "INTEGER NOT NULL"),
            ("size", "TEXT NOT NULL"),
            *_ARTICLE_COLUMNS,
            ("title", "TEXT"),
            ("barcodes_json", "TEXT NOT NULL DEFAULT '[]'"),
            ("updated_at", "TEXT"),
        ),
    ),
}


def build_result_tables(db_path: Path) -> Dict[DatasetKey, KeyedTable]:
    tables = {dataset: KeyedTable(db_path, spec) for dataset, spec in RESULT_TABLES.items()}
    for table in tables.values():
        table.ensure()
    return tables
