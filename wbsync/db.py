import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Iterator, Sequence

logger = logging.getLogger(__name__)

# ====================================================================
# SQLITE HARDENING: WAL MODE + TIMEOUT + WRITE LOCK
# - WAL lets the priority wave read while another branch writes
# - 10s timeout prevents infinite hangs on database locks
# - _db_write_lock serializes every INSERT/UPDATE/DELETE in the process
# ====================================================================

_db_write_lock = Lock()
_db_timeout = 10  # seconds


@contextmanager
def get_db_connection(db_path: Path) -> Iterator[sqlite3.Connection]:
    """
    Context manager for a scoped SQLite connection.
    - Enforces timeout to prevent infinite waits
    - Enables WAL mode for concurrent readers
    - Ensures cleanup even on exception
    """
    conn = None
    try:
        conn = sqlite3.connect(Path(db_path), timeout=_db_timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        yield conn
    except sqlite3.DatabaseError as e:
        logger.error("[DB] Database error on %s: %s", db_path, e, exc_info=True)
        raise
    finally:
        if conn:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning("[DB] Error closing connection: %s", e)


@contextmanager
def write_transaction(db_path: Path) -> Iterator[sqlite3.Connection]:
    """
    Hold the write lock for a multi-statement write; commits on success,
    rolls back on error.
    """
    with _db_write_lock:
        with get_db_connection(db_path) as conn:
            try:
                yield conn
                conn.commit()
            except sqlite3.OperationalError as e:
                conn.rollback()
                if "database is locked" in str(e):
                    logger.error("[DB] Database locked after %ss timeout: %s", _db_timeout, e)
                raise
            except Exception:
                conn.rollback()
                raise


def execute_write(db_path: Path, sql: str, params: Sequence = ()) -> int:
    """Serialize a single write statement; returns lastrowid."""
    with write_transaction(db_path) as conn:
        cur = conn.execute(sql, tuple(params))
        return cur.lastrowid


def execute_many_write(db_path: Path, sql: str, seq_of_params: list) -> None:
    """
    Batched write helper with the same write lock/timeout safety.
    """
    if not seq_of_params:
        return
    with write_transaction(db_path) as conn:
        try:
            conn.executemany(sql, seq_of_params)
        except sqlite3.DatabaseError as exc:
            logger.error(
                "[DB] Batch write failed for SQL: %s params_count=%s: %s",
                sql,
                len(seq_of_params),
                exc,
            )
            raise


def init_sync_tables(db_path: Path) -> None:
    """Create checkpoint, loaded-period and registry tables if missing."""
    with write_transaction(db_path) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_checkpoints (
                dataset TEXT NOT NULL,
                variant TEXT NOT NULL,
                cursor_time TEXT,
                cursor_token TEXT,
                high_watermark_time TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (dataset, variant)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_loaded_periods (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                dataset TEXT NOT NULL,
                period_type TEXT NOT NULL,
                date_from TEXT NOT NULL,
                date_to TEXT NOT NULL,
                applied_at TEXT NOT NULL,
                record_count INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_sync_loaded_periods_dataset "
            "ON sync_loaded_periods(dataset, date_from, date_to)"
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_registry (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at TEXT NOT NULL
            )
            """
        )
