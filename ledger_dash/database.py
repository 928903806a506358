"""SQLite persistence layer for the ledger_dash backend.

The repository provides a small, well-typed API that hides SQL details from the
rest of the code.  It relies on the standard library :mod:`sqlite3` module.
The sync engine is the only writer; every batch upsert is applied inside one
SQLite transaction so a batch is either fully stored or not stored at all.
The connection is shared with the API's worker threads, so reads and writes
take the same lock and a reader never observes half of a batch.
"""
from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, Mapping, Optional

from .errors import StoreError
from .models import Account, Category, SyncStatus, Transaction

LAST_FULL_SYNC = "last_full_sync"
LAST_INCREMENTAL_SYNC = "last_incremental_sync"

# Stays under SQLite's host parameter limit.
_ID_CHUNK = 500


class SQLiteRepository:
    """Encapsulates all SQLite access for the application."""

    def __init__(self, database_path: Path | str) -> None:
        self._database_path = database_path
        self._lock = threading.RLock()
        try:
            self._connection = sqlite3.connect(database_path, check_same_thread=False)
            self._connection.execute("PRAGMA foreign_keys = ON;")
            if str(database_path) != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL;")
        except sqlite3.Error as exc:
            raise StoreError(f"Unable to open database {database_path}: {exc}") from exc
        self._connection.row_factory = sqlite3.Row

    def close(self) -> None:
        """Close the underlying SQLite connection."""

        with self._lock:
            self._connection.close()

    @property
    def connection(self) -> sqlite3.Connection:
        """Raw connection, for schema inspection only; use :meth:`query` for reads."""

        return self._connection

    def query(self, sql: str, params: Iterable[object] = ()) -> list[dict[str, object]]:
        """Run a read-only statement and return its rows as dictionaries."""

        return self._fetch_all(sql, params)

    # ------------------------------------------------------------------
    # Schema management
    # ------------------------------------------------------------------
    def initialise_schema(self) -> None:
        """Create all tables and indexes required by the application if they do not exist."""

        with self._write("initialise schema") as cursor:
            cursor.executescript(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    account_type TEXT NOT NULL,
                    ownership_type TEXT NOT NULL,
                    balance_value TEXT NOT NULL,
                    balance_currency TEXT NOT NULL,
                    balance_value_in_base_units INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    synced_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS transactions (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL REFERENCES accounts(id),
                    status TEXT NOT NULL,
                    raw_text TEXT,
                    description TEXT NOT NULL,
                    message TEXT,
                    amount_value TEXT NOT NULL,
                    amount_currency TEXT NOT NULL,
                    amount_value_in_base_units INTEGER NOT NULL,
                    foreign_amount_value TEXT,
                    foreign_amount_currency TEXT,
                    settled_at TEXT,
                    created_at TEXT NOT NULL,
                    category_id TEXT,
                    category_name TEXT,
                    parent_category_id TEXT,
                    parent_category_name TEXT,
                    synced_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS categories (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    parent_id TEXT REFERENCES categories(id) DEFERRABLE INITIALLY DEFERRED,
                    synced_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS sync_metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_transactions_created_at ON transactions(created_at);
                CREATE INDEX IF NOT EXISTS idx_transactions_account_id ON transactions(account_id);
                CREATE INDEX IF NOT EXISTS idx_transactions_category_id ON transactions(category_id);
                CREATE INDEX IF NOT EXISTS idx_transactions_category_name ON transactions(category_name);
                CREATE INDEX IF NOT EXISTS idx_transactions_description ON transactions(description);
                CREATE INDEX IF NOT EXISTS idx_transactions_amount ON transactions(amount_value_in_base_units);
                CREATE INDEX IF NOT EXISTS idx_transactions_status_date ON transactions(status, created_at);
                CREATE INDEX IF NOT EXISTS idx_transactions_status_amount
                    ON transactions(status, amount_value_in_base_units);
                """
            )

    # ------------------------------------------------------------------
    # Batch upserts
    # ------------------------------------------------------------------
    def upsert_accounts(self, accounts: Iterable[Account]) -> int:
        """Insert or overwrite accounts keyed by id. Returns the number of rows written."""

        rows = [
            {
                "id": account.id,
                "display_name": account.display_name,
                "account_type": _enum_value(account.account_type),
                "ownership_type": _enum_value(account.ownership_type),
                "balance_value": account.balance_value,
                "balance_currency": account.balance_currency,
                "balance_value_in_base_units": account.balance_value_in_base_units,
                "created_at": account.created_at,
                "synced_at": account.synced_at,
            }
            for account in accounts
        ]
        with self._write("upsert accounts") as cursor:
            cursor.executemany(
                """
                INSERT INTO accounts (
                    id, display_name, account_type, ownership_type,
                    balance_value, balance_currency, balance_value_in_base_units,
                    created_at, synced_at
                ) VALUES (
                    :id, :display_name, :account_type, :ownership_type,
                    :balance_value, :balance_currency, :balance_value_in_base_units,
                    :created_at, :synced_at
                )
                ON CONFLICT(id) DO UPDATE SET
                    display_name=excluded.display_name,
                    account_type=excluded.account_type,
                    ownership_type=excluded.ownership_type,
                    balance_value=excluded.balance_value,
                    balance_currency=excluded.balance_currency,
                    balance_value_in_base_units=excluded.balance_value_in_base_units,
                    created_at=excluded.created_at,
                    synced_at=excluded.synced_at
                ;
                """,
                rows,
            )
        return len(rows)

    def upsert_categories(self, categories: Iterable[Category]) -> int:
        rows = [
            {
                "id": category.id,
                "name": category.name,
                "parent_id": category.parent_id,
                "synced_at": category.synced_at,
            }
            for category in categories
        ]
        with self._write("upsert categories") as cursor:
            cursor.executemany(
                """
                INSERT INTO categories (id, name, parent_id, synced_at)
                VALUES (:id, :name, :parent_id, :synced_at)
                ON CONFLICT(id) DO UPDATE SET
                    name=excluded.name,
                    parent_id=excluded.parent_id,
                    synced_at=excluded.synced_at
                ;
                """,
                rows,
            )
        return len(rows)

    def upsert_transactions(self, transactions: Iterable[Transaction]) -> int:
        """Insert or overwrite a batch of transactions.

        A row with an existing id is replaced column by column, which is how a
        ``HELD`` transaction becomes ``SETTLED`` without leaving a duplicate.
        Returns the number of ids in the batch that were not stored before.
        """

        rows = [
            {
                "id": tx.id,
                "account_id": tx.account_id,
                "status": _enum_value(tx.status),
                "raw_text": tx.raw_text,
                "description": tx.description,
                "message": tx.message,
                "amount_value": tx.amount_value,
                "amount_currency": tx.amount_currency,
                "amount_value_in_base_units": tx.amount_value_in_base_units,
                "foreign_amount_value": tx.foreign_amount_value,
                "foreign_amount_currency": tx.foreign_amount_currency,
                "settled_at": tx.settled_at,
                "created_at": tx.created_at,
                "category_id": tx.category_id,
                "category_name": tx.category_name,
                "parent_category_id": tx.parent_category_id,
                "parent_category_name": tx.parent_category_name,
                "synced_at": tx.synced_at,
            }
            for tx in transactions
        ]
        with self._write("upsert transactions") as cursor:
            batch_ids = {row["id"] for row in rows}
            existing = _existing_ids(cursor, "transactions", batch_ids)
            cursor.executemany(
                """
                INSERT INTO transactions (
                    id, account_id, status, raw_text, description, message,
                    amount_value, amount_currency, amount_value_in_base_units,
                    foreign_amount_value, foreign_amount_currency,
                    settled_at, created_at,
                    category_id, category_name, parent_category_id, parent_category_name,
                    synced_at
                ) VALUES (
                    :id, :account_id, :status, :raw_text, :description, :message,
                    :amount_value, :amount_currency, :amount_value_in_base_units,
                    :foreign_amount_value, :foreign_amount_currency,
                    :settled_at, :created_at,
                    :category_id, :category_name, :parent_category_id, :parent_category_name,
                    :synced_at
                )
                ON CONFLICT(id) DO UPDATE SET
                    account_id=excluded.account_id,
                    status=excluded.status,
                    raw_text=excluded.raw_text,
                    description=excluded.description,
                    message=excluded.message,
                    amount_value=excluded.amount_value,
                    amount_currency=excluded.amount_currency,
                    amount_value_in_base_units=excluded.amount_value_in_base_units,
                    foreign_amount_value=excluded.foreign_amount_value,
                    foreign_amount_currency=excluded.foreign_amount_currency,
                    settled_at=excluded.settled_at,
                    created_at=excluded.created_at,
                    category_id=excluded.category_id,
                    category_name=excluded.category_name,
                    parent_category_id=excluded.parent_category_id,
                    parent_category_name=excluded.parent_category_name,
                    synced_at=excluded.synced_at
                ;
                """,
                rows,
            )
        return len(batch_ids - existing)

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------
    def list_accounts(self) -> list[dict[str, object]]:
        return self._fetch_all("SELECT * FROM accounts ORDER BY created_at ASC")

    def list_categories(self) -> list[dict[str, object]]:
        return self._fetch_all("SELECT * FROM categories ORDER BY name ASC")

    def list_transactions(
        self,
        limit: Optional[int] = 200,
        account_id: Optional[str] = None,
        search: Optional[str] = None,
    ) -> list[dict[str, object]]:
        """Return the most recent transactions, optionally filtered by account or description."""

        clauses: list[str] = []
        params: list[object] = []
        if account_id:
            clauses.append("account_id = ?")
            params.append(account_id)
        if search:
            clauses.append("description LIKE ?")
            params.append(f"%{search}%")

        query = "SELECT * FROM transactions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return self._fetch_all(query, params)

    def get_transaction(self, transaction_id: str) -> Optional[dict[str, object]]:
        rows = self._fetch_all("SELECT * FROM transactions WHERE id = ?", (transaction_id,))
        return rows[0] if rows else None

    def count_transactions(self) -> int:
        return self._count("transactions")

    # ------------------------------------------------------------------
    # Sync metadata
    # ------------------------------------------------------------------
    def set_watermark(self, key: str, value: str) -> None:
        self.set_watermarks({key: value})

    def set_watermarks(self, values: Mapping[str, str]) -> None:
        """Write several watermarks in one transaction; either all change or none do."""

        updated_at = datetime.now(timezone.utc).isoformat()
        with self._write(f"set watermarks {', '.join(values)}") as cursor:
            cursor.executemany(
                """
                INSERT INTO sync_metadata (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """,
                [(key, value, updated_at) for key, value in values.items()],
            )

    def get_watermark(self, key: str) -> Optional[str]:
        rows = self._fetch_all("SELECT value FROM sync_metadata WHERE key = ?", (key,))
        if not rows:
            return None
        return str(rows[0]["value"])

    def get_sync_status(self) -> SyncStatus:
        with self._lock:
            last_full_sync = self.get_watermark(LAST_FULL_SYNC)
            return SyncStatus(
                is_initialized=last_full_sync is not None,
                last_full_sync=last_full_sync,
                last_incremental_sync=self.get_watermark(LAST_INCREMENTAL_SYNC),
                total_accounts=self._count("accounts"),
                total_transactions=self._count("transactions"),
                total_categories=self._count("categories"),
            )

    def clear_all_data(self) -> None:
        """Remove every mirrored row and watermark, returning the store to first-run state."""

        with self._write("clear data") as cursor:
            cursor.execute("DELETE FROM transactions")
            cursor.execute("DELETE FROM categories")
            cursor.execute("DELETE FROM accounts")
            cursor.execute("DELETE FROM sync_metadata")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @contextmanager
    def _write(self, operation: str) -> Iterator[sqlite3.Cursor]:
        """Run a write inside one transaction; roll back and raise :class:`StoreError` on failure."""

        with self._lock:
            cursor = self._connection.cursor()
            try:
                yield cursor
                self._connection.commit()
            except sqlite3.Error as exc:
                self._connection.rollback()
                raise StoreError(f"Failed to {operation}: {exc}") from exc
            finally:
                cursor.close()

    def _fetch_all(self, query: str, params: Iterable[object] = ()) -> list[dict[str, object]]:
        with self._lock:
            try:
                rows = self._connection.execute(query, tuple(params)).fetchall()
            except sqlite3.Error as exc:
                raise StoreError(f"Query failed: {exc}") from exc
        return [dict(row) for row in rows]

    def _count(self, table: str) -> int:
        rows = self._fetch_all(f"SELECT COUNT(*) AS count FROM {table}")
        return int(rows[0]["count"])


def _existing_ids(cursor: sqlite3.Cursor, table: str, ids: set[str]) -> set[str]:
    found: set[str] = set()
    pending = sorted(ids)
    for start in range(0, len(pending), _ID_CHUNK):
        chunk = pending[start : start + _ID_CHUNK]
        placeholders = ", ".join("?" for _ in chunk)
        cursor.execute(f"SELECT id FROM {table} WHERE id IN ({placeholders})", chunk)
        found.update(row[0] for row in cursor.fetchall())
    return found


def _enum_value(value: object) -> str:
    return str(getattr(value, "value", value))
