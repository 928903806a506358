"""Domain models used by the ledger_dash backend.

The classes defined here are lightweight data containers that do not know
anything about persistence or transport concerns.  Remote payloads are plain
JSON:API dictionaries; everything below is the local, flattened shape that the
store persists and the analytics reader consumes.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class AccountType(str, Enum):
    SAVER = "SAVER"
    TRANSACTIONAL = "TRANSACTIONAL"
    HOME_LOAN = "HOME_LOAN"


class OwnershipType(str, Enum):
    INDIVIDUAL = "INDIVIDUAL"
    JOINT = "JOINT"


class TransactionStatus(str, Enum):
    """``HELD`` rows are provisional and get replaced by a ``SETTLED`` row with the same id."""

    HELD = "HELD"
    SETTLED = "SETTLED"


class SyncStage(str, Enum):
    """Stages reported through the progress callback."""

    ACCOUNTS = "accounts"
    CATEGORIES = "categories"
    TRANSACTIONS = "transactions"
    COMPLETE = "complete"


class SyncState(str, Enum):
    """Lifecycle of a single sync run."""

    IDLE = "idle"
    ACCOUNTS = "accounts"
    CATEGORIES = "categories"
    TRANSACTIONS = "transactions"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(slots=True)
class Account:
    """Bank account as persisted in the local database.

    ``balance_value_in_base_units`` is the authoritative amount;
    ``balance_value`` mirrors it as a decimal string for display.
    """

    id: str
    display_name: str
    account_type: AccountType
    ownership_type: OwnershipType
    balance_value: str
    balance_currency: str
    balance_value_in_base_units: int
    created_at: str
    synced_at: str


@dataclass(slots=True)
class Category:
    id: str
    name: str
    parent_id: Optional[str]
    synced_at: str


@dataclass(slots=True)
class Transaction:
    """Transaction row with category names denormalised at sync time.

    Amounts are signed: negative values are outflows, positive values inflows.
    """

    id: str
    account_id: str
    status: TransactionStatus
    description: str
    amount_value: str
    amount_currency: str
    amount_value_in_base_units: int
    created_at: str
    synced_at: str
    raw_text: Optional[str] = None
    message: Optional[str] = None
    foreign_amount_value: Optional[str] = None
    foreign_amount_currency: Optional[str] = None
    settled_at: Optional[str] = None
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    parent_category_id: Optional[str] = None
    parent_category_name: Optional[str] = None


@dataclass(slots=True)
class TransactionFilter:
    """Query parameters for the remote transaction stream.

    ``since`` and ``until`` are RFC 3339 timestamps; ``since`` is inclusive.
    """

    since: Optional[str] = None
    until: Optional[str] = None
    page_size: Optional[int] = None
    account_id: Optional[str] = None


@dataclass(slots=True)
class TransactionPage:
    """One page of remote transactions plus the cursor for the next page.

    ``next_cursor`` is ``None`` on the last page.
    """

    items: list[dict[str, object]] = field(default_factory=list)
    next_cursor: Optional[str] = None


@dataclass(slots=True)
class SyncProgress:
    stage: SyncStage
    current: int
    total: Optional[int]
    message: str


@dataclass(slots=True)
class SyncStatus:
    """Snapshot of the mirror used to decide between first-run sync and rendering data."""

    is_initialized: bool
    last_full_sync: Optional[str]
    last_incremental_sync: Optional[str]
    total_accounts: int
    total_transactions: int
    total_categories: int


__all__ = [
    "AccountType",
    "OwnershipType",
    "TransactionStatus",
    "SyncStage",
    "SyncState",
    "Account",
    "Category",
    "Transaction",
    "TransactionFilter",
    "TransactionPage",
    "SyncProgress",
    "SyncStatus",
]
