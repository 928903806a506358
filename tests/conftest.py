"""Shared fixtures: a temporary repository, Up Bank payload builders and fakes.

No test talks to the network; the remote ledger is replaced either by
``FakeUpClient`` (for the sync engine) or by a fake ``requests`` session (for
the HTTP client itself).
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, Optional

import pytest

from ledger_dash.database import SQLiteRepository
from ledger_dash.errors import RemoteApiError
from ledger_dash.models import TransactionFilter, TransactionPage


# Payload builders -----------------------------------------------------------


def account_payload(
    account_id: str = "acc-1",
    *,
    name: str = "Spending",
    account_type: str = "TRANSACTIONAL",
    ownership_type: str = "INDIVIDUAL",
    value: str = "120.50",
    base_units: int = 12050,
    currency: str = "AUD",
    created_at: str = "2023-06-01T09:00:00+10:00",
) -> dict[str, Any]:
    return {
        "type": "accounts",
        "id": account_id,
        "attributes": {
            "displayName": name,
            "accountType": account_type,
            "ownershipType": ownership_type,
            "balance": {"currencyCode": currency, "value": value, "valueInBaseUnits": base_units},
            "createdAt": created_at,
        },
    }


def category_payload(category_id: str, name: str, parent_id: Optional[str] = None) -> dict[str, Any]:
    return {
        "type": "categories",
        "id": category_id,
        "attributes": {"name": name},
        "relationships": {
            "parent": {"data": {"type": "categories", "id": parent_id} if parent_id else None},
        },
    }


def transaction_payload(
    transaction_id: str,
    *,
    account_id: str = "acc-1",
    status: str = "SETTLED",
    description: str = "Woolworths",
    base_units: int = -1250,
    value: Optional[str] = None,
    created_at: str = "2024-01-05T10:00:00+11:00",
    settled_at: Optional[str] = None,
    category_id: Optional[str] = None,
    parent_category_id: Optional[str] = None,
    message: Optional[str] = None,
    foreign_amount: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    if value is None:
        value = f"{base_units / 100:.2f}"
    if settled_at is None and status == "SETTLED":
        settled_at = created_at
    return {
        "type": "transactions",
        "id": transaction_id,
        "attributes": {
            "status": status,
            "rawText": description.upper(),
            "description": description,
            "message": message,
            "amount": {"currencyCode": "AUD", "value": value, "valueInBaseUnits": base_units},
            "foreignAmount": foreign_amount,
            "settledAt": settled_at,
            "createdAt": created_at,
        },
        "relationships": {
            "account": {"data": {"type": "accounts", "id": account_id}},
            "category": {"data": {"type": "categories", "id": category_id} if category_id else None},
            "parentCategory": {
                "data": {"type": "categories", "id": parent_category_id} if parent_category_id else None
            },
        },
    }


DEFAULT_CATEGORIES = [
    category_payload("good-life", "Good Life"),
    category_payload("groceries", "Groceries", parent_id="good-life"),
    category_payload("transport", "Transport"),
    category_payload("fuel", "Fuel", parent_id="transport"),
]


# Fakes ----------------------------------------------------------------------


class FakeUpClient:
    """In-memory stand-in for :class:`ledger_dash.up_client.UpBankClient`.

    ``pages`` is a list of transaction payload lists; ``fail_on_page`` makes
    the stream raise :class:`RemoteApiError` when that (0-based) page is
    requested.
    """

    def __init__(
        self,
        *,
        accounts: Optional[list[dict[str, Any]]] = None,
        categories: Optional[list[dict[str, Any]]] = None,
        pages: Optional[list[list[dict[str, Any]]]] = None,
        fail_on_page: Optional[int] = None,
    ) -> None:
        self.accounts = accounts if accounts is not None else [account_payload()]
        self.categories = categories if categories is not None else list(DEFAULT_CATEGORIES)
        self.pages = pages if pages is not None else [[]]
        self.fail_on_page = fail_on_page
        self.filters: list[Optional[TransactionFilter]] = []
        self.pages_requested = 0
        self.calls: list[str] = []

    def list_accounts(self) -> list[dict[str, Any]]:
        self.calls.append("accounts")
        return list(self.accounts)

    def list_categories(self) -> list[dict[str, Any]]:
        self.calls.append("categories")
        return list(self.categories)

    def stream_transactions(
        self,
        transaction_filter: Optional[TransactionFilter] = None,
        cursor: Optional[str] = None,
    ) -> Iterator[TransactionPage]:
        self.calls.append("transactions")
        self.filters.append(transaction_filter)
        start = int(cursor) if cursor else 0
        for index in range(start, len(self.pages)):
            if index == self.fail_on_page:
                raise RemoteApiError("Up Bank API error: Bad Gateway", status=502, body={"errors": []})
            self.pages_requested += 1
            next_cursor = str(index + 1) if index + 1 < len(self.pages) else None
            yield TransactionPage(items=list(self.pages[index]), next_cursor=next_cursor)


class FakeClock:
    """Returns a strictly increasing UTC time, one second per call."""

    def __init__(self, start: datetime = datetime(2024, 2, 1, 12, 0, tzinfo=timezone.utc)) -> None:
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


# Fixtures -------------------------------------------------------------------


@pytest.fixture
def repository(tmp_path) -> Iterator[SQLiteRepository]:
    repo = SQLiteRepository(tmp_path / "ledger.db")
    repo.initialise_schema()
    yield repo
    repo.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_client() -> FakeUpClient:
    return FakeUpClient()


@pytest.fixture
def client_factory(fake_client):
    """Factory handed to ``SyncService``; records the tokens it was called with."""

    tokens: list[str] = []

    def factory(token: str) -> FakeUpClient:
        tokens.append(token)
        return fake_client

    factory.tokens = tokens
    return factory
