"""Tests for the SQLite repository: upsert semantics, atomicity and watermarks."""
import threading

import pytest

from conftest import DEFAULT_CATEGORIES, account_payload, transaction_payload
from ledger_dash.database import LAST_FULL_SYNC, LAST_INCREMENTAL_SYNC, SQLiteRepository
from ledger_dash.errors import StoreError
from ledger_dash.transformers import (
    build_category_index,
    to_local_account,
    to_local_category,
    to_local_transaction,
)

SYNCED_AT = "2024-02-01T00:00:00+00:00"


def _tx(transaction_id, **kwargs):
    return to_local_transaction(
        transaction_payload(transaction_id, **kwargs),
        build_category_index(DEFAULT_CATEGORIES),
        SYNCED_AT,
    )


@pytest.fixture
def seeded(repository):
    repository.upsert_accounts([to_local_account(account_payload("acc-1"), SYNCED_AT)])
    return repository


class TestSchema:
    def test_initialise_is_idempotent(self, repository):
        repository.initialise_schema()
        assert repository.get_sync_status().total_transactions == 0

    def test_indexes_exist(self, repository):
        rows = repository.connection.execute(
            "SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = 'transactions'"
        ).fetchall()
        names = {row["name"] for row in rows}
        assert {
            "idx_transactions_created_at",
            "idx_transactions_account_id",
            "idx_transactions_category_id",
            "idx_transactions_category_name",
            "idx_transactions_status_date",
            "idx_transactions_amount",
        } <= names


class TestTransactionUpserts:
    def test_same_id_overwrites_in_place(self, seeded):
        seeded.upsert_transactions([_tx("tx-1", description="Coles", base_units=-1000)])
        seeded.upsert_transactions([_tx("tx-1", description="Coles Express", base_units=-2000)])

        assert seeded.count_transactions() == 1
        row = seeded.get_transaction("tx-1")
        assert row["description"] == "Coles Express"
        assert row["amount_value_in_base_units"] == -2000
        assert row["amount_value"] == "-20.00"

    def test_held_to_settled_transition(self, seeded):
        seeded.upsert_transactions([_tx("tx-1", status="HELD")])
        assert seeded.get_transaction("tx-1")["settled_at"] is None

        seeded.upsert_transactions(
            [_tx("tx-1", status="SETTLED", settled_at="2024-01-06T09:00:00+11:00")]
        )

        assert seeded.count_transactions() == 1
        row = seeded.get_transaction("tx-1")
        assert row["status"] == "SETTLED"
        assert row["settled_at"] == "2024-01-05T22:00:00+00:00"

    def test_overwrite_clears_fields_that_became_null(self, seeded):
        seeded.upsert_transactions([_tx("tx-1", category_id="groceries", parent_category_id="good-life")])
        seeded.upsert_transactions([_tx("tx-1")])
        row = seeded.get_transaction("tx-1")
        assert row["category_id"] is None
        assert row["category_name"] is None

    def test_batch_is_all_or_nothing(self, seeded):
        batch = [_tx("tx-1"), _tx("tx-2", account_id="missing-account"), _tx("tx-3")]
        with pytest.raises(StoreError, match="upsert transactions"):
            seeded.upsert_transactions(batch)
        assert seeded.count_transactions() == 0

    def test_failed_batch_leaves_earlier_batches(self, seeded):
        seeded.upsert_transactions([_tx("tx-1")])
        with pytest.raises(StoreError):
            seeded.upsert_transactions([_tx("tx-2", account_id="missing-account")])
        assert seeded.count_transactions() == 1

    def test_empty_batch(self, seeded):
        assert seeded.upsert_transactions([]) == 0

    def test_returns_only_ids_not_stored_before(self, seeded):
        assert seeded.upsert_transactions([_tx("tx-1"), _tx("tx-2")]) == 2
        assert seeded.upsert_transactions([_tx("tx-2"), _tx("tx-3"), _tx("tx-3")]) == 1
        assert seeded.count_transactions() == 3

    def test_readers_wait_for_an_open_batch(self, seeded):
        seen = []
        reader = threading.Thread(target=lambda: seen.append(seeded.count_transactions()))

        with seeded._write("hold batch") as cursor:
            cursor.execute(
                "INSERT INTO transactions (id, account_id, status, description, amount_value, amount_currency,"
                " amount_value_in_base_units, created_at, synced_at)"
                " VALUES ('tx-1', 'acc-1', 'HELD', 'Coles', '-1.00', 'AUD', -100, ?, ?)",
                (SYNCED_AT, SYNCED_AT),
            )
            reader.start()
            reader.join(timeout=0.2)
            assert reader.is_alive()

        reader.join(timeout=5)
        assert seen == [1]


class TestAccountsAndCategories:
    def test_account_refresh_keeps_transactions(self, seeded):
        seeded.upsert_transactions([_tx("tx-1")])
        seeded.upsert_accounts([to_local_account(account_payload("acc-1", value="5.00", base_units=500), SYNCED_AT)])

        accounts = seeded.list_accounts()
        assert len(accounts) == 1
        assert accounts[0]["balance_value_in_base_units"] == 500
        assert seeded.count_transactions() == 1

    def test_children_may_precede_parents_in_a_batch(self, repository):
        categories = [to_local_category(payload, SYNCED_AT) for payload in reversed(DEFAULT_CATEGORIES)]
        assert repository.upsert_categories(categories) == 4
        assert repository.get_sync_status().total_categories == 4

    def test_dangling_parent_rejected(self, repository):
        orphan = to_local_category(
            {"id": "orphan", "attributes": {"name": "Orphan"},
             "relationships": {"parent": {"data": {"type": "categories", "id": "nope"}}}},
            SYNCED_AT,
        )
        with pytest.raises(StoreError):
            repository.upsert_categories([orphan])
        assert repository.list_categories() == []


class TestWatermarks:
    def test_missing_watermark_is_none(self, repository):
        assert repository.get_watermark(LAST_FULL_SYNC) is None

    def test_set_then_overwrite(self, repository):
        repository.set_watermark(LAST_INCREMENTAL_SYNC, "2024-01-01T00:00:00+00:00")
        repository.set_watermark(LAST_INCREMENTAL_SYNC, "2024-01-02T00:00:00+00:00")
        assert repository.get_watermark(LAST_INCREMENTAL_SYNC) == "2024-01-02T00:00:00+00:00"

    def test_set_watermarks_is_all_or_nothing(self, repository):
        with pytest.raises(StoreError):
            repository.set_watermarks({LAST_FULL_SYNC: "2024-01-01T00:00:00+00:00", LAST_INCREMENTAL_SYNC: None})
        assert repository.get_watermark(LAST_FULL_SYNC) is None
        assert repository.get_sync_status().is_initialized is False

        repository.set_watermarks(
            {LAST_FULL_SYNC: "2024-01-01T00:00:00+00:00", LAST_INCREMENTAL_SYNC: "2024-01-01T00:00:00+00:00"}
        )
        assert repository.get_watermark(LAST_INCREMENTAL_SYNC) == "2024-01-01T00:00:00+00:00"

    def test_status_initialised_only_after_full_sync_marker(self, repository):
        repository.set_watermark(LAST_INCREMENTAL_SYNC, "2024-01-01T00:00:00+00:00")
        assert repository.get_sync_status().is_initialized is False

        repository.set_watermark(LAST_FULL_SYNC, "2024-01-01T00:00:00+00:00")
        status = repository.get_sync_status()
        assert status.is_initialized is True
        assert status.last_full_sync == "2024-01-01T00:00:00+00:00"


class TestReads:
    def test_list_transactions_newest_first_with_filters(self, seeded):
        seeded.upsert_accounts([to_local_account(account_payload("acc-2", name="Saver"), SYNCED_AT)])
        seeded.upsert_transactions(
            [
                _tx("tx-1", description="Coles", created_at="2024-01-01T10:00:00+11:00"),
                _tx("tx-2", description="Uber", created_at="2024-01-03T10:00:00+11:00"),
                _tx("tx-3", description="Coles", account_id="acc-2", created_at="2024-01-02T10:00:00+11:00"),
            ]
        )

        assert [row["id"] for row in seeded.list_transactions()] == ["tx-2", "tx-3", "tx-1"]
        assert [row["id"] for row in seeded.list_transactions(search="Coles")] == ["tx-3", "tx-1"]
        assert [row["id"] for row in seeded.list_transactions(account_id="acc-2")] == ["tx-3"]
        assert len(seeded.list_transactions(limit=1)) == 1

    def test_clear_all_data(self, seeded):
        seeded.upsert_transactions([_tx("tx-1")])
        seeded.set_watermark(LAST_FULL_SYNC, SYNCED_AT)
        seeded.clear_all_data()
        status = seeded.get_sync_status()
        assert status.is_initialized is False
        assert status.total_accounts == 0
        assert status.total_transactions == 0


def test_memory_database_supported():
    repo = SQLiteRepository(":memory:")
    repo.initialise_schema()
    assert repo.get_sync_status().total_accounts == 0
    repo.close()
