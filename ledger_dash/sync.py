"""Sync engine mirroring the Up Bank ledger into the local SQLite store.

Two workflows are offered:

* :meth:`SyncService.perform_full_sync` pulls every account, category and
  transaction and establishes both watermarks.
* :meth:`SyncService.perform_incremental_sync` refreshes accounts, re-reads
  category names and pulls only transactions created since the last run.

Transaction pages are transformed and committed one at a time; the next page
is requested only after the previous one is stored, so a failure half way
through leaves every earlier page in the database.  The engine never retries
and never falls back from incremental to full sync.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, Mapping, Optional

from .database import LAST_FULL_SYNC, LAST_INCREMENTAL_SYNC, SQLiteRepository
from .errors import ConfigurationError, NoPriorSyncError, SyncError, SyncInProgressError
from .models import SyncProgress, SyncStage, SyncState, SyncStatus, TransactionFilter
from .transformers import (
    build_category_index,
    format_timestamp,
    parse_timestamp,
    to_local_account,
    to_local_category,
    to_local_transaction,
)
from .up_client import DEFAULT_PAGE_SIZE, UpBankClient

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[SyncProgress], None]

# Incremental runs look this far behind the stored watermark so transactions
# created while the previous run was in flight are not skipped.
WATERMARK_OVERLAP = timedelta(minutes=5)


class SyncService:
    """Coordinates the remote client, the transformer and the repository."""

    def __init__(
        self,
        repository: SQLiteRepository,
        client_factory: Callable[[str], UpBankClient] = UpBankClient,
        page_size: int = DEFAULT_PAGE_SIZE,
        watermark_overlap: timedelta = WATERMARK_OVERLAP,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._repository = repository
        self._client_factory = client_factory
        self._page_size = page_size
        self._watermark_overlap = watermark_overlap
        self._clock = clock
        self._lock = threading.Lock()
        self._state = SyncState.IDLE

    @property
    def state(self) -> SyncState:
        return self._state

    def get_sync_status(self) -> SyncStatus:
        return self._repository.get_sync_status()

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------
    def perform_full_sync(self, token: Optional[str], on_progress: Optional[ProgressCallback] = None) -> int:
        """Mirror every account, category and transaction.

        Returns the number of transactions stored.  Both watermarks are set to
        the completion time, so a later incremental sync starts from here.
        """

        _check_token(token)
        with self._single_flight():
            try:
                client = self._client_factory(token)
                self._sync_accounts(client, on_progress)
                category_index = self._sync_categories(client, on_progress)
                total = self._sync_transactions(
                    client,
                    TransactionFilter(page_size=self._page_size),
                    category_index,
                    on_progress,
                    label="transactions",
                )
                finished_at = format_timestamp(self._clock())
                self._repository.set_watermarks({LAST_FULL_SYNC: finished_at, LAST_INCREMENTAL_SYNC: finished_at})
            except SyncError:
                self._state = SyncState.FAILED
                logger.exception("Full sync failed")
                raise

            self._state = SyncState.COMPLETE
            logger.info("Full sync complete: %d transactions", total)
            _report(on_progress, SyncStage.COMPLETE, total, total, f"Full sync complete! {total} transactions synced.")
            return total

    def perform_incremental_sync(
        self,
        token: Optional[str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Pull transactions created since the last run and refresh balances.

        Raises :class:`NoPriorSyncError` without touching the store or the
        network when no full sync has been recorded.  Returns the number of
        transactions the store did not hold before this run; ``0`` is a normal
        outcome.
        """

        _check_token(token)
        with self._single_flight():
            last_sync = self._repository.get_watermark(LAST_INCREMENTAL_SYNC)
            if last_sync is None or self._repository.get_watermark(LAST_FULL_SYNC) is None:
                self._state = SyncState.FAILED
                raise NoPriorSyncError()

            try:
                since = format_timestamp(parse_timestamp(last_sync) - self._watermark_overlap)
                client = self._client_factory(token)
                self._sync_accounts(client, on_progress)
                # Categories are re-read only to keep the name index current.
                category_index = build_category_index(client.list_categories())
                count = self._sync_transactions(
                    client,
                    TransactionFilter(since=since, page_size=self._page_size),
                    category_index,
                    on_progress,
                    label="new transactions",
                    count_new_only=True,
                )
                self._repository.set_watermark(LAST_INCREMENTAL_SYNC, format_timestamp(self._clock()))
            except SyncError:
                self._state = SyncState.FAILED
                logger.exception("Incremental sync failed")
                raise

            self._state = SyncState.COMPLETE
            message = f"Synced {count} new transaction(s)" if count else "No new transactions"
            logger.info("Incremental sync complete: %s", message)
            _report(on_progress, SyncStage.COMPLETE, count, count, message)
            return count

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def _sync_accounts(self, client: UpBankClient, on_progress: Optional[ProgressCallback]) -> int:
        self._state = SyncState.ACCOUNTS
        _report(on_progress, SyncStage.ACCOUNTS, 0, None, "Fetching accounts...")
        synced_at = self._now()
        accounts = [to_local_account(remote, synced_at) for remote in client.list_accounts()]
        self._repository.upsert_accounts(accounts)
        logger.info("Synced %d account(s)", len(accounts))
        _report(on_progress, SyncStage.ACCOUNTS, len(accounts), len(accounts), f"Synced {len(accounts)} account(s)")
        return len(accounts)

    def _sync_categories(
        self,
        client: UpBankClient,
        on_progress: Optional[ProgressCallback],
    ) -> Mapping[str, str]:
        self._state = SyncState.CATEGORIES
        _report(on_progress, SyncStage.CATEGORIES, 0, None, "Fetching categories...")
        synced_at = self._now()
        remote_categories = client.list_categories()
        categories = [to_local_category(remote, synced_at) for remote in remote_categories]
        self._repository.upsert_categories(categories)
        logger.info("Synced %d categories", len(categories))
        _report(
            on_progress,
            SyncStage.CATEGORIES,
            len(categories),
            len(categories),
            f"Synced {len(categories)} categories",
        )
        return build_category_index(remote_categories)

    def _sync_transactions(
        self,
        client: UpBankClient,
        transaction_filter: TransactionFilter,
        category_index: Mapping[str, str],
        on_progress: Optional[ProgressCallback],
        label: str,
        count_new_only: bool = False,
    ) -> int:
        """Store the stream page by page and return how many rows were counted.

        With ``count_new_only`` a row only counts when its id was not already
        stored, so rows re-fetched through the overlap window are not counted
        twice while rows an earlier run missed still are.
        """

        self._state = SyncState.TRANSACTIONS
        _report(on_progress, SyncStage.TRANSACTIONS, 0, None, f"Fetching {label}...")
        total = 0
        for page_number, page in enumerate(client.stream_transactions(transaction_filter), start=1):
            if not page.items:
                continue
            synced_at = self._now()
            rows = [to_local_transaction(remote, category_index, synced_at) for remote in page.items]
            inserted = self._repository.upsert_transactions(rows)
            total += inserted if count_new_only else len(rows)
            logger.debug("Stored page %d (%d rows, %d total)", page_number, len(rows), total)
            _report(on_progress, SyncStage.TRANSACTIONS, total, None, f"Synced {total} {label}...")
        return total

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _single_flight(self) -> Iterator[None]:
        """Hold the service lock for one run; a second caller fails immediately."""

        if not self._lock.acquire(blocking=False):
            raise SyncInProgressError("A sync is already running.")
        try:
            self._state = SyncState.IDLE
            yield
        finally:
            self._lock.release()

    def _now(self) -> str:
        return format_timestamp(self._clock())


def _check_token(token: Optional[str]) -> None:
    if not token or not token.strip():
        raise ConfigurationError("An Up Bank API token is required to sync.")


def _report(
    on_progress: Optional[ProgressCallback],
    stage: SyncStage,
    current: int,
    total: Optional[int],
    message: str,
) -> None:
    if on_progress is not None:
        on_progress(SyncProgress(stage=stage, current=current, total=total, message=message))
