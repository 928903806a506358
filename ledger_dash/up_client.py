"""HTTP client for the Up Bank ledger API."""
from __future__ import annotations

import logging
from typing import Iterator, Optional

import requests

from .config import DEFAULT_API_URL
from .errors import ConfigurationError, RemoteApiError
from .models import TransactionFilter, TransactionPage

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100


class UpBankClient:
    """Fetch accounts, categories and paginated transactions from Up Bank.

    Every non-2xx answer raises :class:`RemoteApiError`.  The client never
    retries; retry policy belongs to the caller.
    """

    def __init__(
        self,
        token: Optional[str],
        base_url: str = DEFAULT_API_URL,
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not token or not token.strip():
            raise ConfigurationError("An Up Bank API token is required.")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {token.strip()}",
                "Accept": "application/json",
            }
        )

    def close(self) -> None:
        self._session.close()

    # ------------------------------------------------------------------
    # Utility
    # ------------------------------------------------------------------
    def ping(self) -> str:
        """Check the token and return the id Up assigns to it."""

        payload = self._get("/util/ping")
        token_id = (payload.get("meta") or {}).get("id")
        if not token_id:
            raise RemoteApiError("Invalid response from Up Bank API ping", status=None, body=payload)
        return str(token_id)

    # ------------------------------------------------------------------
    # Accounts and categories
    # ------------------------------------------------------------------
    def list_accounts(self) -> list[dict[str, object]]:
        accounts: list[dict[str, object]] = []
        url: Optional[str] = "/accounts"
        params: Optional[dict[str, object]] = {"page[size]": DEFAULT_PAGE_SIZE}
        while url:
            payload = self._get(url, params=params)
            accounts.extend(payload.get("data") or [])
            url = (payload.get("links") or {}).get("next")
            params = None
        return accounts

    def list_categories(self) -> list[dict[str, object]]:
        payload = self._get("/categories")
        return list(payload.get("data") or [])

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    def fetch_transaction_page(
        self,
        transaction_filter: Optional[TransactionFilter] = None,
        cursor: Optional[str] = None,
    ) -> TransactionPage:
        """Fetch a single page of transactions.

        ``cursor`` is the opaque "next" link of a previous page.  When it is
        given the filter is ignored because the link already encodes it.
        """

        if cursor:
            payload = self._get(cursor)
        else:
            transaction_filter = transaction_filter or TransactionFilter()
            endpoint = "/transactions"
            if transaction_filter.account_id:
                endpoint = f"/accounts/{transaction_filter.account_id}/transactions"
            params: dict[str, object] = {
                "page[size]": transaction_filter.page_size or DEFAULT_PAGE_SIZE,
            }
            if transaction_filter.since:
                params["filter[since]"] = transaction_filter.since
            if transaction_filter.until:
                params["filter[until]"] = transaction_filter.until
            payload = self._get(endpoint, params=params)

        return TransactionPage(
            items=list(payload.get("data") or []),
            next_cursor=(payload.get("links") or {}).get("next") or None,
        )

    def stream_transactions(
        self,
        transaction_filter: Optional[TransactionFilter] = None,
        cursor: Optional[str] = None,
    ) -> Iterator[TransactionPage]:
        """Yield transaction pages lazily until the cursor runs out.

        Pass the ``next_cursor`` of an earlier page to resume from there.  The
        next page is only requested once the consumer asks for it.
        """

        page = self.fetch_transaction_page(transaction_filter, cursor)
        yield page
        while page.next_cursor:
            page = self.fetch_transaction_page(cursor=page.next_cursor)
            yield page

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _get(self, endpoint: str, params: Optional[dict[str, object]] = None) -> dict[str, object]:
        url = endpoint if endpoint.startswith("http") else f"{self._base_url}{endpoint}"
        logger.debug("GET %s params=%s", url, params)
        try:
            response = self._session.get(url, params=params, timeout=self._timeout)
        except requests.RequestException as exc:
            raise RemoteApiError(f"Up Bank API request failed: {exc}") from exc

        if not response.ok:
            try:
                body: object = response.json()
            except ValueError:
                body = response.text
            raise RemoteApiError(
                f"Up Bank API error: {response.reason or 'request rejected'}",
                status=response.status_code,
                body=body,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise RemoteApiError(
                "Up Bank API returned a body that is not JSON",
                status=response.status_code,
                body=response.text,
            ) from exc
