"""Read-only aggregate queries over the mirrored ledger.

The reader never writes.  Category names are already denormalised onto each
transaction row, so none of the queries below join against ``categories``.
Amounts are integer minor units unless stated otherwise and only ``SETTLED``
transactions are counted.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

import pandas as pd
from dateutil.relativedelta import relativedelta

from .database import SQLiteRepository
from .transformers import format_timestamp

# Movements between the owner's own accounts are not income or spending.
INTERNAL_TRANSFER_PATTERNS = (
    "%Transfer from%",
    "%Transfer to%",
    "%Auto Transfer%",
    "%Quick save transfer%",
    "Round Up",
    "Cover from%",
    "Cover to%",
    "Forward to%",
)

_INTERNAL_FILTER = " ".join(f"AND description NOT LIKE '{pattern}'" for pattern in INTERNAL_TRANSFER_PATTERNS)


class AnalyticsReader:
    """Pre-aggregated views for the dashboard."""

    def __init__(
        self,
        repository: SQLiteRepository,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._repository = repository
        self._clock = clock

    # ------------------------------------------------------------------
    # Spending
    # ------------------------------------------------------------------
    def category_spending(self, days: Optional[int] = None) -> list[dict[str, object]]:
        window, params = self._window(days=days)
        return self._query(
            f"""
            SELECT
                COALESCE(category_name, 'Uncategorized') AS category,
                parent_category_name AS parent_category,
                COUNT(*) AS transaction_count,
                SUM(ABS(amount_value_in_base_units)) AS amount
            FROM transactions
            WHERE amount_value_in_base_units < 0
              AND status = 'SETTLED'
              {window}
              {_INTERNAL_FILTER}
            GROUP BY category, parent_category
            ORDER BY amount DESC
            """,
            params,
        )

    def top_merchants(self, days: int, limit: int = 10) -> list[dict[str, object]]:
        window, params = self._window(days=days)
        return self._query(
            f"""
            SELECT
                description AS merchant,
                COUNT(*) AS transaction_count,
                SUM(ABS(amount_value_in_base_units)) AS amount,
                AVG(ABS(amount_value_in_base_units)) AS average_transaction
            FROM transactions
            WHERE amount_value_in_base_units < 0
              AND status = 'SETTLED'
              {window}
              {_INTERNAL_FILTER}
            GROUP BY description
            ORDER BY amount DESC
            LIMIT ?
            """,
            [*params, limit],
        )

    # ------------------------------------------------------------------
    # Cash flow
    # ------------------------------------------------------------------
    def income_vs_expenses(self, months: int) -> list[dict[str, object]]:
        window, params = self._window(months=months)
        return self._query(
            f"""
            SELECT
                substr(created_at, 1, 7) AS month,
                SUM(CASE WHEN amount_value_in_base_units > 0 THEN amount_value_in_base_units ELSE 0 END) AS income,
                SUM(CASE WHEN amount_value_in_base_units < 0 THEN ABS(amount_value_in_base_units) ELSE 0 END)
                    AS expenses
            FROM transactions
            WHERE status = 'SETTLED'
              {window}
              {_INTERNAL_FILTER}
            GROUP BY month
            ORDER BY month ASC
            """,
            params,
        )

    def balance_timeline(self, days: Optional[int] = None) -> list[dict[str, object]]:
        window, params = self._window(days=days)
        return self._query(
            f"""
            SELECT
                substr(created_at, 1, 10) AS date,
                SUM(CASE WHEN amount_value_in_base_units > 0 THEN amount_value_in_base_units ELSE 0 END) AS income,
                SUM(CASE WHEN amount_value_in_base_units < 0 THEN ABS(amount_value_in_base_units) ELSE 0 END)
                    AS expenses,
                COUNT(*) AS transaction_count
            FROM transactions
            WHERE status = 'SETTLED'
              {window}
              {_INTERNAL_FILTER}
            GROUP BY date
            ORDER BY date ASC
            """,
            params,
        )

    def transaction_velocity(self, days: Optional[int] = None) -> list[dict[str, object]]:
        window, params = self._window(days=days)
        return self._query(
            f"""
            SELECT
                substr(created_at, 1, 10) AS date,
                COUNT(*) AS transaction_count,
                SUM(ABS(amount_value_in_base_units)) AS total_volume,
                AVG(ABS(amount_value_in_base_units)) AS average_size
            FROM transactions
            WHERE status = 'SETTLED'
              {window}
              {_INTERNAL_FILTER}
            GROUP BY date
            ORDER BY date ASC
            """,
            params,
        )

    def category_trends(self, months: Optional[int] = None) -> list[dict[str, object]]:
        """Monthly spend per top-level category in wide format, in major units.

        Each record has a ``month`` key plus one key per category; categories
        with no spend in a month are reported as ``0.0``.
        """

        window, params = self._window(months=months)
        rows = self._query(
            f"""
            SELECT
                substr(created_at, 1, 7) AS month,
                COALESCE(parent_category_name, category_name, 'Uncategorized') AS category,
                ABS(amount_value_in_base_units) AS amount
            FROM transactions
            WHERE amount_value_in_base_units < 0
              AND status = 'SETTLED'
              {window}
              {_INTERNAL_FILTER}
            """,
            params,
        )
        if not rows:
            return []

        wide = pd.DataFrame(rows).pivot_table(
            index="month",
            columns="category",
            values="amount",
            aggfunc="sum",
            fill_value=0,
        ).sort_index()
        wide = wide / 100
        records: list[dict[str, object]] = []
        for month, row in wide.iterrows():
            record: dict[str, object] = {"month": str(month)}
            record.update({str(category): float(value) for category, value in row.items()})
            records.append(record)
        return records

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    def account_distribution(self) -> list[dict[str, object]]:
        return self._query(
            """
            SELECT
                display_name AS account,
                account_type,
                balance_value_in_base_units AS balance
            FROM accounts
            WHERE balance_value_in_base_units > 0
            ORDER BY balance DESC
            """,
            [],
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _window(self, days: Optional[int] = None, months: Optional[int] = None) -> tuple[str, list[object]]:
        """Return a ``created_at`` lower-bound clause and its parameters."""

        if days is None and months is None:
            return "", []
        cutoff = self._clock()
        if days is not None:
            cutoff -= relativedelta(days=days)
        if months is not None:
            cutoff -= relativedelta(months=months)
        return "AND created_at >= ?", [format_timestamp(cutoff)]

    def _query(self, query: str, params: list[object]) -> list[dict[str, object]]:
        return self._repository.query(query, params)
