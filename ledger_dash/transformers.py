"""Map Up Bank JSON:API payloads onto local storage entities.

Every function here is pure: the caller supplies the ``synced_at`` stamp and,
for transactions, a category index built once per sync pass.  Category and
parent-category names are copied onto each transaction row so analytics
queries never need a join.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Iterable, Mapping, Optional

from dateutil import parser as date_parser

from .errors import TransformError
from .models import (
    Account,
    AccountType,
    Category,
    OwnershipType,
    Transaction,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

# Decimal places used when a display string has to be rebuilt from base units.
_MINOR_UNIT_PLACES = 2

Payload = Mapping[str, object]


def build_category_index(remote_categories: Iterable[Payload]) -> dict[str, str]:
    """Return a ``{category id: name}`` lookup for transaction transformation."""

    index: dict[str, str] = {}
    for remote in remote_categories:
        attributes = remote.get("attributes") or {}
        name = attributes.get("name")
        if remote.get("id") and name is not None:
            index[str(remote["id"])] = str(name)
    return index


def to_local_account(remote: Payload, synced_at: str) -> Account:
    account_id = _require(remote, "id", "account")
    attributes = _require(remote, "attributes", "account", account_id)
    balance_value, currency, base_units = _money(
        _require(attributes, "balance", "account", account_id), account_id
    )
    return Account(
        id=account_id,
        display_name=str(_require(attributes, "displayName", "account", account_id)),
        account_type=_enum(AccountType, attributes.get("accountType"), "accountType", account_id),
        ownership_type=_enum(OwnershipType, attributes.get("ownershipType"), "ownershipType", account_id),
        balance_value=balance_value,
        balance_currency=currency,
        balance_value_in_base_units=base_units,
        created_at=normalise_timestamp(_require(attributes, "createdAt", "account", account_id)),
        synced_at=synced_at,
    )


def to_local_category(remote: Payload, synced_at: str) -> Category:
    category_id = _require(remote, "id", "category")
    attributes = _require(remote, "attributes", "category", category_id)
    return Category(
        id=category_id,
        name=str(_require(attributes, "name", "category", category_id)),
        parent_id=_relationship_id(remote, "parent"),
        synced_at=synced_at,
    )


def to_local_transaction(
    remote: Payload,
    category_index: Mapping[str, str],
    synced_at: str,
) -> Transaction:
    """Flatten a remote transaction and attach category names from ``category_index``.

    Unknown category ids keep their id but get ``None`` names; that is a valid
    state, not an error.
    """

    transaction_id = _require(remote, "id", "transaction")
    attributes = _require(remote, "attributes", "transaction", transaction_id)
    account_id = _relationship_id(remote, "account")
    if account_id is None:
        raise TransformError(f"transaction {transaction_id} has no account relationship")

    amount_value, amount_currency, amount_base_units = _money(
        _require(attributes, "amount", "transaction", transaction_id), transaction_id
    )

    foreign_value: Optional[str] = None
    foreign_currency: Optional[str] = None
    foreign_amount = attributes.get("foreignAmount")
    if foreign_amount:
        foreign_value, foreign_currency, _ = _money(foreign_amount, transaction_id)

    category_id = _relationship_id(remote, "category")
    parent_category_id = _relationship_id(remote, "parentCategory")
    settled_at = attributes.get("settledAt")

    return Transaction(
        id=transaction_id,
        account_id=account_id,
        status=_enum(TransactionStatus, attributes.get("status"), "status", transaction_id),
        raw_text=attributes.get("rawText"),
        description=str(_require(attributes, "description", "transaction", transaction_id)),
        message=attributes.get("message"),
        amount_value=amount_value,
        amount_currency=amount_currency,
        amount_value_in_base_units=amount_base_units,
        foreign_amount_value=foreign_value,
        foreign_amount_currency=foreign_currency,
        settled_at=normalise_timestamp(settled_at) if settled_at else None,
        created_at=normalise_timestamp(_require(attributes, "createdAt", "transaction", transaction_id)),
        category_id=category_id,
        category_name=category_index.get(category_id) if category_id else None,
        parent_category_id=parent_category_id,
        parent_category_name=category_index.get(parent_category_id) if parent_category_id else None,
        synced_at=synced_at,
    )


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------

def parse_timestamp(value: object) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime.

    Naive values are taken to be UTC.
    """

    try:
        parsed = date_parser.isoparse(str(value))
    except (ValueError, OverflowError) as exc:
        raise TransformError(f"invalid timestamp {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def normalise_timestamp(value: object) -> str:
    """Rewrite a timestamp in UTC so stored strings sort chronologically."""

    return format_timestamp(parse_timestamp(value))


# ---------------------------------------------------------------------------
# Helper utilities
# ---------------------------------------------------------------------------

def _money(money: object, owner_id: str) -> tuple[str, str, int]:
    """Return ``(display value, currency, base units)`` for a money object.

    The integer base units win when the display string disagrees with them.
    """

    if not isinstance(money, Mapping):
        raise TransformError(f"{owner_id}: money object expected, got {money!r}")
    try:
        base_units = int(money["valueInBaseUnits"])
        currency = str(money["currencyCode"])
        raw_value = str(money["value"])
    except (KeyError, TypeError, ValueError) as exc:
        raise TransformError(f"{owner_id}: malformed money object {money!r}") from exc

    try:
        display = Decimal(raw_value)
    except InvalidOperation:
        display = None

    places = 0
    if display is not None and display.is_finite():
        exponent = display.as_tuple().exponent
        places = -exponent if exponent < 0 else 0
        if display == Decimal(base_units).scaleb(-places):
            return raw_value, currency, base_units

    repaired = f"{Decimal(base_units).scaleb(-max(places, _MINOR_UNIT_PLACES)):f}"
    logger.warning(
        "%s: display amount %r disagrees with %d base units, using %s",
        owner_id,
        raw_value,
        base_units,
        repaired,
    )
    return repaired, currency, base_units


def _relationship_id(remote: Payload, name: str) -> Optional[str]:
    relationships = remote.get("relationships") or {}
    relation = relationships.get(name) or {}
    data = relation.get("data")
    if not data:
        return None
    return str(data.get("id")) if data.get("id") else None


def _enum(enum_type, value: object, field_name: str, owner_id: str):
    try:
        return enum_type(value)
    except ValueError as exc:
        raise TransformError(f"{owner_id}: unexpected {field_name} {value!r}") from exc


def _require(payload: Mapping[str, object], key: str, kind: str, owner_id: Optional[str] = None):
    value = payload.get(key) if isinstance(payload, Mapping) else None
    if value is None:
        label = f"{kind} {owner_id}" if owner_id else kind
        raise TransformError(f"{label} is missing {key!r}")
    return value
