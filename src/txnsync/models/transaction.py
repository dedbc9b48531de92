from __future__ import annotations

from typing import TypedDict


class PersonalFinanceCategory(TypedDict, total=False):
    """Personal finance category information from Plaid."""

    primary: str  # e.g., "TRANSFER_OUT"
    detailed: str  # e.g., "TRANSFER_OUT_ACCOUNT_TRANSFER"
    confidence_level: str  # e.g., "HIGH", "VERY_HIGH"


class Transaction(TypedDict):
    """
    Transaction record as delivered by the provider's change stream.

    Amounts follow Plaid's sign convention as received; interpretation of the
    sign depends on the owning account's type and happens in
    ``txnsync.categorization.inference``.
    """

    transaction_id: str
    account_id: str
    amount: float
    iso_currency_code: str | None
    date: str
    name: str
    merchant_name: str | None
    pending: bool
    category: list[str] | None  # e.g., ["Food and Drink", "Groceries"]
    personal_finance_category: PersonalFinanceCategory | None


class RemovedTransaction(TypedDict):
    transaction_id: str


class ProviderAccount(TypedDict):
    account_id: str
    name: str | None
    mask: str | None
    type: str | None  # depository | credit | loan | investment | other
    subtype: str | None
    balances: dict[str, float | None]


class ChangesPage(TypedDict):
    """One page of the provider's incremental change stream."""

    added: list[Transaction]
    modified: list[Transaction]
    removed: list[RemovedTransaction]
    next_cursor: str
    has_more: bool
