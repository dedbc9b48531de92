from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import loguru
from loguru import logger
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError

from txnsync.adapters.db.facade import DB
from txnsync.adapters.db.models import Connection, ReconcileOutcome, RecordFailure
from txnsync.categorization.inference import infer_category
from txnsync.errors import ReconcileError, TransactionOwnershipError
from txnsync.models.transaction import ProviderAccount, Transaction
from txnsync.tools.sync.sync_loop import PageSet

# Failures that mean the store itself is unreachable, not that one record is bad
STORE_UNAVAILABLE_ERRORS: tuple[type[Exception], ...] = (
    OperationalError,
    InterfaceError,
)

_TYPE_LABELS = {
    "credit": "Credit Card",
    "loan": "Loan",
    "investment": "Investment",
}
_DEPOSITORY_LABELS = {"checking": "Checking", "savings": "Savings"}


@dataclass(frozen=True)
class AccountContext:
    """Per-account metadata resolved once per sync."""

    account_id: str
    type: str | None = None
    subtype: str | None = None
    name: str | None = None
    mask: str | None = None

    @property
    def label(self) -> str:
        """Account name, or a readable fallback such as "Checking ****1234"."""
        if self.name:
            return self.name
        if self.type == "depository":
            type_label = _DEPOSITORY_LABELS.get(self.subtype or "", "Depository")
        else:
            type_label = _TYPE_LABELS.get(self.type or "", self.type or "Account")
        if self.mask:
            return f"{type_label} ****{self.mask}"
        return type_label


def build_account_context(
    accounts: list[ProviderAccount],
) -> dict[str, AccountContext]:
    return {
        account["account_id"]: AccountContext(
            account_id=account["account_id"],
            type=account.get("type"),
            subtype=account.get("subtype"),
            name=account.get("name"),
            mask=account.get("mask"),
        )
        for account in accounts
    }


def to_cents(amount: float) -> int:
    """Convert a provider decimal amount to integer cents, half away from zero."""
    cents = Decimal(str(amount)) * 100
    return int(cents.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def build_transaction_row(
    txn: Transaction,
    *,
    client_id: str,
    connection_id: str,
    institution: str | None,
    account: AccountContext | None,
) -> dict[str, Any]:
    """Map a provider record to the provider-owned columns of a stored row."""
    posted_at = date.fromisoformat(txn["date"])
    account_type = account.type if account else None
    inference = infer_category(txn, account_type)
    return {
        "external_id": txn["transaction_id"],
        "client_id": client_id,
        "connection_id": connection_id,
        "account_id": txn["account_id"],
        "account_type": account_type,
        "account_subtype": account.subtype if account else None,
        "account_name": account.label if account else None,
        "account_mask": account.mask if account else None,
        "institution": institution,
        "amount_cents": to_cents(txn["amount"]),
        "currency": txn.get("iso_currency_code") or "USD",
        "posted_at": posted_at,
        "month_year": posted_at.strftime("%Y-%m"),
        "name": txn.get("name") or "",
        "merchant_name": txn.get("merchant_name"),
        "pending": bool(txn.get("pending", False)),
        "provider_category": txn.get("category"),
        "personal_finance_category": txn.get("personal_finance_category"),
        "flow_kind": inference.flow_kind.value,
        "suggested_category": inference.suggested_category,
    }


class ReconcilerLogger:
    """Handles all logging for Reconciler with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def apply_start(self, connection_id: str, page_set: PageSet) -> None:
        self._logger.bind(
            connection_id=connection_id,
            added=len(page_set.added),
            modified=len(page_set.modified),
            removed=len(page_set.removed),
        ).info(
            "Reconciling {} changes for {}", page_set.change_count, connection_id
        )

    def record_failed(self, connection_id: str, failure: RecordFailure) -> None:
        self._logger.bind(
            connection_id=connection_id,
            external_id=failure.external_id,
            operation=failure.operation,
        ).error(
            "Failed to apply {} transaction {}: {}",
            failure.operation,
            failure.external_id,
            failure.reason,
        )

    def store_unavailable(self, connection_id: str, error: Exception) -> None:
        self._logger.bind(connection_id=connection_id).error(
            "Store unavailable while reconciling {}: {}", connection_id, error
        )

    def apply_complete(self, connection_id: str, outcome: ReconcileOutcome) -> None:
        self._logger.bind(
            connection_id=connection_id,
            inserted=outcome.inserted,
            updated=outcome.updated,
            unchanged=outcome.unchanged,
            skipped_duplicate=outcome.skipped_duplicate,
            removed=outcome.removed,
            failed=outcome.failed,
        ).info(
            "Reconciled {}: {} inserted, {} updated, {} removed, {} failed",
            connection_id,
            outcome.inserted,
            outcome.updated,
            outcome.removed,
            outcome.failed,
        )


class Reconciler:
    """Applies a PageSet to the transaction store.

    Added records are inserted unless already present, modified records have
    their provider-owned columns rewritten, removed records are deleted by
    (external_id, client_id). Replaying the same PageSet leaves the store
    unchanged. Review columns are never written here.
    """

    def __init__(
        self, db: DB, *, logger_instance: ReconcilerLogger | None = None
    ) -> None:
        self._db = db
        self._logger = logger_instance or ReconcilerLogger()

    def apply(
        self,
        *,
        client_id: str,
        connection: Connection,
        page_set: PageSet,
        accounts: dict[str, AccountContext],
    ) -> ReconcileOutcome:
        """
        Apply added, then modified, then removed records.

        Args:
            client_id: Owner of the connection
            connection: Connection the page-set was fetched for
            page_set: Accumulated changes from the sync loop
            accounts: Account context keyed by account id (may be empty)

        Returns:
            ReconcileOutcome with per-operation counts and record failures

        Raises:
            ReconcileError: The store became unreachable, so the final state
                is unknown and the cursor must not advance
        """
        connection_id = connection.connection_id
        outcome = ReconcileOutcome()
        self._logger.apply_start(connection_id, page_set)

        try:
            self._db.ping()
        except SQLAlchemyError as e:
            self._logger.store_unavailable(connection_id, e)
            raise ReconcileError(f"Transaction store unavailable: {e}") from e

        for txn in page_set.added:
            self._apply_one(outcome, connection, client_id, txn, "added", accounts)
        for txn in page_set.modified:
            self._apply_one(outcome, connection, client_id, txn, "modified", accounts)
        for removed in page_set.removed:
            external_id = removed["transaction_id"]
            try:
                deleted = self._db.delete_transaction(external_id, client_id=client_id)
            except STORE_UNAVAILABLE_ERRORS as e:
                self._logger.store_unavailable(connection_id, e)
                raise ReconcileError(f"Transaction store unavailable: {e}") from e
            except SQLAlchemyError as e:
                self._record_failure(outcome, connection_id, external_id, "removed", e)
                continue
            if deleted:
                outcome.removed += 1
            else:
                outcome.removed_missing += 1

        self._logger.apply_complete(connection_id, outcome)
        return outcome

    def _apply_one(
        self,
        outcome: ReconcileOutcome,
        connection: Connection,
        client_id: str,
        txn: Transaction,
        operation: str,
        accounts: dict[str, AccountContext],
    ) -> None:
        connection_id = connection.connection_id
        external_id = txn.get("transaction_id", "<unknown>")
        try:
            account = accounts.get(txn["account_id"])
            if operation == "modified":
                account = self._with_stored_snapshot(
                    external_id, client_id, txn["account_id"], account
                )
            row = build_transaction_row(
                txn,
                client_id=client_id,
                connection_id=connection_id,
                institution=connection.institution_name,
                account=account,
            )
            if operation == "added":
                action = self._db.insert_transaction_if_absent(row)
            else:
                action = self._db.update_provider_fields(row)
        except STORE_UNAVAILABLE_ERRORS as e:
            self._logger.store_unavailable(connection_id, e)
            raise ReconcileError(f"Transaction store unavailable: {e}") from e
        except (
            SQLAlchemyError,
            TransactionOwnershipError,
            KeyError,
            TypeError,
            ValueError,
        ) as e:
            self._record_failure(outcome, connection_id, external_id, operation, e)
            return

        if action == "inserted":
            outcome.inserted += 1
        elif action == "updated":
            outcome.updated += 1
        elif action == "unchanged":
            outcome.unchanged += 1
        else:
            outcome.skipped_duplicate += 1

    def _with_stored_snapshot(
        self,
        external_id: str,
        client_id: str,
        account_id: str,
        fresh: AccountContext | None,
    ) -> AccountContext | None:
        """Prefer the account type/subtype captured when the row was stored."""
        stored = self._db.get_transaction(external_id, client_id=client_id)
        if stored is None or stored.account_type is None:
            return fresh
        return AccountContext(
            account_id=account_id,
            type=stored.account_type,
            subtype=stored.account_subtype,
            name=fresh.name if fresh else stored.account_name,
            mask=fresh.mask if fresh else stored.account_mask,
        )

    def _record_failure(
        self,
        outcome: ReconcileOutcome,
        connection_id: str,
        external_id: str,
        operation: str,
        error: Exception,
    ) -> None:
        failure = RecordFailure(
            external_id=external_id, operation=operation, reason=str(error)
        )
        outcome.failures.append(failure)
        self._logger.record_failed(connection_id, failure)
