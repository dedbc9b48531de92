"""Error taxonomy for the sync engine.

Provider errors are split by whether the sync loop may retry them. Anything
the loop sees is already one of these types; raw provider error codes never
leave ``txnsync.infra.clients``.
"""

from __future__ import annotations


class TxnSyncError(Exception):
    """Base error for txnsync failures."""


class ProviderError(TxnSyncError):
    """Base error for failures reported by the upstream provider."""

    def __init__(self, reason: str, *, code: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.code = code


class RetryableProviderError(ProviderError):
    """Pagination was invalidated by a concurrent upstream mutation."""


class FatalProviderError(ProviderError):
    """Any provider or network failure that must abort the connection's sync."""


class CredentialError(FatalProviderError):
    """The connection's credential is no longer usable (revoked, expired, ...)."""


class MutationRetriesExhaustedError(FatalProviderError):
    """Mutation-during-pagination kept recurring past the retry bound."""

    def __init__(self, attempts: int) -> None:
        super().__init__(
            f"Change stream mutated during pagination on {attempts} consecutive "
            "attempts; giving up until the next sync",
            code="TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION",
        )
        self.attempts = attempts


class SyncCancelledError(TxnSyncError):
    """The sync was cancelled or ran past its deadline."""


class ReconcileError(TxnSyncError):
    """Persisting a page-set failed in a way that leaves the store indeterminate."""


class ClientNotFoundError(TxnSyncError):
    """No client exists with the requested id."""


class TransactionOwnershipError(TxnSyncError):
    """A change for a transaction arrived through another client's connection."""
