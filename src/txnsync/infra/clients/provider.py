"""Provider-facing contract used by the sync engine.

The sync loop depends only on ``ProviderClient``. ``ProviderAdapter`` wraps a
raw ``PlaidClient`` and turns Plaid error codes into the tagged errors in
``txnsync.errors`` so no caller has to know Plaid's wire format.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from txnsync.errors import CredentialError, FatalProviderError, RetryableProviderError
from txnsync.infra.clients.plaid import PlaidClient, PlaidClientError
from txnsync.models.transaction import ChangesPage, ProviderAccount

MUTATION_DURING_PAGINATION = "TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION"

# Codes meaning the credential must be re-linked or the connection retired.
CREDENTIAL_ERROR_CODES = frozenset(
    {
        "ITEM_LOGIN_REQUIRED",
        "INVALID_ACCESS_TOKEN",
        "ITEM_NOT_FOUND",
        "ACCESS_NOT_GRANTED",
        "USER_PERMISSION_REVOKED",
    }
)


@runtime_checkable
class ProviderClient(Protocol):
    """Capability interface to the upstream aggregation API."""

    def fetch_accounts(self, credential: str) -> list[ProviderAccount]: ...

    def fetch_changes_page(
        self, credential: str, cursor: str | None
    ) -> ChangesPage: ...


def classify_plaid_error(
    error: PlaidClientError,
) -> FatalProviderError | RetryableProviderError:
    """Map a raw Plaid error onto the sync engine's error taxonomy."""
    code = error.error_code
    if code == MUTATION_DURING_PAGINATION:
        return RetryableProviderError(str(error), code=code)
    if code in CREDENTIAL_ERROR_CODES:
        return CredentialError(str(error), code=code)
    return FatalProviderError(str(error), code=code)


class ProviderAdapter:
    """``ProviderClient`` implementation backed by ``PlaidClient``."""

    def __init__(self, plaid_client: PlaidClient, *, page_size: int = 500) -> None:
        self._plaid_client = plaid_client
        self._page_size = page_size

    def fetch_accounts(self, credential: str) -> list[ProviderAccount]:
        try:
            return self._plaid_client.get_accounts(credential)
        except PlaidClientError as e:
            raise classify_plaid_error(e) from e

    def fetch_changes_page(self, credential: str, cursor: str | None) -> ChangesPage:
        try:
            return self._plaid_client.sync_transactions(
                credential, cursor=cursor, count=self._page_size
            )
        except PlaidClientError as e:
            raise classify_plaid_error(e) from e
