from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from txnsync.errors import (
    CredentialError,
    FatalProviderError,
    RetryableProviderError,
)
from txnsync.infra.clients.plaid import PlaidClient, PlaidClientError
from txnsync.infra.clients.provider import (
    ProviderAdapter,
    ProviderClient,
    classify_plaid_error,
)


@pytest.mark.parametrize(
    ("error_code", "expected_type"),
    [
        ("TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION", RetryableProviderError),
        ("ITEM_LOGIN_REQUIRED", CredentialError),
        ("INVALID_ACCESS_TOKEN", CredentialError),
        ("USER_PERMISSION_REVOKED", CredentialError),
        ("INTERNAL_SERVER_ERROR", FatalProviderError),
        (None, FatalProviderError),
    ],
)
def test_classify_plaid_error(
    error_code: str | None, expected_type: type[Exception]
) -> None:
    # input
    error = PlaidClientError("failed", error_code=error_code)

    # act
    output = classify_plaid_error(error)

    # assert
    assert type(output) is expected_type
    assert output.code == error_code


def test_credential_error_is_fatal() -> None:
    # act
    output = classify_plaid_error(
        PlaidClientError("login", error_code="ITEM_LOGIN_REQUIRED")
    )

    # assert
    assert isinstance(output, FatalProviderError)


def test_adapter_passes_cursor_and_page_size() -> None:
    # input
    plaid_client = MagicMock(spec=PlaidClient)
    plaid_client.sync_transactions.return_value = {
        "added": [],
        "modified": [],
        "removed": [],
        "next_cursor": "c2",
        "has_more": False,
    }

    # helper setup
    adapter = ProviderAdapter(plaid_client, page_size=250)

    # act
    page = adapter.fetch_changes_page("tok", "c1")

    # assert
    plaid_client.sync_transactions.assert_called_once_with(
        "tok", cursor="c1", count=250
    )
    assert page["next_cursor"] == "c2"


def test_adapter_translates_errors() -> None:
    # input
    plaid_client = MagicMock(spec=PlaidClient)
    plaid_client.sync_transactions.side_effect = PlaidClientError(
        "mutation", error_code="TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION"
    )
    plaid_client.get_accounts.side_effect = PlaidClientError("network down")

    # helper setup
    adapter = ProviderAdapter(plaid_client)

    # act / assert
    with pytest.raises(RetryableProviderError) as exc_info:
        adapter.fetch_changes_page("tok", None)
    assert isinstance(exc_info.value.__cause__, PlaidClientError)

    with pytest.raises(FatalProviderError):
        adapter.fetch_accounts("tok")


def test_adapter_maps_malformed_response_to_fatal_error() -> None:
    # input
    plaid_client = PlaidClient(client_id="cid", secret="secret", env="sandbox")

    # helper setup
    adapter = ProviderAdapter(plaid_client)

    # act / assert
    with patch.object(plaid_client, "_post") as mock_post:
        mock_post.return_value = {"added": "not-a-list", "next_cursor": "c1"}
        with pytest.raises(FatalProviderError) as exc_info:
            adapter.fetch_changes_page("tok", None)

    assert not isinstance(exc_info.value, RetryableProviderError)
    assert isinstance(exc_info.value.__cause__, PlaidClientError)


def test_adapter_satisfies_provider_protocol() -> None:
    # assert
    assert isinstance(ProviderAdapter(MagicMock(spec=PlaidClient)), ProviderClient)
