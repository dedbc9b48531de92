from __future__ import annotations

import pytest

from txnsync.core.cancellation import CancelToken
from txnsync.core.config import SyncConfig, SyncMode
from txnsync.errors import (
    CredentialError,
    FatalProviderError,
    MutationRetriesExhaustedError,
    RetryableProviderError,
    SyncCancelledError,
)
from txnsync.models.transaction import ChangesPage, ProviderAccount, Transaction
from txnsync.tools.sync.state import ConnectionSyncState
from txnsync.tools.sync.sync_loop import SyncLoop

# Helper functions


def create_test_transaction(transaction_id: str, amount: float = 10.0) -> Transaction:
    return {
        "transaction_id": transaction_id,
        "account_id": "acc_1",
        "amount": amount,
        "iso_currency_code": "USD",
        "date": "2024-01-15",
        "name": f"Transaction {transaction_id}",
        "merchant_name": None,
        "pending": False,
        "category": None,
        "personal_finance_category": None,
    }


def create_page(
    *,
    added: list[str] | None = None,
    modified: list[str] | None = None,
    removed: list[str] | None = None,
    next_cursor: str,
    has_more: bool = False,
) -> ChangesPage:
    return {
        "added": [create_test_transaction(t) for t in added or []],
        "modified": [create_test_transaction(t) for t in modified or []],
        "removed": [{"transaction_id": t} for t in removed or []],
        "next_cursor": next_cursor,
        "has_more": has_more,
    }


class MockProvider:
    """Provider that replays a script of pages and errors in order."""

    def __init__(self, *, responses: list[ChangesPage | Exception]) -> None:
        self._responses = responses
        self.cursors_used: list[str | None] = []

    def fetch_accounts(self, credential: str) -> list[ProviderAccount]:
        return []

    def fetch_changes_page(self, credential: str, cursor: str | None) -> ChangesPage:
        self.cursors_used.append(cursor)
        response = self._responses[len(self.cursors_used) - 1]
        if isinstance(response, Exception):
            raise response
        return response


def mutation_error() -> RetryableProviderError:
    return RetryableProviderError(
        "mutation", code="TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION"
    )


def create_sync_loop(
    provider: MockProvider,
    *,
    mode: SyncMode = SyncMode.WEBHOOK,
    max_retries: int = 3,
    sleeps: list[float] | None = None,
) -> SyncLoop:
    recorded = sleeps if sleeps is not None else []
    return SyncLoop(
        provider,
        mode=mode,
        max_retries=max_retries,
        base_delay_seconds=1.0,
        poll_interval_seconds=2.0,
        max_poll_attempts=3,
        sleep=recorded.append,
    )


def test_fetch_all_accumulates_pages_until_has_more_is_false() -> None:
    # input
    provider = MockProvider(
        responses=[
            create_page(added=["t1", "t2"], next_cursor="c1", has_more=True),
            create_page(modified=["t1"], removed=["t0"], next_cursor="c2"),
        ]
    )

    # helper setup
    loop = create_sync_loop(provider)

    # act
    page_set = loop.fetch_all(connection_id="item_1", credential="tok", cursor=None)

    # assert
    assert [t["transaction_id"] for t in page_set.added] == ["t1", "t2"]
    assert [t["transaction_id"] for t in page_set.modified] == ["t1"]
    assert page_set.removed == [{"transaction_id": "t0"}]
    assert page_set.next_cursor == "c2"
    assert page_set.pages_fetched == 2
    assert page_set.attempts == 1
    assert provider.cursors_used == [None, "c1"]


def test_empty_stored_cursor_means_start_from_beginning() -> None:
    # input
    provider = MockProvider(responses=[create_page(added=["t1"], next_cursor="c1")])

    # helper setup
    loop = create_sync_loop(provider)

    # act
    loop.fetch_all(connection_id="item_1", credential="tok", cursor="")

    # assert
    assert provider.cursors_used == [None]


def test_mutation_restarts_from_starting_cursor_and_discards_pages() -> None:
    # input
    provider = MockProvider(
        responses=[
            create_page(added=["t1"], next_cursor="c6", has_more=True),
            mutation_error(),
            create_page(added=["t1"], next_cursor="c6", has_more=True),
            create_page(added=["t2"], next_cursor="c7"),
        ]
    )
    sleeps: list[float] = []
    states: list[ConnectionSyncState] = []

    # helper setup
    loop = create_sync_loop(provider, sleeps=sleeps)

    # act
    page_set = loop.fetch_all(
        connection_id="item_1",
        credential="tok",
        cursor="c5",
        on_state=states.append,
    )

    # assert
    assert provider.cursors_used == ["c5", "c6", "c5", "c6"]
    assert [t["transaction_id"] for t in page_set.added] == ["t1", "t2"]
    assert page_set.next_cursor == "c7"
    assert page_set.attempts == 2
    assert page_set.pages_fetched == 2
    assert sleeps == [1.0]
    assert states == [
        ConnectionSyncState.MUTATION_RETRY,
        ConnectionSyncState.PAGINATING,
    ]


def test_backoff_grows_with_consecutive_mutations() -> None:
    # input
    provider = MockProvider(
        responses=[
            mutation_error(),
            mutation_error(),
            create_page(added=["t1"], next_cursor="c1"),
        ]
    )
    sleeps: list[float] = []

    # helper setup
    loop = create_sync_loop(provider, sleeps=sleeps)

    # act
    page_set = loop.fetch_all(connection_id="item_1", credential="tok", cursor=None)

    # assert
    assert sleeps == [1.0, 2.0]
    assert page_set.attempts == 3


def test_mutation_retries_exhausted_raises_without_page_set() -> None:
    # input
    provider = MockProvider(responses=[mutation_error() for _ in range(4)])

    # helper setup
    loop = create_sync_loop(provider, max_retries=3)

    # act / assert
    with pytest.raises(MutationRetriesExhaustedError) as exc_info:
        loop.fetch_all(connection_id="item_1", credential="tok", cursor="c5")

    assert exc_info.value.attempts == 4
    assert provider.cursors_used == ["c5", "c5", "c5", "c5"]


def test_mutation_after_successful_pages_still_exhausts_retries() -> None:
    # input
    responses: list[ChangesPage | Exception] = []
    for _ in range(4):
        responses.append(create_page(added=["t1"], next_cursor="c6", has_more=True))
        responses.append(mutation_error())
    provider = MockProvider(responses=responses)
    sleeps: list[float] = []

    # helper setup
    loop = create_sync_loop(provider, max_retries=3, sleeps=sleeps)

    # act / assert
    with pytest.raises(MutationRetriesExhaustedError) as exc_info:
        loop.fetch_all(connection_id="item_1", credential="tok", cursor="c5")

    assert exc_info.value.attempts == 4
    assert provider.cursors_used == ["c5", "c6"] * 4
    # each restart follows a good page, so backoff never grows
    assert sleeps == [1.0, 1.0, 1.0]


def test_fatal_error_is_not_retried() -> None:
    # input
    provider = MockProvider(
        responses=[CredentialError("login required", code="ITEM_LOGIN_REQUIRED")]
    )
    sleeps: list[float] = []

    # helper setup
    loop = create_sync_loop(provider, sleeps=sleeps)

    # act / assert
    with pytest.raises(FatalProviderError):
        loop.fetch_all(connection_id="item_1", credential="tok", cursor=None)

    assert len(provider.cursors_used) == 1
    assert sleeps == []


def test_webhook_mode_exits_on_empty_next_cursor() -> None:
    # input
    provider = MockProvider(responses=[create_page(next_cursor="")])

    # helper setup
    loop = create_sync_loop(provider, mode=SyncMode.WEBHOOK)

    # act
    page_set = loop.fetch_all(connection_id="item_1", credential="tok", cursor=None)

    # assert
    assert page_set.is_empty
    assert page_set.next_cursor == ""
    assert len(provider.cursors_used) == 1


def test_empty_next_cursor_keeps_stored_cursor() -> None:
    # input
    provider = MockProvider(responses=[create_page(next_cursor="")])

    # helper setup
    loop = create_sync_loop(provider, mode=SyncMode.WEBHOOK)

    # act
    page_set = loop.fetch_all(connection_id="item_1", credential="tok", cursor="c9")

    # assert
    assert page_set.next_cursor == "c9"


def test_poll_mode_waits_for_data_then_continues() -> None:
    # input
    provider = MockProvider(
        responses=[
            create_page(next_cursor=""),
            create_page(next_cursor=""),
            create_page(added=["t1"], next_cursor="c1"),
        ]
    )
    sleeps: list[float] = []

    # helper setup
    loop = create_sync_loop(provider, mode=SyncMode.POLL, sleeps=sleeps)

    # act
    page_set = loop.fetch_all(connection_id="item_1", credential="tok", cursor=None)

    # assert
    assert sleeps == [2.0, 2.0]
    assert [t["transaction_id"] for t in page_set.added] == ["t1"]
    assert page_set.next_cursor == "c1"


def test_poll_mode_gives_up_after_max_poll_attempts() -> None:
    # input
    provider = MockProvider(responses=[create_page(next_cursor="") for _ in range(4)])
    sleeps: list[float] = []

    # helper setup
    loop = create_sync_loop(provider, mode=SyncMode.POLL, sleeps=sleeps)

    # act
    page_set = loop.fetch_all(connection_id="item_1", credential="tok", cursor=None)

    # assert
    assert page_set.is_empty
    assert len(provider.cursors_used) == 4
    assert sleeps == [2.0, 2.0, 2.0]


def test_cancelled_token_stops_before_first_request() -> None:
    # input
    provider = MockProvider(responses=[create_page(added=["t1"], next_cursor="c1")])
    token = CancelToken()
    token.cancel()

    # helper setup
    loop = create_sync_loop(provider)

    # act / assert
    with pytest.raises(SyncCancelledError):
        loop.fetch_all(
            connection_id="item_1", credential="tok", cursor=None, cancel=token
        )
    assert provider.cursors_used == []


def test_from_config_uses_configured_retry_bound() -> None:
    # input
    config = SyncConfig(max_mutation_retries=1, retry_base_delay_seconds=0.0)
    provider = MockProvider(responses=[mutation_error(), mutation_error()])

    # helper setup
    loop = SyncLoop.from_config(provider, config, sleep=lambda _: None)

    # act / assert
    with pytest.raises(MutationRetriesExhaustedError) as exc_info:
        loop.fetch_all(connection_id="item_1", credential="tok", cursor=None)
    assert exc_info.value.attempts == 2
