from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

import loguru
from loguru import logger

from txnsync.core.cancellation import CancelToken
from txnsync.core.config import SyncConfig, SyncMode
from txnsync.errors import MutationRetriesExhaustedError, RetryableProviderError
from txnsync.infra.clients.provider import ProviderClient
from txnsync.models.transaction import RemovedTransaction, Transaction
from txnsync.tools.sync.state import ConnectionSyncState

StateListener = Callable[[ConnectionSyncState], None]


@dataclass
class PageSet:
    """Every change between a starting cursor and ``next_cursor``.

    Built from one consistent pagination pass. A pass invalidated by an
    upstream mutation is thrown away whole, never merged into the next one.
    """

    added: list[Transaction] = field(default_factory=list)
    modified: list[Transaction] = field(default_factory=list)
    removed: list[RemovedTransaction] = field(default_factory=list)
    next_cursor: str = ""
    pages_fetched: int = 0
    attempts: int = 1

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.removed)

    @property
    def change_count(self) -> int:
        return len(self.added) + len(self.modified) + len(self.removed)


class SyncLoopLogger:
    """Handles all logging for SyncLoop with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def fetch_start(self, connection_id: str, cursor: str | None) -> None:
        cursor_label = cursor or "initial"
        self._logger.bind(connection_id=connection_id, cursor=cursor_label).debug(
            "Fetching changes for {} (cursor: {})", connection_id, cursor_label
        )

    def fetch_complete(
        self,
        connection_id: str,
        added_count: int,
        modified_count: int,
        removed_count: int,
        page_num: int,
    ) -> None:
        self._logger.bind(
            connection_id=connection_id,
            added=added_count,
            modified=modified_count,
            removed=removed_count,
            page=page_num,
        ).debug(
            "Page {} for {}: {} added, {} modified, {} removed",
            page_num,
            connection_id,
            added_count,
            modified_count,
            removed_count,
        )

    def fetch_summary(self, connection_id: str, page_set: PageSet) -> None:
        """Log summary of all fetched pages."""
        self._logger.bind(
            connection_id=connection_id,
            total_added=len(page_set.added),
            total_modified=len(page_set.modified),
            total_removed=len(page_set.removed),
            pages=page_set.pages_fetched,
            attempts=page_set.attempts,
        ).info(
            "Fetched {} added, {} modified, {} removed across {} pages for {}",
            len(page_set.added),
            len(page_set.modified),
            len(page_set.removed),
            page_set.pages_fetched,
            connection_id,
        )

    def mutation_retry(
        self, connection_id: str, attempt: int, max_retries: int, delay: float
    ) -> None:
        """Log mutation error retry attempt."""
        self._logger.bind(
            connection_id=connection_id, attempt=attempt, max_retries=max_retries
        ).warning(
            "Mutation detected for {}, restarting fetch in {:.1f}s (attempt {}/{})",
            connection_id,
            delay,
            attempt,
            max_retries,
        )

    def retries_exhausted(self, connection_id: str, attempts: int) -> None:
        self._logger.bind(connection_id=connection_id, attempts=attempts).error(
            "Mutation retries exhausted for {} after {} attempts",
            connection_id,
            attempts,
        )

    def no_data_yet(self, connection_id: str, mode: SyncMode, polls: int) -> None:
        self._logger.bind(
            connection_id=connection_id, mode=mode.value, polls=polls
        ).info(
            "No data available yet for {} ({} mode, {} polls)",
            connection_id,
            mode.value,
            polls,
        )


class SyncLoop:
    """Drains a connection's change stream into a single consistent PageSet.

    The loop is a pure read: it never writes to the store and never advances
    the stored cursor. Committing the returned ``next_cursor`` is left to the
    caller once the page-set has been reconciled.
    """

    def __init__(
        self,
        provider: ProviderClient,
        *,
        mode: SyncMode = SyncMode.WEBHOOK,
        max_retries: int = 3,
        base_delay_seconds: float = 1.0,
        poll_interval_seconds: float = 2.0,
        max_poll_attempts: int = 5,
        sleep: Callable[[float], None] | None = None,
        logger_instance: SyncLoopLogger | None = None,
    ) -> None:
        """
        Initialize the sync loop.

        Args:
            provider: Upstream change-stream client
            mode: How an empty ``next_cursor`` is treated (see SyncMode)
            max_retries: Pagination restarts allowed after mutation errors
            base_delay_seconds: Backoff unit; restart N waits N units
            poll_interval_seconds: Wait between polls in POLL mode
            max_poll_attempts: Empty-cursor polls before giving up in POLL mode
            sleep: Override for waiting (tests); defaults to the cancel token
            logger_instance: Logger override
        """
        self._provider = provider
        self._mode = mode
        self._max_retries = max_retries
        self._base_delay = base_delay_seconds
        self._poll_interval = poll_interval_seconds
        self._max_poll_attempts = max_poll_attempts
        self._sleep = sleep
        self._logger = logger_instance or SyncLoopLogger()

    @classmethod
    def from_config(
        cls,
        provider: ProviderClient,
        config: SyncConfig,
        *,
        sleep: Callable[[float], None] | None = None,
    ) -> SyncLoop:
        return cls(
            provider,
            mode=config.mode,
            max_retries=config.max_mutation_retries,
            base_delay_seconds=config.retry_base_delay_seconds,
            poll_interval_seconds=config.poll_interval_seconds,
            max_poll_attempts=config.max_poll_attempts,
            sleep=sleep,
        )

    def fetch_all(
        self,
        *,
        connection_id: str,
        credential: str,
        cursor: str | None,
        cancel: CancelToken | None = None,
        on_state: StateListener | None = None,
    ) -> PageSet:
        """
        Fetch every page from ``cursor`` until the provider reports no more.

        Args:
            connection_id: Connection being synced (logging only)
            credential: Provider credential for the connection
            cursor: Stored cursor; empty string and None both mean "from the
                beginning"
            cancel: Cancellation token checked before every request and wait
            on_state: Receives MUTATION_RETRY/PAGINATING transitions

        Returns:
            PageSet with the accumulated changes and the cursor to commit

        Raises:
            MutationRetriesExhaustedError: Pagination kept being invalidated
            FatalProviderError: Any non-retryable provider failure
            SyncCancelledError: The token was cancelled or its deadline passed
        """
        cancel = cancel or CancelToken()
        start_cursor = cursor or None
        current_cursor = start_cursor

        added_all: list[Transaction] = []
        modified_all: list[Transaction] = []
        removed_all: list[RemovedTransaction] = []

        pages_fetched = 0
        retry_count = 0
        restarts = 0
        attempts = 1
        empty_polls = 0
        has_more = True

        while has_more:
            cancel.raise_if_cancelled()
            self._logger.fetch_start(connection_id, current_cursor)
            try:
                page = self._provider.fetch_changes_page(credential, current_cursor)
            except RetryableProviderError as e:
                if restarts >= self._max_retries:
                    self._logger.retries_exhausted(connection_id, attempts)
                    raise MutationRetriesExhaustedError(attempts) from e

                retry_count += 1
                restarts += 1
                attempts += 1
                delay = retry_count * self._base_delay
                self._logger.mutation_retry(
                    connection_id, restarts, self._max_retries, delay
                )
                if on_state is not None:
                    on_state(ConnectionSyncState.MUTATION_RETRY)

                # Restart from the same starting point with empty accumulators
                added_all = []
                modified_all = []
                removed_all = []
                pages_fetched = 0
                current_cursor = start_cursor
                self._wait(delay, cancel)

                if on_state is not None:
                    on_state(ConnectionSyncState.PAGINATING)
                continue

            next_cursor = page["next_cursor"]
            if not next_cursor:
                # Provider has nothing ready for this connection yet
                if self._mode is SyncMode.WEBHOOK:
                    self._logger.no_data_yet(connection_id, self._mode, empty_polls)
                    break
                if empty_polls >= self._max_poll_attempts:
                    self._logger.no_data_yet(connection_id, self._mode, empty_polls)
                    break
                empty_polls += 1
                self._wait(self._poll_interval, cancel)
                continue

            added_all.extend(page["added"])
            modified_all.extend(page["modified"])
            removed_all.extend(page["removed"])
            pages_fetched += 1
            self._logger.fetch_complete(
                connection_id,
                len(page["added"]),
                len(page["modified"]),
                len(page["removed"]),
                pages_fetched,
            )

            current_cursor = next_cursor
            has_more = page["has_more"]
            # Backoff restarts per page; the restart bound does not
            retry_count = 0

        page_set = PageSet(
            added=added_all,
            modified=modified_all,
            removed=removed_all,
            next_cursor=current_cursor or "",
            pages_fetched=pages_fetched,
            attempts=attempts,
        )
        self._logger.fetch_summary(connection_id, page_set)
        return page_set

    def _wait(self, seconds: float, cancel: CancelToken) -> None:
        if seconds <= 0:
            cancel.raise_if_cancelled()
            return
        if self._sleep is not None:
            cancel.raise_if_cancelled()
            self._sleep(seconds)
            cancel.raise_if_cancelled()
            return
        cancel.wait(seconds)
