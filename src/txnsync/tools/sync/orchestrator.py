from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Literal

import loguru
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from txnsync.adapters.db.facade import DB
from txnsync.adapters.db.models import Connection
from txnsync.core.cancellation import CancelToken
from txnsync.core.config import SyncConfig
from txnsync.errors import (
    ClientNotFoundError,
    CredentialError,
    FatalProviderError,
    MutationRetriesExhaustedError,
    ProviderError,
    ReconcileError,
    SyncCancelledError,
    TxnSyncError,
)
from txnsync.infra.clients.provider import ProviderClient
from txnsync.tools.sync.reconciler import (
    AccountContext,
    Reconciler,
    build_account_context,
)
from txnsync.tools.sync.state import ConnectionSyncState, SyncStateMachine
from txnsync.tools.sync.sync_loop import SyncLoop

ErrorKind = Literal[
    "provider",
    "credential",
    "mutation_retries",
    "cancelled",
    "reconcile",
    "persistence",
    "cursor_commit",
    "internal",
]

TEST_CREDENTIAL = "access-sandbox-test-token"


def is_test_credential(access_token: str) -> bool:
    """Placeholder credentials left behind by demos and fixtures are never synced."""
    return (
        access_token == TEST_CREDENTIAL
        or access_token.startswith("test-")
        or "fake" in access_token
    )


@dataclass
class SyncError:
    connection_id: str
    institution: str | None
    kind: ErrorKind
    reason: str


@dataclass
class ConnectionSyncResult:
    """Outcome of one connection's sync attempt."""

    connection_id: str
    institution: str | None
    state: ConnectionSyncState = ConnectionSyncState.IDLE
    added: int = 0
    modified: int = 0
    removed: int = 0
    failed_records: int = 0
    pages_fetched: int = 0
    attempts: int = 0
    committed_cursor: str | None = None
    history: list[ConnectionSyncState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is ConnectionSyncState.DONE


@dataclass
class SyncResult:
    """Aggregate result of syncing one client's connections."""

    client_id: str
    items_processed: int = 0
    added: int = 0
    modified: int = 0
    removed: int = 0
    skipped: int = 0
    errors: list[SyncError] = field(default_factory=list)
    connections: list[ConnectionSyncResult] = field(default_factory=list)

    @property
    def failed(self) -> list[ConnectionSyncResult]:
        return [conn for conn in self.connections if not conn.succeeded]

    def record(self, conn_result: ConnectionSyncResult) -> None:
        self.connections.append(conn_result)
        if conn_result.succeeded:
            self.items_processed += 1
            self.added += conn_result.added
            self.modified += conn_result.modified
            self.removed += conn_result.removed

    def summary(self) -> str:
        """One-line human summary, e.g. "3 of 4 connections synced; 1 failed: ..."."""
        attempted = len(self.connections)
        text = f"{self.items_processed} of {attempted} connections synced"
        failed = self.failed
        if failed:
            reasons = {
                error.connection_id: error.reason
                for error in self.errors
                if error.kind != "persistence"
            }
            details = "; ".join(
                f"{conn.institution or conn.connection_id}: "
                f"{reasons.get(conn.connection_id, 'unknown error')}"
                for conn in failed
            )
            text += f"; {len(failed)} failed: {details}"
        text += (
            f" ({self.added} added, {self.modified} modified, "
            f"{self.removed} removed)"
        )
        return text


class OrchestratorLogger:
    """Handles all logging for SyncOrchestrator with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def sync_start(self, client_id: str, connection_count: int) -> None:
        self._logger.bind(client_id=client_id, connections=connection_count).info(
            "Starting sync for client {} ({} connections)",
            client_id,
            connection_count,
        )

    def connection_skipped(self, connection: Connection) -> None:
        self._logger.bind(connection_id=connection.connection_id).warning(
            "Skipping test connection {} ({})",
            connection.connection_id,
            connection.institution_name or "unknown institution",
        )

    def accounts_unavailable(self, connection_id: str, error: Exception) -> None:
        self._logger.bind(connection_id=connection_id).warning(
            "Could not load accounts for {}, continuing without account types: {}",
            connection_id,
            error,
        )

    def connection_synced(self, result: ConnectionSyncResult) -> None:
        self._logger.bind(
            connection_id=result.connection_id,
            added=result.added,
            modified=result.modified,
            removed=result.removed,
            cursor=result.committed_cursor,
        ).info(
            "Synced {}: {} added, {} modified, {} removed",
            result.connection_id,
            result.added,
            result.modified,
            result.removed,
        )

    def connection_failed(self, error: SyncError) -> None:
        self._logger.bind(
            connection_id=error.connection_id, kind=error.kind
        ).error(
            "Sync failed for {} ({}): {}",
            error.connection_id,
            error.kind,
            error.reason,
        )

    def connection_crashed(self, connection_id: str) -> None:
        self._logger.bind(connection_id=connection_id).exception(
            "Unexpected error while syncing {}", connection_id
        )

    def error_not_recorded(self, connection_id: str, error: Exception) -> None:
        self._logger.bind(connection_id=connection_id).warning(
            "Could not record sync error for {}: {}", connection_id, error
        )

    def sync_complete(self, result: SyncResult) -> None:
        self._logger.bind(
            client_id=result.client_id,
            items_processed=result.items_processed,
            errors=len(result.errors),
        ).info("Sync complete for client {}: {}", result.client_id, result.summary())

    def sweep_start(self, client_count: int, workers: int) -> None:
        self._logger.bind(clients=client_count, workers=workers).info(
            "Sweeping {} clients with {} workers", client_count, workers
        )

    def sweep_client_failed(self, client_id: str, error: Exception) -> None:
        self._logger.bind(client_id=client_id).error(
            "Sweep could not sync client {}: {}", client_id, error
        )


class SyncOrchestrator:
    """Client-facing entry point for transaction sync.

    For each active connection: sync loop, then reconciler, then cursor
    commit. A connection's cursor is written only after its page-set was
    reconciled without a fatal error; any failure leaves it where it was.
    """

    def __init__(
        self,
        db: DB,
        provider: ProviderClient,
        config: SyncConfig | None = None,
        *,
        sync_loop: SyncLoop | None = None,
        reconciler: Reconciler | None = None,
        logger_instance: OrchestratorLogger | None = None,
    ) -> None:
        self._db = db
        self._provider = provider
        self._config = config or SyncConfig()
        self._loop = sync_loop or SyncLoop.from_config(provider, self._config)
        self._reconciler = reconciler or Reconciler(db)
        self._logger = logger_instance or OrchestratorLogger()

    def sync(
        self,
        client_id: str,
        connection_id: str | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> SyncResult:
        """
        Sync every active connection of a client, or just one of them.

        Args:
            client_id: Client to sync
            connection_id: Restrict the sync to this connection
            cancel: Shared cancellation token; by default each connection gets
                its own token bounded by ``sync_timeout_seconds``

        Returns:
            SyncResult aggregating counts and per-connection errors

        Raises:
            ClientNotFoundError: No client has this id
        """
        if self._db.get_client(client_id) is None:
            raise ClientNotFoundError(f"Client {client_id} not found")

        connections = self._db.list_connections(client_id, active_only=True)
        if connection_id is not None:
            connections = [c for c in connections if c.connection_id == connection_id]

        result = SyncResult(client_id=client_id)
        self._logger.sync_start(client_id, len(connections))

        for connection in connections:
            if is_test_credential(connection.access_token):
                self._logger.connection_skipped(connection)
                result.skipped += 1
                continue
            token = cancel or CancelToken(
                timeout_seconds=self._config.sync_timeout_seconds
            )
            conn_result, errors = self._sync_connection(client_id, connection, token)
            result.record(conn_result)
            result.errors.extend(errors)

        self._logger.sync_complete(result)
        return result

    def sync_all(
        self,
        *,
        max_workers: int | None = None,
        cancel: CancelToken | None = None,
    ) -> dict[str, SyncResult]:
        """Sync every active client, clients in parallel.

        Connections of one client still run one after another.
        """
        client_ids = self._db.list_active_client_ids()
        workers = max_workers or self._config.sweep_workers
        self._logger.sweep_start(len(client_ids), workers)

        results: dict[str, SyncResult] = {}
        if not client_ids:
            return results

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self.sync, client_id, cancel=cancel): client_id
                for client_id in client_ids
            }
            for future in as_completed(futures):
                client_id = futures[future]
                try:
                    results[client_id] = future.result()
                except (TxnSyncError, SQLAlchemyError) as e:
                    self._logger.sweep_client_failed(client_id, e)

        return {client_id: results[client_id] for client_id in sorted(results)}

    def _load_accounts(self, connection: Connection) -> dict[str, AccountContext]:
        try:
            accounts = self._provider.fetch_accounts(connection.access_token)
        except ProviderError as e:
            self._logger.accounts_unavailable(connection.connection_id, e)
            return {}
        return build_account_context(accounts)

    def _sync_connection(
        self, client_id: str, connection: Connection, cancel: CancelToken
    ) -> tuple[ConnectionSyncResult, list[SyncError]]:
        connection_id = connection.connection_id
        institution = connection.institution_name
        machine = SyncStateMachine()
        conn_result = ConnectionSyncResult(
            connection_id=connection_id, institution=institution
        )
        errors: list[SyncError] = []

        def fail(kind: ErrorKind, reason: str) -> None:
            machine.fail()
            error = SyncError(connection_id, institution, kind, reason)
            errors.append(error)
            self._logger.connection_failed(error)
            self._record_error(connection_id, f"{kind}: {reason}")

        try:
            machine.transition(ConnectionSyncState.PAGINATING)
            accounts = self._load_accounts(connection)
            page_set = self._loop.fetch_all(
                connection_id=connection_id,
                credential=connection.access_token,
                cursor=connection.cursor,
                cancel=cancel,
                on_state=machine.transition,
            )
            conn_result.pages_fetched = page_set.pages_fetched
            conn_result.attempts = page_set.attempts

            machine.transition(ConnectionSyncState.RECONCILING)
            outcome = self._reconciler.apply(
                client_id=client_id,
                connection=connection,
                page_set=page_set,
                accounts=accounts,
            )

            machine.transition(ConnectionSyncState.COMMITTING)
            self._db.commit_cursor(connection_id, page_set.next_cursor)
            machine.transition(ConnectionSyncState.DONE)

            conn_result.added = len(page_set.added)
            conn_result.modified = len(page_set.modified)
            conn_result.removed = len(page_set.removed)
            conn_result.failed_records = outcome.failed
            conn_result.committed_cursor = page_set.next_cursor
            if outcome.failures:
                first = outcome.failures[0]
                errors.append(
                    SyncError(
                        connection_id,
                        institution,
                        "persistence",
                        f"{outcome.failed} records failed to persist "
                        f"(first: {first.operation} {first.external_id}: "
                        f"{first.reason})",
                    )
                )
            self._logger.connection_synced(conn_result)
        except CredentialError as e:
            fail("credential", e.reason)
        except MutationRetriesExhaustedError as e:
            fail("mutation_retries", e.reason)
        except FatalProviderError as e:
            fail("provider", e.reason)
        except SyncCancelledError as e:
            fail("cancelled", str(e))
        except ReconcileError as e:
            fail("reconcile", str(e))
        except SQLAlchemyError as e:
            fail("cursor_commit", str(e))
        except Exception as e:  # noqa: BLE001 - isolate one connection's failure
            self._logger.connection_crashed(connection_id)
            fail("internal", f"{type(e).__name__}: {e}")

        conn_result.state = machine.state
        conn_result.history = machine.history
        return conn_result, errors

    def _record_error(self, connection_id: str, message: str) -> None:
        try:
            self._db.record_sync_error(connection_id, message)
        except SQLAlchemyError as e:
            self._logger.error_not_recorded(connection_id, e)
