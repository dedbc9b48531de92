"""Per-connection sync state machine.

IDLE -> PAGINATING -> (MUTATION_RETRY -> PAGINATING)* -> RECONCILING
-> COMMITTING -> DONE, with FAILED reachable from PAGINATING, MUTATION_RETRY
and RECONCILING.
"""

from __future__ import annotations

from enum import Enum


class ConnectionSyncState(Enum):
    IDLE = "idle"
    PAGINATING = "paginating"
    MUTATION_RETRY = "mutation_retry"
    RECONCILING = "reconciling"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: dict[ConnectionSyncState, frozenset[ConnectionSyncState]] = {
    ConnectionSyncState.IDLE: frozenset({ConnectionSyncState.PAGINATING}),
    ConnectionSyncState.PAGINATING: frozenset(
        {
            ConnectionSyncState.MUTATION_RETRY,
            ConnectionSyncState.RECONCILING,
            ConnectionSyncState.FAILED,
        }
    ),
    ConnectionSyncState.MUTATION_RETRY: frozenset(
        {ConnectionSyncState.PAGINATING, ConnectionSyncState.FAILED}
    ),
    ConnectionSyncState.RECONCILING: frozenset(
        {ConnectionSyncState.COMMITTING, ConnectionSyncState.FAILED}
    ),
    ConnectionSyncState.COMMITTING: frozenset(
        {ConnectionSyncState.DONE, ConnectionSyncState.FAILED}
    ),
    ConnectionSyncState.DONE: frozenset(),
    ConnectionSyncState.FAILED: frozenset(),
}


class IllegalTransitionError(RuntimeError):
    """A sync attempted a state change the state machine does not allow."""


class SyncStateMachine:
    """Tracks one connection's sync attempt and records its path."""

    def __init__(self) -> None:
        self._state = ConnectionSyncState.IDLE
        self._history: list[ConnectionSyncState] = [ConnectionSyncState.IDLE]

    @property
    def state(self) -> ConnectionSyncState:
        return self._state

    @property
    def history(self) -> list[ConnectionSyncState]:
        return list(self._history)

    def transition(self, new_state: ConnectionSyncState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise IllegalTransitionError(
                f"Cannot move from {self._state.value} to {new_state.value}"
            )
        self._state = new_state
        self._history.append(new_state)

    def fail(self) -> None:
        """Move to FAILED unless already terminal."""
        if self._state not in (ConnectionSyncState.DONE, ConnectionSyncState.FAILED):
            self.transition(ConnectionSyncState.FAILED)
