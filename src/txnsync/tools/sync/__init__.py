"""Sync tools package."""

from txnsync.tools.sync.orchestrator import (
    ConnectionSyncResult,
    SyncError,
    SyncOrchestrator,
    SyncResult,
)
from txnsync.tools.sync.reconciler import AccountContext, Reconciler
from txnsync.tools.sync.state import ConnectionSyncState, SyncStateMachine
from txnsync.tools.sync.sync_loop import PageSet, SyncLoop
from txnsync.tools.sync.webhooks import WebhookOutcome, handle_webhook

__all__ = [
    # Orchestration
    "SyncOrchestrator",
    "SyncResult",
    "ConnectionSyncResult",
    "SyncError",
    # Pipeline stages
    "SyncLoop",
    "PageSet",
    "Reconciler",
    "AccountContext",
    # State machine
    "ConnectionSyncState",
    "SyncStateMachine",
    # Webhooks
    "handle_webhook",
    "WebhookOutcome",
]
