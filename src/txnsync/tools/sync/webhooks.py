"""Routing for provider webhooks that concern transaction sync.

Signature verification and the HTTP endpoint live outside this package; the
handler receives an already-trusted JSON payload.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, ValidationError

from txnsync.adapters.db.facade import DB
from txnsync.tools.sync.orchestrator import SyncOrchestrator, SyncResult

# TRANSACTIONS codes that mean new changes are waiting behind the cursor
SYNC_TRIGGER_CODES = frozenset(
    {
        "SYNC_UPDATES_AVAILABLE",
        "DEFAULT_UPDATE",
        "INITIAL_UPDATE",
        "HISTORICAL_UPDATE",
    }
)

WebhookAction = Literal["synced", "deactivated", "recorded", "ignored", "unknown_item"]


class WebhookPayload(BaseModel):
    webhook_type: str
    webhook_code: str
    item_id: str | None = None
    error: dict[str, Any] | None = None


@dataclass
class WebhookOutcome:
    action: WebhookAction
    message: str
    sync_result: SyncResult | None = None


class InvalidWebhookError(ValueError):
    """Payload is missing webhook_type or webhook_code."""


def parse_webhook(payload: dict[str, Any]) -> WebhookPayload:
    try:
        return WebhookPayload.model_validate(payload)
    except ValidationError as e:
        raise InvalidWebhookError(f"Invalid webhook payload: {e}") from e


def handle_webhook(
    payload: dict[str, Any], *, db: DB, orchestrator: SyncOrchestrator
) -> WebhookOutcome:
    """Act on one webhook.

    TRANSACTIONS update codes trigger a sync scoped to the item's connection.
    ITEM.USER_PERMISSION_REVOKED deactivates the connection. ITEM.ERROR and
    PENDING_EXPIRATION are recorded on the connection. Anything else is
    acknowledged and logged.
    """
    webhook = parse_webhook(payload)
    event = f"{webhook.webhook_type}.{webhook.webhook_code}"
    log = logger.bind(event=event, item_id=webhook.item_id)
    log.info("Webhook received: {} for item {}", event, webhook.item_id)

    if webhook.webhook_type not in {"TRANSACTIONS", "ITEM"}:
        log.info("Ignoring unhandled webhook {}", event)
        return WebhookOutcome("ignored", f"Unhandled webhook {event}")

    connection = db.get_connection(webhook.item_id) if webhook.item_id else None
    if connection is None:
        log.warning("No connection for item {}", webhook.item_id)
        return WebhookOutcome("unknown_item", f"No connection for {webhook.item_id}")

    if webhook.webhook_type == "TRANSACTIONS":
        if webhook.webhook_code not in SYNC_TRIGGER_CODES:
            log.info("Ignoring unhandled webhook {}", event)
            return WebhookOutcome("ignored", f"Unhandled webhook {event}")
        if not connection.is_active:
            log.info("Ignoring {} for inactive connection", event)
            return WebhookOutcome(
                "ignored", f"Connection {connection.connection_id} is inactive"
            )
        result = orchestrator.sync(
            connection.client_id, connection_id=connection.connection_id
        )
        return WebhookOutcome("synced", result.summary(), sync_result=result)

    if webhook.webhook_code == "USER_PERMISSION_REVOKED":
        db.deactivate_connection(
            connection.connection_id, reason="User revoked permission"
        )
        log.warning("Deactivated connection {}", connection.connection_id)
        return WebhookOutcome(
            "deactivated", f"Connection {connection.connection_id} deactivated"
        )

    if webhook.webhook_code in {"ERROR", "PENDING_EXPIRATION"}:
        error = webhook.error or {}
        message = error.get("error_code") or error.get("error_message") or event
        db.record_sync_error(connection.connection_id, str(message))
        log.warning("Recorded {} on {}: {}", event, connection.connection_id, message)
        return WebhookOutcome("recorded", f"{event}: {message}")

    log.info("Ignoring unhandled webhook {}", event)
    return WebhookOutcome("ignored", f"Unhandled webhook {event}")
