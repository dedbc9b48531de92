from __future__ import annotations

from datetime import date
import json
import sys

from dotenv import load_dotenv
from loguru import logger
import typer

from txnsync.adapters.db.facade import DB
from txnsync.core.config import SyncConfig, load_sync_config_from_env
from txnsync.errors import ClientNotFoundError
from txnsync.infra.clients.plaid import PlaidClient, PlaidClientError
from txnsync.infra.clients.provider import ProviderAdapter
from txnsync.tools.sync.orchestrator import SyncOrchestrator, SyncResult
from txnsync.tools.sync.webhooks import InvalidWebhookError, handle_webhook

# Load environment variables from .env
load_dotenv()

app = typer.Typer(
    help="txnsync: incremental transaction sync from Plaid.",
    no_args_is_help=True,
)

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} [{level}] {name}: {message}"


def configure_logging(level: str) -> None:
    """Send logs to stderr; stdout is reserved for command output."""
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level)


@app.callback()
def main_callback(
    ctx: typer.Context,
    log_level: str | None = typer.Option(
        None, "--log-level", help="Override TXNSYNC_LOG_LEVEL"
    ),
) -> None:
    try:
        config = load_sync_config_from_env()
    except ValueError as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(1) from None
    configure_logging((log_level or config.log_level).upper())
    ctx.obj = config


def _config(ctx: typer.Context) -> SyncConfig:
    config: SyncConfig = ctx.obj
    return config


def _db(config: SyncConfig) -> DB:
    db = DB(config.database_url)
    db.create_schema()
    return db


def _plaid_client() -> PlaidClient:
    try:
        return PlaidClient.from_env()
    except PlaidClientError as e:
        typer.echo(f"Error initializing Plaid client: {e}", err=True)
        raise typer.Exit(1) from None


def _orchestrator(db: DB, config: SyncConfig) -> SyncOrchestrator:
    provider = ProviderAdapter(_plaid_client(), page_size=config.page_size)
    return SyncOrchestrator(db, provider, config)


def _print_result(result: SyncResult) -> None:
    typer.echo(f"[{result.client_id}] {result.summary()}")
    for error in result.errors:
        label = error.institution or error.connection_id
        typer.echo(f"  ! {label} ({error.kind}): {error.reason}", err=True)


def _format_amount(cents: int) -> str:
    return f"{cents / 100:,.2f}"


@app.command("init-db")
def init_db(ctx: typer.Context) -> None:
    """Create the database tables."""
    config = _config(ctx)
    _db(config)
    typer.echo(f"Schema ready at {config.database_url}")


@app.command("add-client")
def add_client(
    ctx: typer.Context,
    client_id: str,
    name: str | None = typer.Option(None, help="Display name"),
) -> None:
    """Create a client, or rename an existing one."""
    db = _db(_config(ctx))
    client = db.add_client(client_id, name=name)
    typer.echo(f"Client {client.client_id} ready")


@app.command("link")
def link(
    ctx: typer.Context,
    client_id: str,
    access_token: str = typer.Option(..., help="Plaid access token for the item"),
    item_id: str | None = typer.Option(
        None, help="Item id; looked up from Plaid when omitted"
    ),
    institution_name: str | None = typer.Option(None, help="Institution name"),
) -> None:
    """Register a linked Plaid item as a connection for a client."""
    db = _db(_config(ctx))
    if db.get_client(client_id) is None:
        typer.echo(f"Client {client_id} not found", err=True)
        raise typer.Exit(1)

    institution_id: str | None = None
    if item_id is None:
        try:
            info = _plaid_client().get_item_info(access_token)
        except PlaidClientError as e:
            typer.echo(f"Failed to look up item: {e}", err=True)
            raise typer.Exit(1) from None
        item_id = info["item_id"]
        institution_id = info["institution_id"]
        institution_name = institution_name or info["institution_name"]

    try:
        conn = db.add_connection(
            connection_id=item_id,
            client_id=client_id,
            access_token=access_token,
            institution_id=institution_id,
            institution_name=institution_name,
        )
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    typer.echo(
        f"Linked {conn.connection_id} "
        f"({conn.institution_name or 'unknown institution'}) to {client_id}"
    )


@app.command("connections")
def connections(
    ctx: typer.Context,
    client_id: str,
    include_inactive: bool = typer.Option(
        False, "--all", help="Include deactivated connections"
    ),
) -> None:
    """List a client's connections and their sync position."""
    db = _db(_config(ctx))
    conns = db.list_connections(client_id, active_only=not include_inactive)
    if not conns:
        typer.echo("No connections found.")
        return
    for conn in conns:
        status = "active" if conn.is_active else "inactive"
        synced = conn.last_synced_at.isoformat() if conn.last_synced_at else "never"
        line = (
            f"{conn.connection_id}  {conn.institution_name or '-'}  {status}  "
            f"last synced: {synced}"
        )
        if conn.last_error:
            line += f"  last error: {conn.last_error}"
        typer.echo(line)


@app.command("sync")
def sync(
    ctx: typer.Context,
    client_id: str,
    connection: str | None = typer.Option(
        None, "--connection", help="Only sync this connection (item id)"
    ),
) -> None:
    """Sync a client's connections from Plaid."""
    config = _config(ctx)
    db = _db(config)
    orchestrator = _orchestrator(db, config)
    try:
        result = orchestrator.sync(client_id, connection_id=connection)
    except ClientNotFoundError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    _print_result(result)
    if result.failed:
        raise typer.Exit(2)


@app.command("sync-all")
def sync_all(
    ctx: typer.Context,
    workers: int | None = typer.Option(
        None, help="Parallel clients (defaults to TXNSYNC_SWEEP_WORKERS)"
    ),
) -> None:
    """Sync every active client."""
    config = _config(ctx)
    db = _db(config)
    results = _orchestrator(db, config).sync_all(max_workers=workers)
    if not results:
        typer.echo("No active clients.")
        return
    for result in results.values():
        _print_result(result)


@app.command("webhook")
def webhook(ctx: typer.Context, payload_json: str) -> None:
    """Process a Plaid webhook payload given as a JSON string."""
    config = _config(ctx)
    try:
        payload = json.loads(payload_json)
    except json.JSONDecodeError as e:
        typer.echo(f"Payload is not valid JSON: {e}", err=True)
        raise typer.Exit(1) from None

    db = _db(config)
    try:
        outcome = handle_webhook(
            payload, db=db, orchestrator=_orchestrator(db, config)
        )
    except InvalidWebhookError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    typer.echo(f"{outcome.action}: {outcome.message}")


@app.command("review")
def review(
    ctx: typer.Context,
    external_id: str,
    client: str = typer.Option(..., "--client", help="Owning client id"),
    category: str | None = typer.Option(
        None, help="Category to assign; omit to keep the current one"
    ),
    notes: str | None = typer.Option(None, help="Reviewer notes"),
) -> None:
    """Mark a transaction reviewed, optionally overriding its category."""
    db = _db(_config(ctx))
    try:
        txn = db.review_transaction(
            external_id, client_id=client, user_category=category, notes=notes
        )
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    typer.echo(f"{txn.external_id} reviewed as {txn.effective_category}")


@app.command("transactions")
def transactions(
    ctx: typer.Context,
    client_id: str,
    month: str | None = typer.Option(None, help="Single month, YYYY-MM"),
    months: int | None = typer.Option(None, help="Last N months"),
    start: str | None = typer.Option(None, help="Start date, YYYY-MM-DD"),
    end: str | None = typer.Option(None, help="End date, YYYY-MM-DD"),
    limit: int = typer.Option(100, help="Maximum rows"),
) -> None:
    """List a client's stored transactions, newest first."""
    db = _db(_config(ctx))
    try:
        start_date = date.fromisoformat(start) if start else None
        end_date = date.fromisoformat(end) if end else None
    except ValueError as e:
        typer.echo(f"Invalid date: {e}", err=True)
        raise typer.Exit(1) from None

    txns = db.list_transactions(
        client_id,
        month=month,
        months=months,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
    )
    if not txns:
        typer.echo("No transactions found.")
        return
    for txn in txns:
        reviewed = "*" if txn.is_reviewed else " "
        typer.echo(
            f"{txn.posted_at.isoformat()} {reviewed} "
            f"{_format_amount(txn.amount_cents):>12} "
            f"{txn.flow_kind:<8} {txn.effective_category:<18} {txn.name}"
        )


def main() -> None:
    app()
