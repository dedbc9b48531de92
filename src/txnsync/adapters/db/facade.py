from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from txnsync.adapters.db.models import (
    ACCOUNT_SNAPSHOT_FIELDS,
    PROVIDER_OWNED_FIELDS,
    Base,
    Client,
    Connection,
    Transaction,
    UpsertAction,
)
from txnsync.errors import TransactionOwnershipError


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (":memory:" in url or url == "sqlite://")


def _months_back(today: date, count: int) -> list[str]:
    """Return ``count`` YYYY-MM keys ending at ``today``'s month, newest first."""
    keys: list[str] = []
    year, month = today.year, today.month
    for _ in range(count):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return keys


class DB:
    """Database service layer: connection registry, cursor store, transactions."""

    def __init__(self, url: str) -> None:
        """Initialize database connection.

        Args:
            url: Database URL (e.g., "sqlite:///txnsync.db")
        """
        self._url = url
        if _is_memory_sqlite(url):
            # One shared connection so every session sees the same in-memory DB
            self._engine = create_engine(
                url,
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self._engine = create_engine(url, echo=False)
        self._session_factory = sessionmaker(
            bind=self._engine, class_=Session, expire_on_commit=False
        )

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for database sessions."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_schema(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(self._engine)

    def ping(self) -> None:
        """Round-trip a trivial query; raises if the store is unreachable."""
        with self.session() as session:  # type: Session
            session.execute(text("SELECT 1"))

    # Clients -------------------------------------------------------------

    def add_client(self, client_id: str, *, name: str | None = None) -> Client:
        with self.session() as session:  # type: Session
            client = session.get(Client, client_id)
            if client is None:
                client = Client(client_id=client_id, name=name, is_active=True)
                session.add(client)
            elif name is not None:
                client.name = name
            session.flush()
            session.refresh(client)
            session.expunge(client)
            return client

    def get_client(self, client_id: str) -> Client | None:
        with self.session() as session:  # type: Session
            client = session.get(Client, client_id)
            if client:
                session.expunge(client)
            return client

    def list_active_client_ids(self) -> list[str]:
        with self.session() as session:  # type: Session
            rows = (
                session.query(Client.client_id)
                .filter(Client.is_active.is_(True))
                .order_by(Client.client_id)
                .all()
            )
            return [row[0] for row in rows]

    # Connection registry ---------------------------------------------------

    def add_connection(
        self,
        *,
        connection_id: str,
        client_id: str,
        access_token: str,
        institution_id: str | None = None,
        institution_name: str | None = None,
    ) -> Connection:
        """Register a linked item, or refresh credential/institution if known.

        Re-linking an existing item reactivates it but keeps its cursor.
        """
        with self.session() as session:  # type: Session
            conn = session.get(Connection, connection_id)
            if conn is None:
                conn = Connection(
                    connection_id=connection_id,
                    client_id=client_id,
                    access_token=access_token,
                    institution_id=institution_id,
                    institution_name=institution_name,
                    is_active=True,
                )
                session.add(conn)
            else:
                if conn.client_id != client_id:
                    raise ValueError(
                        f"Connection {connection_id} belongs to client "
                        f"{conn.client_id}, not {client_id}"
                    )
                conn.access_token = access_token
                conn.institution_id = institution_id or conn.institution_id
                conn.institution_name = institution_name or conn.institution_name
                conn.is_active = True
                conn.updated_at = datetime.now()
            session.flush()
            session.refresh(conn)
            session.expunge(conn)
            return conn

    def get_connection(self, connection_id: str) -> Connection | None:
        with self.session() as session:  # type: Session
            conn = session.get(Connection, connection_id)
            if conn:
                session.expunge(conn)
            return conn

    def list_connections(
        self, client_id: str, *, active_only: bool = True
    ) -> list[Connection]:
        with self.session() as session:  # type: Session
            query = session.query(Connection).filter(Connection.client_id == client_id)
            if active_only:
                query = query.filter(Connection.is_active.is_(True))
            conns = query.order_by(
                Connection.created_at, Connection.connection_id
            ).all()
            for conn in conns:
                session.expunge(conn)
            return conns

    def deactivate_connection(
        self, connection_id: str, *, reason: str | None = None
    ) -> bool:
        """Mark a connection inactive. Returns False if it does not exist."""
        with self.session() as session:  # type: Session
            conn = session.get(Connection, connection_id)
            if conn is None:
                return False
            conn.is_active = False
            if reason is not None:
                conn.last_error = reason
            conn.updated_at = datetime.now()
            return True

    def commit_cursor(self, connection_id: str, cursor: str) -> None:
        """Durably advance a connection's cursor after a reconciled sync."""
        with self.session() as session:  # type: Session
            conn = session.get(Connection, connection_id)
            if conn is None:
                raise ValueError(f"Connection {connection_id} not found")
            now = datetime.now()
            conn.cursor = cursor
            conn.last_synced_at = now
            conn.last_error = None
            conn.updated_at = now

    def record_sync_error(self, connection_id: str, error: str) -> None:
        with self.session() as session:  # type: Session
            conn = session.get(Connection, connection_id)
            if conn is None:
                return
            conn.last_error = error
            conn.updated_at = datetime.now()

    # Transactions ----------------------------------------------------------

    def get_transaction(
        self, external_id: str, *, client_id: str | None = None
    ) -> Transaction | None:
        with self.session() as session:  # type: Session
            query = session.query(Transaction).filter(
                Transaction.external_id == external_id
            )
            if client_id is not None:
                query = query.filter(Transaction.client_id == client_id)
            txn = query.first()
            if txn:
                session.expunge(txn)
            return txn

    def insert_transaction_if_absent(self, values: dict[str, Any]) -> UpsertAction:
        """Insert a transaction unless its external_id is already stored.

        A row that already exists is reported as a duplicate and left as is.
        """
        with self.session() as session:  # type: Session
            exists = (
                session.query(Transaction.transaction_id)
                .filter(Transaction.external_id == values["external_id"])
                .first()
            )
            if exists is not None:
                return "skipped-duplicate"
            session.add(Transaction(**values))
            try:
                session.flush()
            except IntegrityError:
                # Lost a race with another writer for the same external_id
                session.rollback()
                return "skipped-duplicate"
            return "inserted"

    def update_provider_fields(self, values: dict[str, Any]) -> UpsertAction:
        """Rewrite provider-owned columns of a transaction.

        Review columns (user_category, is_reviewed, notes) are never touched,
        and a stored account type/subtype is kept. A missing row is inserted
        so a modification delivered before its addition is not lost.

        Raises:
            TransactionOwnershipError: The stored row belongs to another client
        """
        with self.session() as session:  # type: Session
            txn = (
                session.query(Transaction)
                .filter(Transaction.external_id == values["external_id"])
                .first()
            )
            if txn is None:
                session.add(Transaction(**values))
                return "inserted"
            if txn.client_id != values["client_id"]:
                raise TransactionOwnershipError(
                    f"Transaction {values['external_id']} belongs to client "
                    f"{txn.client_id}, not {values['client_id']}"
                )

            changed = False
            for key in PROVIDER_OWNED_FIELDS:
                if key in ACCOUNT_SNAPSHOT_FIELDS and getattr(txn, key) is not None:
                    continue
                if key in values and getattr(txn, key) != values[key]:
                    setattr(txn, key, values[key])
                    changed = True
            if not changed:
                return "unchanged"
            txn.updated_at = datetime.now()
            return "updated"

    def delete_transaction(self, external_id: str, *, client_id: str) -> bool:
        """Delete a transaction by (external_id, client_id).

        Returns:
            True if a row was deleted, False if none matched
        """
        with self.session() as session:  # type: Session
            deleted = (
                session.query(Transaction)
                .filter(
                    Transaction.external_id == external_id,
                    Transaction.client_id == client_id,
                )
                .delete(synchronize_session=False)
            )
            return deleted > 0

    def review_transaction(
        self,
        external_id: str,
        *,
        client_id: str,
        user_category: str | None = None,
        notes: str | None = None,
    ) -> Transaction:
        """Record a human review decision on a transaction.

        A None ``user_category`` or ``notes`` keeps the stored value.

        Raises:
            ValueError: If the transaction does not exist for this client
        """
        with self.session() as session:  # type: Session
            txn = (
                session.query(Transaction)
                .filter(
                    Transaction.external_id == external_id,
                    Transaction.client_id == client_id,
                )
                .first()
            )
            if txn is None:
                raise ValueError(
                    f"Transaction {external_id} not found for client {client_id}"
                )
            if user_category is not None:
                txn.user_category = user_category
            txn.is_reviewed = True
            if notes is not None:
                txn.notes = notes
            txn.updated_at = datetime.now()
            session.flush()
            session.refresh(txn)
            session.expunge(txn)
            return txn

    def list_transactions(
        self,
        client_id: str,
        *,
        month: str | None = None,
        months: int | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        limit: int | None = 100,
        today: date | None = None,
    ) -> list[Transaction]:
        """Query a client's stored transactions, newest first.

        Args:
            client_id: Owning client
            month: Single YYYY-MM month
            months: Last N calendar months including the current one (wins
                over ``month``)
            start_date: Inclusive lower bound on posted date
            end_date: Inclusive upper bound on posted date
            limit: Maximum rows, None for all
            today: Reference date for ``months`` (defaults to today)
        """
        with self.session() as session:  # type: Session
            query = session.query(Transaction).filter(
                Transaction.client_id == client_id
            )
            if months:
                keys = _months_back(today or date.today(), months)
                query = query.filter(Transaction.month_year.in_(keys))
            elif month:
                query = query.filter(Transaction.month_year == month)
            if start_date is not None:
                query = query.filter(Transaction.posted_at >= start_date)
            if end_date is not None:
                query = query.filter(Transaction.posted_at <= end_date)
            query = query.order_by(
                Transaction.posted_at.desc(), Transaction.transaction_id.desc()
            )
            if limit is not None:
                query = query.limit(limit)
            txns = query.all()
            for txn in txns:
                session.expunge(txn)
            return txns

    def count_transactions(self, client_id: str) -> int:
        with self.session() as session:  # type: Session
            return (
                session.query(Transaction)
                .filter(Transaction.client_id == client_id)
                .count()
            )
