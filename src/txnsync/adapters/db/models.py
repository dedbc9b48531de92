from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Literal

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

from txnsync.categorization.inference import effective_category as resolve_category


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class Client(Base):
    """Client owning upstream connections and their transactions."""

    __tablename__ = "clients"

    client_id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("TRUE")
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    # Relationships
    connections: Mapped[list[Connection]] = relationship(
        "Connection", back_populates="client"
    )


class Connection(Base):
    """Linked upstream item: credential plus its position in the change stream.

    ``cursor`` is NULL until the first successful sync and is only written by
    ``DB.commit_cursor``. Connections are deactivated, never deleted, while
    transactions still reference them.
    """

    __tablename__ = "connections"

    connection_id: Mapped[str] = mapped_column(String, primary_key=True)  # item_id
    client_id: Mapped[str] = mapped_column(
        String, ForeignKey("clients.client_id"), nullable=False
    )
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    institution_id: Mapped[str | None] = mapped_column(String, nullable=True)
    institution_name: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("TRUE")
    )
    cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    # Relationships
    client: Mapped[Client] = relationship("Client", back_populates="connections")


class Transaction(Base):
    """Synchronized transaction keyed by the provider's transaction id.

    Provider-owned columns are rewritten on every resync. ``user_category``,
    ``is_reviewed`` and ``notes`` belong to the human review flow and are
    never written by the reconciler.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_client_month", "client_id", "month_year"),
    )

    transaction_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    external_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    client_id: Mapped[str] = mapped_column(
        String, ForeignKey("clients.client_id"), nullable=False
    )
    connection_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("connections.connection_id"), nullable=True
    )

    # Account snapshot at ingestion time
    account_id: Mapped[str] = mapped_column(String, nullable=False)
    account_type: Mapped[str | None] = mapped_column(String, nullable=True)
    account_subtype: Mapped[str | None] = mapped_column(String, nullable=True)
    account_name: Mapped[str | None] = mapped_column(String, nullable=True)
    account_mask: Mapped[str | None] = mapped_column(String, nullable=True)
    institution: Mapped[str | None] = mapped_column(String, nullable=True)

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String, nullable=False)
    posted_at: Mapped[date] = mapped_column(Date, nullable=False)
    month_year: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    merchant_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    pending: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("FALSE")
    )
    provider_category: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    personal_finance_category: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True
    )

    # Inference output
    flow_kind: Mapped[str] = mapped_column(String, nullable=False)
    suggested_category: Mapped[str] = mapped_column(String, nullable=False)

    # Human review
    user_category: Mapped[str | None] = mapped_column(String, nullable=True)
    is_reviewed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("FALSE")
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    @property
    def effective_category(self) -> str:
        """User-assigned category when present, else the suggested one."""
        return resolve_category(self.user_category, self.suggested_category)


# Columns the reconciler owns. Anything else on Transaction is left alone
# by a resync. client_id is fixed at insert and never rewritten.
PROVIDER_OWNED_FIELDS: tuple[str, ...] = (
    "connection_id",
    "account_id",
    "account_type",
    "account_subtype",
    "account_name",
    "account_mask",
    "institution",
    "amount_cents",
    "currency",
    "posted_at",
    "month_year",
    "name",
    "merchant_name",
    "pending",
    "provider_category",
    "personal_finance_category",
    "flow_kind",
    "suggested_category",
)

# Snapshot taken when the transaction is first stored. A resync only fills
# these in when the stored value is missing.
ACCOUNT_SNAPSHOT_FIELDS: tuple[str, ...] = ("account_type", "account_subtype")

UpsertAction = Literal["inserted", "updated", "unchanged", "skipped-duplicate"]


@dataclass
class RecordFailure:
    external_id: str
    operation: str  # "added" | "modified" | "removed"
    reason: str


@dataclass
class ReconcileOutcome:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped_duplicate: int = 0
    removed: int = 0
    removed_missing: int = 0
    failures: list[RecordFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)
