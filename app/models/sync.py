"""Connection, Account and Transaction models kept in sync with the provider."""

import uuid
from datetime import datetime, timezone, date
from decimal import Decimal
from typing import Any
from sqlalchemy import (
    JSON,
    String,
    Text,
    DateTime,
    Date,
    Numeric,
    Boolean,
    ForeignKey,
    Index,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Connection(Base):
    """
    A linked institution (a Plaid Item) and its sync position.

    The transaction cursor is only ever replaced after the page it follows
    has been reconciled.
    """
    __tablename__ = "connections"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    # Provider-assigned item id
    item_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    # Encrypted using Fernet - NEVER store in plain text
    encrypted_access_token: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    institution_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    institution_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    # NULL until the first page of the initial backfill is reconciled
    transaction_cursor: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    # Set when the provider rejects the credential
    needs_attention: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    last_error_code: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    last_error_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    # Set while some process is syncing this connection
    sync_lease_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=_utcnow,
        nullable=True,
    )

    __table_args__ = (
        Index("ix_connections_user_active", "user_id", "is_active"),
    )


class Account(Base):
    """
    A bank account reported by the provider for one Connection.

    Balances are a point-in-time snapshot, replaced wholesale on every sync.
    """
    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    account_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    item_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("connections.item_id"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    official_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    subtype: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    mask: Mapped[str | None] = mapped_column(
        String(10),
        nullable=True,
    )
    # Balance snapshot
    balance_available: Mapped[Decimal | None] = mapped_column(
        Numeric(14, 2),
        nullable=True,
    )
    balance_current: Mapped[Decimal | None] = mapped_column(
        Numeric(14, 2),
        nullable=True,
    )
    balance_limit: Mapped[Decimal | None] = mapped_column(
        Numeric(14, 2),
        nullable=True,
    )
    iso_currency_code: Mapped[str | None] = mapped_column(
        String(3),
        nullable=True,
    )
    unofficial_currency_code: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=_utcnow,
        nullable=True,
    )


class Transaction(Base):
    """
    A transaction reported by the provider.

    Amount sign follows the provider: positive is money leaving the account,
    negative is money coming in. Amounts are stored as delivered.
    """
    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    transaction_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    # Plain reference; accounts are never deleted by the engine
    account_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    item_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    # Transaction details
    amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2),
        nullable=False,
    )
    iso_currency_code: Mapped[str | None] = mapped_column(
        String(3),
        nullable=True,
    )
    unofficial_currency_code: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
    )
    name: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
    )
    merchant_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    merchant_entity_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    original_description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    # Categorization
    category_primary: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    category_detailed: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    category_confidence: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    legacy_category: Mapped[list[str] | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    category_id: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    # Dates
    transaction_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        index=True,
    )
    authorized_date: Mapped[date | None] = mapped_column(
        Date,
        nullable=True,
    )
    # Status
    pending: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    # Payment channel: online, in store, other
    payment_channel: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    transaction_type: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    location: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    payment_meta: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    logo_url: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    website: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=_utcnow,
        nullable=True,
    )

    __table_args__ = (
        Index("ix_transactions_item_date", "item_id", "transaction_date"),
        Index("ix_transactions_account_date", "account_id", "transaction_date"),
    )
