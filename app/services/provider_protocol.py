"""Provider-neutral shapes for account snapshots and transaction delta pages.

Everything past the provider client works with these dataclasses; SDK model
objects never leave the client module.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol


@dataclass
class AccountSnapshot:
    """Point-in-time view of one account, including its balances."""

    account_id: str
    name: str
    type: str
    official_name: str | None = None
    subtype: str | None = None
    mask: str | None = None
    balance_available: Decimal | None = None
    balance_current: Decimal | None = None
    balance_limit: Decimal | None = None
    iso_currency_code: str | None = None
    unofficial_currency_code: str | None = None


@dataclass
class TransactionRecord:
    """Full transaction record as delivered in an added or modified entry."""

    transaction_id: str
    account_id: str
    amount: Decimal  # positive = money out, negative = money in
    transaction_date: date
    name: str
    pending: bool = False
    iso_currency_code: str | None = None
    unofficial_currency_code: str | None = None
    authorized_date: date | None = None
    merchant_name: str | None = None
    merchant_entity_id: str | None = None
    original_description: str | None = None
    category_primary: str | None = None
    category_detailed: str | None = None
    category_confidence: str | None = None
    legacy_category: list[str] | None = None
    category_id: str | None = None
    payment_channel: str | None = None
    transaction_type: str | None = None
    location: dict[str, Any] | None = None
    payment_meta: dict[str, Any] | None = None
    logo_url: str | None = None
    website: str | None = None


class ChangeKind(str, Enum):
    """What a delta entry asks the reconciler to do."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class TransactionChange:
    """One entry of a delta page.

    ADDED and MODIFIED entries carry the full record; REMOVED entries carry
    only the transaction id.
    """

    kind: ChangeKind
    transaction_id: str
    record: TransactionRecord | None = None

    def __post_init__(self):
        if self.kind is ChangeKind.REMOVED and self.record is not None:
            raise ValueError("removed entries carry no record")
        if self.kind is not ChangeKind.REMOVED and self.record is None:
            raise ValueError(f"{self.kind.value} entries require a record")

    @classmethod
    def added(cls, record: TransactionRecord) -> "TransactionChange":
        return cls(ChangeKind.ADDED, record.transaction_id, record)

    @classmethod
    def modified(cls, record: TransactionRecord) -> "TransactionChange":
        return cls(ChangeKind.MODIFIED, record.transaction_id, record)

    @classmethod
    def removed(cls, transaction_id: str) -> "TransactionChange":
        return cls(ChangeKind.REMOVED, transaction_id)


@dataclass
class DeltaPage:
    """One page of a transaction delta stream.

    ``next_cursor`` is where the next page starts when ``has_more`` is true,
    and the new resting cursor when it is false.
    """

    next_cursor: str
    has_more: bool
    changes: list[TransactionChange] = field(default_factory=list)

    def _of_kind(self, kind: ChangeKind) -> list[TransactionChange]:
        return [c for c in self.changes if c.kind is kind]

    @property
    def added(self) -> list[TransactionRecord]:
        return [c.record for c in self._of_kind(ChangeKind.ADDED)]

    @property
    def modified(self) -> list[TransactionRecord]:
        return [c.record for c in self._of_kind(ChangeKind.MODIFIED)]

    @property
    def removed(self) -> list[str]:
        return [c.transaction_id for c in self._of_kind(ChangeKind.REMOVED)]

    @property
    def is_empty(self) -> bool:
        return not self.changes


class ProviderClient(Protocol):
    """Contract the orchestrator needs from a financial-data provider.

    Implementations keep no state between calls and never retry on their own;
    every call can be repeated safely by the caller.
    """

    async def fetch_accounts(self, credential: str) -> list[AccountSnapshot]:
        """Fetch a full snapshot of the connection's accounts.

        Raises:
            ProviderError: On any non-2xx provider response.
        """
        ...

    async def fetch_delta_page(
        self, credential: str, cursor: str | None = None
    ) -> DeltaPage:
        """Fetch the next page of transaction changes after ``cursor``.

        With no cursor the provider starts a full historical backfill.

        Raises:
            ProviderError: On any non-2xx provider response.
        """
        ...
