"""In-memory provider and sample records for sync tests."""

import asyncio
from datetime import date
from decimal import Decimal

from app.services.provider_protocol import (
    AccountSnapshot,
    DeltaPage,
    TransactionChange,
    TransactionRecord,
)


def make_account(
    account_id: str = "acc-1",
    current: str | None = "1000.00",
    available: str | None = "900.00",
    limit: str | None = None,
    name: str = "Checking",
) -> AccountSnapshot:
    return AccountSnapshot(
        account_id=account_id,
        name=name,
        official_name=f"{name} Account",
        type="depository",
        subtype="checking",
        mask="0000",
        balance_current=Decimal(current) if current is not None else None,
        balance_available=Decimal(available) if available is not None else None,
        balance_limit=Decimal(limit) if limit is not None else None,
        iso_currency_code="USD",
    )


def make_txn(
    transaction_id: str,
    account_id: str = "acc-1",
    amount: str = "12.50",
    name: str | None = None,
    pending: bool = False,
    merchant_name: str | None = "Corner Cafe",
    category_primary: str | None = "FOOD_AND_DRINK",
) -> TransactionRecord:
    return TransactionRecord(
        transaction_id=transaction_id,
        account_id=account_id,
        amount=Decimal(amount),
        transaction_date=date(2024, 3, 1),
        name=name or f"Purchase {transaction_id}",
        pending=pending,
        iso_currency_code="USD",
        merchant_name=merchant_name,
        category_primary=category_primary,
        payment_channel="in store",
        location={"city": "Austin", "region": "TX"},
    )


def page(
    next_cursor: str,
    has_more: bool = False,
    added: list[TransactionRecord] | None = None,
    modified: list[TransactionRecord] | None = None,
    removed: list[str] | None = None,
) -> DeltaPage:
    changes = [TransactionChange.added(t) for t in added or []]
    changes += [TransactionChange.modified(t) for t in modified or []]
    changes += [TransactionChange.removed(tid) for tid in removed or []]
    return DeltaPage(next_cursor=next_cursor, has_more=has_more, changes=changes)


class FakeProviderClient:
    """Scripted ProviderClient.

    ``pages`` maps the cursor a request is made with (None for a backfill) to
    the page returned, so replaying from an old cursor returns the same page.
    ``errors`` maps credentials to exceptions raised by every call.
    """

    def __init__(
        self,
        accounts: dict[str, list[AccountSnapshot]] | None = None,
        pages: dict[str, dict[str | None, DeltaPage]] | None = None,
        errors: dict[str, Exception] | None = None,
        accounts_delay: float = 0,
        gate: asyncio.Event | None = None,
    ):
        self.accounts = accounts or {}
        self.pages = pages or {}
        self.errors = errors or {}
        self.accounts_delay = accounts_delay
        self.gate = gate
        self.account_calls: list[str] = []
        self.page_calls: list[tuple[str, str | None]] = []

    async def fetch_accounts(self, credential: str) -> list[AccountSnapshot]:
        self.account_calls.append(credential)
        if self.gate is not None:
            await self.gate.wait()
        if self.accounts_delay:
            await asyncio.sleep(self.accounts_delay)
        if credential in self.errors:
            raise self.errors[credential]
        return list(self.accounts.get(credential, []))

    async def fetch_delta_page(self, credential: str, cursor: str | None = None) -> DeltaPage:
        self.page_calls.append((credential, cursor))
        if credential in self.errors:
            raise self.errors[credential]
        scripted = self.pages.get(credential, {})
        if cursor in scripted:
            return scripted[cursor]
        # Nothing new since this cursor
        return DeltaPage(next_cursor=cursor or "empty", has_more=False)
