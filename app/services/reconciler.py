"""Apply provider snapshots and delta pages to local storage."""

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, and_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import async_session_factory
from app.core.exceptions import ReconciliationError
from app.models.sync import Account, Transaction
from app.services.provider_protocol import (
    AccountSnapshot,
    ChangeKind,
    DeltaPage,
    TransactionRecord,
)

logger = logging.getLogger(__name__)

# Columns an upsert must never overwrite
_IMMUTABLE_COLUMNS = {"id", "created_at"}


@dataclass
class PageStats:
    """Counts of entries applied from one delta page."""
    added: int = 0
    modified: int = 0
    removed: int = 0


def _insert_for(db: AsyncSession):
    """Dialect-specific INSERT that supports ON CONFLICT DO UPDATE."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise ReconciliationError(f"Unsupported database dialect for upserts: {dialect}")


def _replace_all(stmt, values: dict[str, Any], conflict_column: str):
    """ON CONFLICT clause that overwrites every mutable column of the row."""
    set_ = {
        key: stmt.excluded[key]
        for key in values
        if key not in _IMMUTABLE_COLUMNS and key != conflict_column
    }
    set_["updated_at"] = datetime.now(timezone.utc)
    return stmt.on_conflict_do_update(index_elements=[conflict_column], set_=set_)


class Reconciler:
    """
    Idempotent writer for accounts and transactions.

    Added and modified transactions are full-record upserts keyed by
    transaction id, removals are deletes that tolerate missing rows, and
    account snapshots replace the stored row wholesale. Re-applying the same
    input leaves storage unchanged.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = async_session_factory):
        self._session_factory = session_factory

    async def upsert_accounts(
        self,
        item_id: str,
        snapshots: list[AccountSnapshot],
    ) -> int:
        """
        Store the latest snapshot of each account.

        Raises:
            ReconciliationError: If any write fails; nothing is committed
        """
        synced_at = datetime.now(timezone.utc)
        try:
            async with self._session_factory() as db:
                insert = _insert_for(db)
                for snapshot in snapshots:
                    values = dataclasses.asdict(snapshot)
                    values["item_id"] = item_id
                    values["last_synced_at"] = synced_at
                    stmt = insert(Account).values(**values)
                    await db.execute(_replace_all(stmt, values, "account_id"))
                await db.commit()
        except SQLAlchemyError as e:
            raise ReconciliationError(
                f"Failed to store accounts for connection {item_id}"
            ) from e

        return len(snapshots)

    async def apply_page(self, item_id: str, page: DeltaPage) -> PageStats:
        """
        Apply every change of one delta page, in page order.

        The page is committed as a unit; on failure it is rolled back and
        ReconciliationError is raised so the caller keeps the old cursor.
        """
        stats = PageStats()
        try:
            async with self._session_factory() as db:
                insert = _insert_for(db)
                for change in page.changes:
                    if change.kind is ChangeKind.REMOVED:
                        await self._remove_transaction(db, item_id, change.transaction_id)
                        stats.removed += 1
                        continue

                    await self._upsert_transaction(db, insert, item_id, change.record)
                    if change.kind is ChangeKind.ADDED:
                        stats.added += 1
                    else:
                        stats.modified += 1
                await db.commit()
        except SQLAlchemyError as e:
            raise ReconciliationError(
                f"Failed to apply delta page for connection {item_id}"
            ) from e

        return stats

    async def _upsert_transaction(
        self,
        db: AsyncSession,
        insert,
        item_id: str,
        record: TransactionRecord,
    ) -> None:
        values = dataclasses.asdict(record)
        values["item_id"] = item_id
        stmt = insert(Transaction).values(**values)
        await db.execute(_replace_all(stmt, values, "transaction_id"))

    async def _remove_transaction(
        self,
        db: AsyncSession,
        item_id: str,
        transaction_id: str,
    ) -> None:
        # Deleting an id that is not stored is a no-op
        await db.execute(
            delete(Transaction).where(
                and_(
                    Transaction.transaction_id == transaction_id,
                    Transaction.item_id == item_id,
                )
            )
        )
