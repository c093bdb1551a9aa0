"""Durable store of linked connections and their sync cursors."""

import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache

from sqlalchemy import select, update, and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import async_session_factory
from app.core.encryption import encrypt_credential
from app.core.exceptions import (
    ConnectionNotFoundError,
    CursorPersistError,
    DuplicateConnectionError,
)
from app.models.sync import Connection

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """
    CRUD over Connection rows keyed by provider item id.

    Each method opens its own short session and commits before returning, so
    a returned call means the change is durable.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = async_session_factory):
        self._session_factory = session_factory

    async def create(
        self,
        item_id: str,
        user_id: str,
        credential: str,
        institution_id: str | None = None,
        institution_name: str | None = None,
    ) -> Connection:
        """
        Register a newly linked connection with no cursor.

        Raises:
            DuplicateConnectionError: If the item id is already registered
        """
        connection = Connection(
            item_id=item_id,
            user_id=user_id,
            encrypted_access_token=encrypt_credential(credential),
            institution_id=institution_id,
            institution_name=institution_name,
        )
        async with self._session_factory() as db:
            db.add(connection)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise DuplicateConnectionError(
                    f"Connection {item_id} is already registered"
                ) from e
            await db.refresh(connection)

        logger.info(f"Registered connection {item_id} for user {user_id}")
        return connection

    async def get(self, item_id: str) -> Connection | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Connection).where(Connection.item_id == item_id)
            )
            return result.scalar_one_or_none()

    async def list_active(self) -> list[Connection]:
        """All connections eligible for a scheduled round."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Connection)
                .where(Connection.is_active == True)
                .order_by(Connection.created_at)
            )
            return list(result.scalars().all())

    async def list_for_owner(self, user_id: str) -> list[Connection]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Connection)
                .where(Connection.user_id == user_id)
                .order_by(Connection.created_at.desc())
            )
            return list(result.scalars().all())

    async def deactivate(self, item_id: str, user_id: str | None = None) -> None:
        """
        Stop syncing a connection. The row and its data are kept.

        Raises:
            ConnectionNotFoundError: If no matching connection exists
        """
        conditions = [Connection.item_id == item_id]
        if user_id is not None:
            conditions.append(Connection.user_id == user_id)

        async with self._session_factory() as db:
            result = await db.execute(
                update(Connection)
                .where(and_(*conditions))
                .values(is_active=False, updated_at=datetime.now(timezone.utc))
            )
            await db.commit()

        if result.rowcount == 0:
            raise ConnectionNotFoundError(f"Connection {item_id} not found")
        logger.info(f"Deactivated connection {item_id}")

    async def advance_cursor(self, item_id: str, new_cursor: str) -> None:
        """
        Atomically replace the stored cursor.

        A single-row UPDATE in its own transaction: afterwards either the new
        cursor is stored or the previous one is untouched.

        Raises:
            CursorPersistError: If the write fails or the connection is gone
        """
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    update(Connection)
                    .where(Connection.item_id == item_id)
                    .values(
                        transaction_cursor=new_cursor,
                        updated_at=datetime.now(timezone.utc),
                    )
                )
                if result.rowcount != 1:
                    await db.rollback()
                    raise CursorPersistError(
                        f"Connection {item_id} not found while advancing cursor"
                    )
                await db.commit()
        except SQLAlchemyError as e:
            raise CursorPersistError(
                f"Failed to persist cursor for connection {item_id}"
            ) from e

    async def try_claim(self, item_id: str, lease_seconds: float) -> bool:
        """
        Claim a connection for one sync across processes.

        Succeeds only when no other claim is held or the held one expired.
        Returns False when another process is syncing the connection.
        """
        now = datetime.now(timezone.utc)
        async with self._session_factory() as db:
            result = await db.execute(
                update(Connection)
                .where(
                    and_(
                        Connection.item_id == item_id,
                        or_(
                            Connection.sync_lease_until.is_(None),
                            Connection.sync_lease_until < now,
                        ),
                    )
                )
                .values(sync_lease_until=now + timedelta(seconds=lease_seconds))
            )
            await db.commit()
        return result.rowcount == 1

    async def release_claim(self, item_id: str) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(Connection)
                .where(Connection.item_id == item_id)
                .values(sync_lease_until=None)
            )
            await db.commit()

    async def mark_synced(self, item_id: str, synced_at: datetime) -> None:
        """Record a completed sync and clear any attention flag."""
        async with self._session_factory() as db:
            await db.execute(
                update(Connection)
                .where(Connection.item_id == item_id)
                .values(
                    last_synced_at=synced_at,
                    needs_attention=False,
                    last_error_code=None,
                    last_error_at=None,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            await db.commit()

    async def flag_for_attention(self, item_id: str, error_code: str) -> None:
        """Mark a connection whose credential the provider rejected.

        The connection stays active; deactivation is left to operators.
        """
        now = datetime.now(timezone.utc)
        async with self._session_factory() as db:
            await db.execute(
                update(Connection)
                .where(Connection.item_id == item_id)
                .values(
                    needs_attention=True,
                    last_error_code=error_code,
                    last_error_at=now,
                    updated_at=now,
                )
            )
            await db.commit()
        logger.warning(f"Connection {item_id} flagged for attention: {error_code}")


@lru_cache
def get_connection_registry() -> ConnectionRegistry:
    """Process-wide registry bound to the application database."""
    return ConnectionRegistry()
