"""Link, unlink and list connections on behalf of the serving layer."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

from app.models.sync import Connection
from app.services.connection_registry import ConnectionRegistry
from app.services.provider_client import PlaidProviderClient
from app.services.scheduler import SyncScheduler
from app.services.sync_orchestrator import SyncResult

logger = logging.getLogger(__name__)


@dataclass
class ConnectionView:
    """Read-only projection of a Connection. Never carries the credential."""
    item_id: str
    institution_id: str | None
    institution_name: str | None
    is_active: bool
    needs_attention: bool
    last_error_code: str | None
    last_synced_at: datetime | None
    has_cursor: bool

    @classmethod
    def from_connection(cls, connection: Connection) -> "ConnectionView":
        return cls(
            item_id=connection.item_id,
            institution_id=connection.institution_id,
            institution_name=connection.institution_name,
            is_active=connection.is_active,
            needs_attention=connection.needs_attention,
            last_error_code=connection.last_error_code,
            last_synced_at=connection.last_synced_at,
            has_cursor=connection.transaction_cursor is not None,
        )


@dataclass
class LinkedConnection:
    """A freshly linked connection and the task running its first sync."""
    connection: ConnectionView
    initial_sync: asyncio.Task[SyncResult]


async def link_connection(
    registry: ConnectionRegistry,
    scheduler: SyncScheduler,
    user_id: str,
    item_id: str,
    credential: str,
    institution_id: str | None = None,
    institution_name: str | None = None,
) -> LinkedConnection:
    """
    Register a connection and start its initial full sync right away.

    Args:
        registry: Connection registry
        scheduler: Scheduler used for the immediate sync
        user_id: Owning user's identifier
        item_id: Provider-assigned connection id
        credential: Provider access credential (stored encrypted)
        institution_id: Optional institution ID from the provider
        institution_name: Optional institution name from the provider

    Returns:
        The new connection and the background task of its first sync

    Raises:
        DuplicateConnectionError: If the item id is already registered
    """
    connection = await registry.create(
        item_id=item_id,
        user_id=user_id,
        credential=credential,
        institution_id=institution_id,
        institution_name=institution_name,
    )
    task = scheduler.request_sync(item_id)
    return LinkedConnection(
        connection=ConnectionView.from_connection(connection),
        initial_sync=task,
    )


async def link_public_token(
    registry: ConnectionRegistry,
    scheduler: SyncScheduler,
    provider: PlaidProviderClient,
    user_id: str,
    public_token: str,
    institution_id: str | None = None,
    institution_name: str | None = None,
) -> LinkedConnection:
    """
    Exchange a Link public token and link the resulting connection.

    Raises:
        ProviderError: If the exchange fails
        DuplicateConnectionError: If the item was linked before
    """
    access_token, item_id = await provider.exchange_public_token(public_token)
    logger.info(f"Exchanged public token for connection {item_id}")
    return await link_connection(
        registry,
        scheduler,
        user_id=user_id,
        item_id=item_id,
        credential=access_token,
        institution_id=institution_id,
        institution_name=institution_name,
    )


async def unlink_connection(
    registry: ConnectionRegistry,
    item_id: str,
    user_id: str,
) -> None:
    """
    Deactivate a connection owned by user_id. Stored data is kept.

    Raises:
        ConnectionNotFoundError: If the user owns no such connection
    """
    await registry.deactivate(item_id, user_id=user_id)


async def list_connections_for_owner(
    registry: ConnectionRegistry,
    user_id: str,
) -> list[ConnectionView]:
    """All connections of one user, newest first, without credentials."""
    connections = await registry.list_for_owner(user_id)
    return [ConnectionView.from_connection(c) for c in connections]
