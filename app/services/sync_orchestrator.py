"""Per-connection incremental sync loop and scheduling rounds.

For one connection a sync is:

    IDLE -> FETCHING_ACCOUNTS -> FETCHING_DELTA_PAGE -> RECONCILING
         -> CURSOR_PERSISTED -> (FETCHING_DELTA_PAGE while has_more) -> IDLE

with FAILED reachable from every step. The cursor is written only after the
page it follows has been committed, and the next page is fetched only after
the cursor write succeeded, so a failure replays at most one already applied
(and idempotent) page.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from typing import Awaitable, TypeVar

from cryptography.fernet import InvalidToken
from dotenv import load_dotenv

from app.core.encryption import decrypt_credential
from app.core.exceptions import (
    ProviderError,
    ProviderUnavailable,
    SyncError,
)
from app.models.sync import Connection
from app.services.connection_registry import ConnectionRegistry, get_connection_registry
from app.services.provider_client import get_provider_client
from app.services.provider_protocol import ProviderClient
from app.services.reconciler import Reconciler

logger = logging.getLogger(__name__)

load_dotenv()

PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "30"))
SYNC_MAX_CONCURRENCY = int(os.getenv("SYNC_MAX_CONCURRENCY", "4"))
SYNC_LEASE_SECONDS = float(os.getenv("SYNC_LEASE_SECONDS", "900"))

T = TypeVar("T")


class SyncState(str, Enum):
    """Steps of one connection's sync."""
    IDLE = "idle"
    FETCHING_ACCOUNTS = "fetching_accounts"
    FETCHING_DELTA_PAGE = "fetching_delta_page"
    RECONCILING = "reconciling"
    CURSOR_PERSISTED = "cursor_persisted"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class SyncResult:
    """Outcome of one sync_connection call."""
    item_id: str
    state: SyncState = SyncState.IDLE
    failed_step: SyncState | None = None
    accounts: int = 0
    pages: int = 0
    added: int = 0
    modified: int = 0
    removed: int = 0
    cursor: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    skip_reason: str | None = None


class SyncOrchestrator:
    """
    Drives connections through the incremental sync loop.

    sync_connection is the single entry point for both the recurring round
    and on-demand syncs. A per-connection lock keeps at most one sync of a
    given item in flight in this process, and a lease on the Connection row
    (sync_lease_until) does the same across processes.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        reconciler: Reconciler,
        provider: ProviderClient,
        provider_timeout: float = PROVIDER_TIMEOUT_SECONDS,
        max_concurrency: int = SYNC_MAX_CONCURRENCY,
        lease_seconds: float = SYNC_LEASE_SECONDS,
    ):
        self.registry = registry
        self.reconciler = reconciler
        self.provider = provider
        self.provider_timeout = provider_timeout
        self.max_concurrency = max(1, max_concurrency)
        self.lease_seconds = lease_seconds
        self._locks: dict[str, asyncio.Lock] = {}

    def is_syncing(self, item_id: str) -> bool:
        lock = self._locks.get(item_id)
        return lock is not None and lock.locked()

    async def _call_provider(self, operation: str, call: Awaitable[T]) -> T:
        """Bound a provider call by the configured timeout."""
        try:
            return await asyncio.wait_for(call, timeout=self.provider_timeout)
        except asyncio.TimeoutError as e:
            raise ProviderUnavailable(
                "TIMEOUT",
                f"{operation} did not complete within {self.provider_timeout}s",
            ) from e

    async def sync_connection(self, item_id: str) -> SyncResult:
        """
        Sync one connection from its stored cursor to the provider's head.

        Never raises for sync failures; the outcome is reported in the result.
        """
        lock = self._locks.setdefault(item_id, asyncio.Lock())
        if lock.locked():
            logger.info(f"Sync already in progress for connection {item_id}, skipping")
            return SyncResult(item_id=item_id, state=SyncState.SKIPPED, skip_reason="in_progress")

        try:
            async with lock:
                try:
                    return await self._sync_locked(item_id)
                except Exception:
                    logger.exception(f"Sync of connection {item_id} crashed")
                    result = SyncResult(item_id=item_id)
                    self._fail(result, None, "UNEXPECTED", "Unexpected error during sync")
                    return result
        finally:
            # Nothing ever waits on these locks, so a released one can go
            if not lock.locked() and self._locks.get(item_id) is lock:
                del self._locks[item_id]

    async def _sync_locked(self, item_id: str) -> SyncResult:
        result = SyncResult(item_id=item_id)

        connection = await self.registry.get(item_id)
        if connection is None:
            result.state = SyncState.SKIPPED
            result.skip_reason = "not_found"
            return result
        if not connection.is_active:
            logger.info(f"Connection {item_id} is inactive, skipping")
            result.state = SyncState.SKIPPED
            result.skip_reason = "inactive"
            return result

        if not await self.registry.try_claim(item_id, self.lease_seconds):
            logger.info(f"Connection {item_id} is being synced by another process, skipping")
            result.state = SyncState.SKIPPED
            result.skip_reason = "in_progress"
            return result

        try:
            return await self._sync_claimed(connection, result)
        finally:
            await self._release(item_id)

    async def _sync_claimed(self, connection: Connection, result: SyncResult) -> SyncResult:
        item_id = connection.item_id
        cursor = connection.transaction_cursor
        result.cursor = cursor
        state = SyncState.FETCHING_ACCOUNTS

        try:
            credential = decrypt_credential(connection.encrypted_access_token)

            snapshots = await self._call_provider(
                "fetch_accounts", self.provider.fetch_accounts(credential)
            )
            result.accounts = await self.reconciler.upsert_accounts(item_id, snapshots)

            has_more = True
            while has_more:
                state = SyncState.FETCHING_DELTA_PAGE
                page = await self._call_provider(
                    "fetch_delta_page",
                    self.provider.fetch_delta_page(credential, cursor),
                )

                state = SyncState.RECONCILING
                stats = await self.reconciler.apply_page(item_id, page)

                await self.registry.advance_cursor(item_id, page.next_cursor)
                state = SyncState.CURSOR_PERSISTED
                cursor = page.next_cursor
                has_more = page.has_more

                result.pages += 1
                result.cursor = cursor
                result.added += stats.added
                result.modified += stats.modified
                result.removed += stats.removed
                logger.info(
                    f"Connection {item_id} page {result.pages}: {stats.added} added, "
                    f"{stats.modified} modified, {stats.removed} removed, has_more={has_more}"
                )

            await self.registry.mark_synced(item_id, datetime.now(timezone.utc))
        except ProviderError as e:
            self._fail(result, state, e.code, e.message)
            if not e.retriable:
                await self._flag(item_id, e.code)
            return result
        except SyncError as e:
            self._fail(result, state, e.code, e.message, exc=e)
            return result
        except InvalidToken:
            self._fail(result, state, "CREDENTIAL_UNREADABLE", "Stored credential cannot be decrypted")
            await self._flag(item_id, "CREDENTIAL_UNREADABLE")
            return result
        except Exception:
            logger.exception(f"Unexpected error syncing connection {item_id}")
            self._fail(result, state, "UNEXPECTED", "Unexpected error during sync")
            return result

        result.state = SyncState.IDLE
        logger.info(
            f"Synced connection {item_id}: {result.accounts} accounts, {result.pages} pages, "
            f"{result.added} added, {result.modified} modified, {result.removed} removed"
        )
        return result

    def _fail(
        self,
        result: SyncResult,
        step: SyncState | None,
        code: str,
        message: str,
        exc: BaseException | None = None,
    ) -> None:
        result.state = SyncState.FAILED
        result.failed_step = step
        result.error_code = code
        result.error_message = message
        where = step.value if step else "setup"
        logger.error(
            f"Sync failed for connection {result.item_id} during {where}: "
            f"[{code}] {message}; cursor left at last persisted value",
            exc_info=exc,
        )

    async def _release(self, item_id: str) -> None:
        try:
            await self.registry.release_claim(item_id)
        except Exception:
            # The lease expires on its own
            logger.exception(f"Could not release sync claim on connection {item_id}")

    async def _flag(self, item_id: str, code: str) -> None:
        try:
            await self.registry.flag_for_attention(item_id, code)
        except Exception:
            logger.exception(f"Could not flag connection {item_id} for attention")

    async def run_round(self) -> dict:
        """
        Sync every active connection once.

        Connections run concurrently up to max_concurrency. A failure in one
        connection never stops the others.

        Returns:
            Summary dict with connection and transaction counts
        """
        summary = {
            "connections_processed": 0,
            "connections_failed": 0,
            "connections_skipped": 0,
            "transactions_added": 0,
            "transactions_modified": 0,
            "transactions_removed": 0,
        }

        connections = await self.registry.list_active()
        if not connections:
            logger.info("No active connections to sync")
            return summary

        logger.info(f"Starting sync round for {len(connections)} connections")
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run_one(item_id: str) -> SyncResult:
            async with semaphore:
                return await self.sync_connection(item_id)

        results = await asyncio.gather(
            *(run_one(c.item_id) for c in connections),
            return_exceptions=True,
        )

        for connection, result in zip(connections, results):
            if isinstance(result, BaseException):
                logger.error(f"Sync task for connection {connection.item_id} crashed: {result!r}")
                summary["connections_failed"] += 1
                continue
            if result.state is SyncState.SKIPPED:
                summary["connections_skipped"] += 1
            elif result.state is SyncState.FAILED:
                summary["connections_failed"] += 1
            else:
                summary["connections_processed"] += 1
            summary["transactions_added"] += result.added
            summary["transactions_modified"] += result.modified
            summary["transactions_removed"] += result.removed

        logger.info(f"Sync round completed: {summary}")
        return summary


@lru_cache
def get_sync_orchestrator() -> SyncOrchestrator:
    """Process-wide orchestrator; the lock table must be shared by all triggers."""
    return SyncOrchestrator(
        registry=get_connection_registry(),
        reconciler=Reconciler(),
        provider=get_provider_client(),
    )
