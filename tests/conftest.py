"""Pytest configuration and fixtures."""

import os

from cryptography.fernet import Fernet

# Must be set before app modules read their configuration
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["CREATE_TABLES"] = "false"
os.environ["SYNC_API_KEY"] = "test-sync-key"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import select  # noqa: E402

from app.core.database import Base, build_engine, build_session_factory  # noqa: E402
from app.models.sync import Account, Transaction  # noqa: E402
from app.services.connection_registry import ConnectionRegistry  # noqa: E402
from app.services.reconciler import Reconciler  # noqa: E402


@pytest_asyncio.fixture(name="engine")
async def engine_fixture(tmp_path):
    """A fresh SQLite database file per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture(name="session_factory")
def session_factory_fixture(engine):
    return build_session_factory(engine)


@pytest.fixture(name="registry")
def registry_fixture(session_factory):
    return ConnectionRegistry(session_factory)


@pytest.fixture(name="reconciler")
def reconciler_fixture(session_factory):
    return Reconciler(session_factory)


@pytest.fixture(name="stored")
def stored_fixture(session_factory):
    """Helpers to read back what the engine wrote."""

    class Stored:
        async def transactions(self) -> dict[str, Transaction]:
            async with session_factory() as db:
                result = await db.execute(select(Transaction))
                return {t.transaction_id: t for t in result.scalars().all()}

        async def transaction_ids(self) -> set[str]:
            return set(await self.transactions())

        async def accounts(self) -> dict[str, Account]:
            async with session_factory() as db:
                result = await db.execute(select(Account))
                return {a.account_id: a for a in result.scalars().all()}

        async def snapshot(self) -> dict[str, tuple]:
            """Transaction rows minus bookkeeping timestamps, for equality checks."""
            rows = await self.transactions()
            return {
                tid: (
                    t.id, t.account_id, t.item_id, t.amount, t.name, t.pending,
                    t.transaction_date, t.merchant_name, t.category_primary, t.location,
                )
                for tid, t in rows.items()
            }

    return Stored()
