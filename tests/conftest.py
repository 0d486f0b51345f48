"""
Shared fixtures: a throwaway SQLite database per test, a static account
source and a reconciliation engine wired to both.
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from vaultaudit.database import Base, create_engine, create_session_factory
from vaultaudit.reconciliation import (
    AccountSide,
    ReconciliationEngine,
    StaticAccountSource,
)

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def at(hours: int) -> datetime:
    """Run time ``hours`` after T0."""
    return T0 + timedelta(hours=hours)


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'discrepancies.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def account_source():
    return StaticAccountSource()


@pytest.fixture
def recon_engine(session_factory, account_source):
    return ReconciliationEngine(session_factory, account_source)


@pytest.fixture
def set_inventory(account_source):
    """set_inventory(platform, vault=[...], platform_accounts=[...])"""
    def _set(platform, vault=(), platform_accounts=()):
        account_source.set_accounts(platform, AccountSide.VAULT, vault)
        account_source.set_accounts(platform, AccountSide.PLATFORM, platform_accounts)
    return _set
