import os
from decimal import Decimal

os.environ.setdefault("APP_ENV", "testing")

import httpx
import pytest
import pytest_asyncio

from config import TestingSettings
from main import create_app
from repositories import AccountLockRegistry, SqlAccountRepository, SqlTransactionLogRepository
from services import TransactionService
from storage import Database


@pytest.fixture
def settings(tmp_path):
    """Testing profile pointed at a throwaway SQLite file."""
    return TestingSettings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings.database_url, busy_timeout=settings.sqlite_busy_timeout)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def locks():
    return AccountLockRegistry()


@pytest.fixture
def account_repo(database, locks, settings):
    return SqlAccountRepository(database, locks, settings.lock_timeout_seconds)


@pytest.fixture
def transaction_log(database):
    return SqlTransactionLogRepository(database)


@pytest.fixture
def service(account_repo, transaction_log, settings):
    return TransactionService(account_repo, transaction_log, settings.max_transaction_amount)


@pytest_asyncio.fixture
async def account(account_repo):
    """Account with a balance of 100.00."""
    return await account_repo.create_account("Test Account", Decimal("100.00"))


@pytest_asyncio.fixture
async def other_account(account_repo):
    return await account_repo.create_account("Other Account", Decimal("50.00"))


@pytest.fixture
def app(settings, database):
    return create_app(settings, database)


@pytest_asyncio.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
