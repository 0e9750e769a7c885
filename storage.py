"""Relational storage: schema, async engine and unit-of-work sessions."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict

import structlog
from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    event,
    func,
    select,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = structlog.get_logger()

Base = declarative_base()


class AccountRow(Base):
    __tablename__ = "accounts"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    balance = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))


class TransactionRow(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    type = Column(String(10), nullable=False)
    transaction_date = Column(DateTime(timezone=True), nullable=False)


DEMO_ACCOUNTS = [
    ("Alice Johnson", Decimal("5000.00")),
    ("Bob Smith", Decimal("1250.50")),
    ("Carol White", Decimal("300.00")),
    ("David Brown", Decimal("0.00")),
]


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    # Every SQLite transaction takes the write lock at BEGIN.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """Process-wide storage handle.

    Opened by the application factory, shared through ``app.state`` and
    disposed at shutdown. Each unit of work acquires its own session via
    :meth:`session`.
    """

    def __init__(self, url: str, echo: bool = False, busy_timeout: float = 30.0):
        engine_kwargs: Dict[str, Any] = {"echo": echo}
        self.is_sqlite = url.startswith("sqlite")
        if self.is_sqlite:
            engine_kwargs["connect_args"] = {"timeout": busy_timeout}

        self.engine: AsyncEngine = create_async_engine(url, **engine_kwargs)
        if self.is_sqlite:
            _use_immediate_transactions(self.engine)

        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Open a unit of work: commit on success, roll back on any exception."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ready", url=self.engine.url.render_as_string(hide_password=True))

    async def seed_if_empty(self) -> int:
        """Insert demo accounts if the accounts table is empty."""
        async with self.session() as session:
            count = await session.scalar(select(func.count()).select_from(AccountRow))
            if count:
                return 0
            session.add_all(AccountRow(name=name, balance=balance) for name, balance in DEMO_ACCOUNTS)
        logger.info("Demo accounts seeded", count=len(DEMO_ACCOUNTS))
        return len(DEMO_ACCOUNTS)

    async def dispose(self) -> None:
        await self.engine.dispose()
