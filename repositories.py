from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncContextManager, AsyncIterator, Dict, List, Optional
import asyncio

from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from errors import AccountNotFound, HandleReleased, LockTimeout
from models import Account, TransactionEntry, TransactionType
from storage import AccountRow, Database, TransactionRow


class AccountLockRegistry:
    """Per-account asyncio locks.

    A lock exists only while some task holds or waits for it, so the registry
    does not grow with every account id ever seen. Locks for different ids are
    independent.
    """

    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = {}
        self._users: Dict[int, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, account_id: int, timeout: Optional[float] = None) -> AsyncIterator[None]:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        self._users[account_id] += 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout)
            except asyncio.TimeoutError:
                raise LockTimeout(account_id, timeout) from None
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[account_id] -= 1
            if not self._users[account_id]:
                del self._users[account_id]
                del self._locks[account_id]

    def is_locked(self, account_id: int) -> bool:
        lock = self._locks.get(account_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


class AccountHandle:
    """Exclusive hold on one account row inside an open unit of work."""

    def __init__(self, session: AsyncSession, row: AccountRow):
        self.session = session
        self.row = row
        self.released = False

    @property
    def account_id(self) -> int:
        return self.row.id

    @property
    def balance(self) -> Decimal:
        self.ensure_held()
        return self.row.balance

    def ensure_held(self) -> None:
        if self.released:
            raise HandleReleased(f"Hold on account {self.row.id} has already been released")


class AccountRepository(ABC):
    @abstractmethod
    async def get(self, account_id: int) -> Optional[Account]:
        """Plain read without locking. Returns None if the account doesn't exist."""
        pass

    @abstractmethod
    async def list_accounts(self) -> List[Account]:
        """All accounts ordered by id."""
        pass

    @abstractmethod
    def lock_for_update(self, account_id: int) -> AsyncContextManager[AccountHandle]:
        """Hold the account exclusively for one unit of work.

        Commits when the block exits normally, rolls back on any exception,
        and releases the hold on every exit path. Raises AccountNotFound
        (with nothing left held) when the account doesn't exist.
        """
        pass

    @abstractmethod
    async def write(self, handle: AccountHandle, new_balance: Decimal) -> None:
        """Update the balance of a held account."""
        pass

    @abstractmethod
    async def create_account(self, name: str, balance: Decimal = Decimal("0.00")) -> Account:
        pass

    @abstractmethod
    async def count_accounts(self) -> int:
        pass


class TransactionLogRepository(ABC):
    @abstractmethod
    async def append(
        self,
        handle: AccountHandle,
        amount: Decimal,
        type: TransactionType,
        timestamp: datetime,
    ) -> TransactionEntry:
        """Record an entry in the unit of work that owns the handle."""
        pass

    @abstractmethod
    async def list_for_account(self, account_id: int) -> List[TransactionEntry]:
        """Entries for one account, newest first."""
        pass

    @abstractmethod
    async def count(self) -> int:
        pass


class SqlAccountRepository(AccountRepository):
    def __init__(
        self,
        database: Database,
        locks: Optional[AccountLockRegistry] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.database = database
        self.locks = locks if locks is not None else AccountLockRegistry()
        self.lock_timeout = lock_timeout

    async def get(self, account_id: int) -> Optional[Account]:
        async with self.database.session() as session:
            row = await session.get(AccountRow, account_id)
            return Account.model_validate(row) if row is not None else None

    async def list_accounts(self) -> List[Account]:
        async with self.database.session() as session:
            result = await session.execute(select(AccountRow).order_by(AccountRow.id))
            return [Account.model_validate(row) for row in result.scalars()]

    @asynccontextmanager
    async def lock_for_update(self, account_id: int) -> AsyncIterator[AccountHandle]:
        async with self.locks.hold(account_id, self.lock_timeout):
            async with self.database.session() as session:
                stmt = select(AccountRow).where(AccountRow.id == account_id).with_for_update()
                row = (await session.execute(stmt)).scalar_one_or_none()
                if row is None:
                    raise AccountNotFound(account_id)

                handle = AccountHandle(session, row)
                try:
                    yield handle
                finally:
                    handle.released = True

    async def write(self, handle: AccountHandle, new_balance: Decimal) -> None:
        handle.ensure_held()
        handle.row.balance = new_balance
        await handle.session.flush()

    async def create_account(self, name: str, balance: Decimal = Decimal("0.00")) -> Account:
        async with self.database.session() as session:
            row = AccountRow(name=name, balance=balance)
            session.add(row)
            await session.flush()
            return Account.model_validate(row)

    async def count_accounts(self) -> int:
        async with self.database.session() as session:
            return await session.scalar(select(func.count()).select_from(AccountRow))


class SqlTransactionLogRepository(TransactionLogRepository):
    def __init__(self, database: Database):
        self.database = database

    async def append(
        self,
        handle: AccountHandle,
        amount: Decimal,
        type: TransactionType,
        timestamp: datetime,
    ) -> TransactionEntry:
        handle.ensure_held()
        row = TransactionRow(
            account_id=handle.account_id,
            amount=amount,
            type=type.value,
            transaction_date=timestamp,
        )
        handle.session.add(row)
        await handle.session.flush()
        return TransactionEntry.model_validate(row)

    async def list_for_account(self, account_id: int) -> List[TransactionEntry]:
        stmt = (
            select(TransactionRow)
            .where(TransactionRow.account_id == account_id)
            .order_by(desc(TransactionRow.transaction_date), desc(TransactionRow.id))
        )
        async with self.database.session() as session:
            result = await session.execute(stmt)
            return [TransactionEntry.model_validate(row) for row in result.scalars()]

    async def count(self) -> int:
        async with self.database.session() as session:
            return await session.scalar(select(func.count()).select_from(TransactionRow))
