from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError

from errors import AccountNotFound, InsufficientBalance, LockTimeout, StorageFailure, ValidationError
from models import (
    Account,
    TransactionEntry,
    TransactionType,
    parse_account_id,
    parse_amount,
    parse_transaction_type,
)
from repositories import AccountRepository, TransactionLogRepository

logger = structlog.get_logger()


@dataclass(frozen=True)
class TransactionResult:
    new_balance: Decimal
    transaction: TransactionEntry


class TransactionService:
    def __init__(
        self,
        account_repo: AccountRepository,
        transaction_log: TransactionLogRepository,
        max_transaction_amount: Optional[Decimal] = None,
    ):
        self.account_repo = account_repo
        self.transaction_log = transaction_log
        self.max_transaction_amount = max_transaction_amount

    async def apply(self, account_id: Any, amount: Any, type: Any) -> TransactionResult:
        """Apply a deposit or withdrawal as one atomic unit of work.

        Inputs are validated before storage is touched. The account is held
        exclusively while the balance is read, checked, written and logged;
        the balance write and the log entry commit or roll back together.

        Raises ValidationError, AccountNotFound, InsufficientBalance,
        LockTimeout or StorageFailure. Nothing is changed on any failure.
        """
        try:
            account_id = parse_account_id(account_id)
            amount = parse_amount(amount, self.max_transaction_amount)
            tx_type = parse_transaction_type(type)
        except ValidationError as e:
            logger.warning("Transaction rejected", reason=e.detail, account_id=account_id)
            raise

        logger.info(
            "Processing transaction",
            account_id=account_id,
            amount=str(amount),
            type=tx_type.value,
        )

        try:
            async with self.account_repo.lock_for_update(account_id) as handle:
                current_balance = handle.balance

                if tx_type == TransactionType.withdraw:
                    new_balance = self._process_withdraw(account_id, current_balance, amount)
                else:
                    new_balance = self._process_deposit(account_id, current_balance, amount)

                await self.account_repo.write(handle, new_balance)
                entry = await self.transaction_log.append(
                    handle, amount, tx_type, datetime.now(timezone.utc)
                )
        except AccountNotFound:
            logger.warning("Account not found", account_id=account_id)
            raise
        except LockTimeout as e:
            logger.warning("Account hold timed out", account_id=account_id, timeout=e.timeout)
            raise
        except SQLAlchemyError as e:
            logger.error(
                "Transaction rolled back after storage failure",
                account_id=account_id,
                error=str(e),
                exc_info=True,
            )
            raise StorageFailure("Transaction failed") from e

        logger.info(
            "Transaction processed successfully",
            transaction_id=entry.id,
            account_id=account_id,
            new_balance=str(new_balance),
        )
        return TransactionResult(new_balance=new_balance, transaction=entry)

    def _process_withdraw(self, account_id: int, current_balance: Decimal, amount: Decimal) -> Decimal:
        new_balance = current_balance - amount

        if new_balance < 0:
            logger.warning(
                "Insufficient balance for withdrawal",
                account_id=account_id,
                current_balance=str(current_balance),
                requested_amount=str(amount),
            )
            raise InsufficientBalance(account_id)

        logger.debug(
            "Withdrawal computed",
            account_id=account_id,
            old_balance=str(current_balance),
            new_balance=str(new_balance),
        )
        return new_balance

    def _process_deposit(self, account_id: int, current_balance: Decimal, amount: Decimal) -> Decimal:
        new_balance = current_balance + amount

        logger.debug(
            "Deposit computed",
            account_id=account_id,
            old_balance=str(current_balance),
            new_balance=str(new_balance),
        )
        return new_balance

    async def list_accounts(self) -> List[Account]:
        try:
            return await self.account_repo.list_accounts()
        except SQLAlchemyError as e:
            logger.error("Failed to fetch accounts", error=str(e), exc_info=True)
            raise StorageFailure("Failed to fetch accounts") from e

    async def get_account(self, account_id: Any) -> Account:
        account_id = parse_account_id(account_id)
        try:
            account = await self.account_repo.get(account_id)
        except SQLAlchemyError as e:
            logger.error("Failed to fetch account", account_id=account_id, error=str(e), exc_info=True)
            raise StorageFailure("Failed to fetch account") from e
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def list_transactions(self, account_id: Any) -> List[TransactionEntry]:
        account_id = parse_account_id(account_id)
        try:
            return await self.transaction_log.list_for_account(account_id)
        except SQLAlchemyError as e:
            logger.error("Failed to fetch transactions", account_id=account_id, error=str(e), exc_info=True)
            raise StorageFailure("Failed to fetch transactions") from e

    async def get_stats(self) -> Tuple[int, int]:
        """Number of accounts and of recorded transactions."""
        try:
            return await self.account_repo.count_accounts(), await self.transaction_log.count()
        except SQLAlchemyError as e:
            logger.error("Failed to collect stats", error=str(e), exc_info=True)
            raise StorageFailure("Failed to collect stats") from e


# Factory function for dependency injection
def get_transaction_service(
    account_repo: AccountRepository,
    transaction_log: TransactionLogRepository,
    max_transaction_amount: Optional[Decimal] = None,
) -> TransactionService:
    return TransactionService(account_repo, transaction_log, max_transaction_amount)
