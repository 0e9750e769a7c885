import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator

from errors import ValidationError

CENT = Decimal("0.01")
MAX_ACCOUNT_ID = 2**63 - 1  # signed 64-bit primary key range

# Balances and amounts are Decimal in Python and plain numbers in JSON.
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class TransactionType(str, Enum):
    deposit = "DEPOSIT"
    withdraw = "WITHDRAW"


def parse_account_id(value: Any) -> int:
    """Accept a positive integer or a string of ASCII digits."""
    if isinstance(value, bool):
        raise ValidationError("account_id must be a positive integer")
    if isinstance(value, str) and re.fullmatch(r"[0-9]+", value.strip()):
        try:
            value = int(value.strip())
        except ValueError:
            # beyond the interpreter's int string conversion limit
            raise ValidationError("account_id is out of range") from None
    if not isinstance(value, int) or value <= 0:
        raise ValidationError("account_id must be a positive integer")
    if value > MAX_ACCOUNT_ID:
        raise ValidationError("account_id is out of range")
    return value


def parse_amount(value: Any, max_amount: Optional[Decimal] = None) -> Decimal:
    """Convert a JSON number or numeric string into a positive cent amount."""
    if value is None:
        raise ValidationError("amount is required")
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise ValidationError("amount must be a number")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError("amount must be a number") from None

    if not amount.is_finite():
        raise ValidationError("amount must be a finite number")
    if amount <= 0:
        raise ValidationError("amount must be positive")
    if max_amount is not None and amount > max_amount:
        raise ValidationError(f"amount must not exceed {max_amount}")
    if amount != amount.quantize(CENT):
        raise ValidationError("amount must have at most 2 decimal places")
    return amount.quantize(CENT)


def parse_transaction_type(value: Any) -> TransactionType:
    if isinstance(value, TransactionType):
        return value
    if isinstance(value, str):
        for member in TransactionType:
            if member.value == value:
                return member
    raise ValidationError("type must be DEPOSIT or WITHDRAW")


class TransactionRequest(BaseModel):
    account_id: int = Field(..., description="Target account identifier")
    amount: Decimal = Field(..., description="Positive amount with at most 2 decimal places")
    type: TransactionType = Field(..., description="DEPOSIT or WITHDRAW")

    @field_validator("account_id", mode="before")
    @classmethod
    def validate_account_id(cls, v):
        return parse_account_id(v)

    @field_validator("amount", mode="before")
    @classmethod
    def validate_amount(cls, v):
        return parse_amount(v)

    @field_validator("type", mode="before")
    @classmethod
    def validate_type(cls, v):
        return parse_transaction_type(v)


class TransactionResponse(BaseModel):
    message: str = Field(default="Transaction successful")
    newBalance: Money = Field(..., description="Account balance after the transaction")


class Account(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    balance: Money


class TransactionEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    amount: Money
    type: TransactionType
    transaction_date: datetime

    @field_validator("transaction_date")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        # SQLite hands back naive datetimes; everything is stored in UTC.
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    accounts_count: int = Field(..., description="Number of accounts in system")
    transactions_processed: int = Field(..., description="Total transactions recorded")
