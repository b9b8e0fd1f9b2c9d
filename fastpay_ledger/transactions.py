"""
Transaction Records Module

Defines the immutable transaction entries that make up an account's log,
their kinds and categories, and how each one moves the balance.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional
from enum import Enum
import uuid

from .errors import ValidationError


class TransactionType(Enum):
    """Direction of a transaction relative to the account"""
    INCOME = "income"        # Adds to the balance
    EXPENSE = "expense"      # Subtracts from the balance
    TRANSFER = "transfer"    # Legacy kind, informational only


class TransactionCategory(Enum):
    """What a transaction was for"""
    TRANSFER = "transfer"
    BILL_PAY = "bill_pay"
    AIRTIME = "airtime"
    LOAN = "loan"
    OTHER = "other"


class TransactionStatus(Enum):
    """States of a transaction"""
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


def generate_transaction_id(prefix: str = "txn") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC"""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {value}")
    else:
        raise ValidationError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


@dataclass(frozen=True)
class Transaction:
    """
    A single entry in an account's transaction log.

    ``amount`` is always the non-negative magnitude; ``type`` decides the
    sign it contributes to the balance.
    """
    id: str
    type: TransactionType
    category: TransactionCategory
    amount: Decimal
    description: str
    date: datetime
    status: TransactionStatus = TransactionStatus.COMPLETED
    recipient: Optional[str] = None
    idempotency_key: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))
        if self.amount < Decimal('0'):
            raise ValidationError("Transaction amount must be a non-negative magnitude")
        if self.date.tzinfo is None:
            object.__setattr__(self, 'date', self.date.replace(tzinfo=timezone.utc))

    @property
    def signed_amount(self) -> Decimal:
        """Effect of this transaction on the balance"""
        if self.type == TransactionType.INCOME:
            return self.amount
        if self.type == TransactionType.EXPENSE:
            return -self.amount
        return Decimal('0')

    @property
    def is_income(self) -> bool:
        return self.type == TransactionType.INCOME

    @property
    def is_expense(self) -> bool:
        return self.type == TransactionType.EXPENSE

    def with_status(self, status: TransactionStatus) -> 'Transaction':
        return replace(self, status=status)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "type": self.type.value,
            "category": self.category.value,
            "amount": str(self.amount),
            "description": self.description,
            "date": format_timestamp(self.date),
            "status": self.status.value,
        }
        if self.recipient is not None:
            data["recipient"] = self.recipient
        if self.idempotency_key is not None:
            data["idempotency_key"] = self.idempotency_key
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        try:
            return cls(
                id=data["id"],
                type=TransactionType(data["type"]),
                category=TransactionCategory(data.get("category", "other")),
                amount=Decimal(str(data["amount"])),
                description=data.get("description", ""),
                date=parse_timestamp(data["date"]),
                status=TransactionStatus(data.get("status", "completed")),
                recipient=data.get("recipient"),
                idempotency_key=data.get("idempotency_key"),
            )
        except (KeyError, ValueError, ArithmeticError) as e:
            raise ValidationError(f"Malformed transaction record: {e}")


def create_transaction(
    transaction_type: TransactionType,
    amount: Decimal,
    description: str,
    occurred_at: datetime,
    category: TransactionCategory = TransactionCategory.OTHER,
    recipient: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    transaction_id: Optional[str] = None
) -> Transaction:
    """Build a completed transaction with a fresh id"""
    return Transaction(
        id=transaction_id or generate_transaction_id(),
        type=transaction_type,
        category=category,
        amount=amount,
        description=description,
        date=occurred_at,
        status=TransactionStatus.COMPLETED,
        recipient=recipient,
        idempotency_key=idempotency_key,
    )
