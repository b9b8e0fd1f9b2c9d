"""
Loan Module

Handles loan terms, the fixed-rate amortization formula, loan quotes and
repayment schedule generation. Disbursement itself is a ledger posting and
lives in the ledger engine.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timedelta, date
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional
from enum import Enum
import calendar
import uuid

from .errors import ValidationError
from .transactions import format_timestamp, parse_timestamp

CENT = Decimal('0.01')
# Due dates use a flat 30-day month
DAYS_PER_TERM_MONTH = 30


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"          # Disbursed, repayments outstanding
    PAID = "paid"              # Fully repaid
    DEFAULTED = "defaulted"    # In default


def generate_loan_id() -> str:
    return f"loan_{uuid.uuid4().hex[:16]}"


def _round_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_monthly_payment(principal: Decimal, annual_rate: Decimal, term_months: int) -> Decimal:
    """
    Equal-installment payment, rounded to cents.

    Standard loan payment formula: P * [i(1+i)^n] / [(1+i)^n - 1]
    where P = principal, i = monthly rate, n = number of payments.
    A zero rate degrades to P / n.
    """
    if term_months <= 0:
        raise ValidationError("Loan term must be a positive number of months")

    principal = Decimal(str(principal))
    monthly_rate = Decimal(str(annual_rate)) / Decimal('12')
    num_payments = Decimal(term_months)

    if monthly_rate == Decimal('0'):
        payment = principal / num_payments
    else:
        factor = (Decimal('1') + monthly_rate) ** term_months
        payment = principal * (monthly_rate * factor) / (factor - Decimal('1'))

    return _round_cents(payment)


@dataclass(frozen=True)
class LoanQuote:
    """What a borrower would pay for a given principal and term"""
    principal: Decimal
    annual_rate: Decimal
    term_months: int
    monthly_payment: Decimal
    total_payment: Decimal
    total_interest: Decimal


def quote_loan(principal: Decimal, term_months: int, annual_rate: Decimal) -> LoanQuote:
    """Preview the repayment figures for a loan request"""
    monthly_payment = calculate_monthly_payment(principal, annual_rate, term_months)
    total_payment = monthly_payment * term_months
    return LoanQuote(
        principal=Decimal(str(principal)),
        annual_rate=Decimal(str(annual_rate)),
        term_months=term_months,
        monthly_payment=monthly_payment,
        total_payment=total_payment,
        total_interest=total_payment - Decimal(str(principal)),
    )


@dataclass(frozen=True)
class AmortizationEntry:
    """Single entry in amortization schedule"""
    payment_number: int
    payment_date: date
    payment_amount: Decimal
    principal_amount: Decimal
    interest_amount: Decimal
    remaining_balance: Decimal


def _add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def amortization_schedule(
    principal: Decimal,
    annual_rate: Decimal,
    term_months: int,
    first_payment_date: date
) -> List[AmortizationEntry]:
    """Generate the monthly equal-installment repayment schedule.

    The final row pays exactly what is left so the balance ends at zero.
    """
    payment_amount = calculate_monthly_payment(principal, annual_rate, term_months)
    monthly_rate = Decimal(str(annual_rate)) / Decimal('12')
    remaining_balance = Decimal(str(principal))
    schedule = []

    for payment_num in range(1, term_months + 1):
        interest_amount = _round_cents(remaining_balance * monthly_rate)
        principal_amount = payment_amount - interest_amount

        if payment_num == term_months or principal_amount > remaining_balance:
            principal_amount = remaining_balance
            payment = principal_amount + interest_amount
            remaining_balance = Decimal('0.00')
        else:
            payment = payment_amount
            remaining_balance = remaining_balance - principal_amount

        schedule.append(AmortizationEntry(
            payment_number=payment_num,
            payment_date=_add_months(first_payment_date, payment_num - 1),
            payment_amount=payment,
            principal_amount=principal_amount,
            interest_amount=interest_amount,
            remaining_balance=remaining_balance,
        ))

        if remaining_balance == Decimal('0'):
            break

    return schedule


@dataclass(frozen=True)
class Loan:
    """A loan taken against an account"""
    id: str
    amount: Decimal
    interest_rate: Decimal
    term_months: int
    monthly_payment: Decimal
    remaining_balance: Decimal
    status: LoanStatus
    created_at: datetime
    due_date: datetime

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def total_payment(self) -> Decimal:
        return self.monthly_payment * self.term_months

    @property
    def total_interest(self) -> Decimal:
        return self.total_payment - self.amount

    def schedule(self) -> List[AmortizationEntry]:
        first_payment = _add_months(self.created_at.date(), 1)
        return amortization_schedule(self.amount, self.interest_rate, self.term_months, first_payment)

    def with_status(self, status: LoanStatus) -> 'Loan':
        return replace(self, status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "amount": str(self.amount),
            "interest_rate": str(self.interest_rate),
            "term_months": self.term_months,
            "monthly_payment": str(self.monthly_payment),
            "remaining_balance": str(self.remaining_balance),
            "status": self.status.value,
            "created_at": format_timestamp(self.created_at),
            "due_date": format_timestamp(self.due_date),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        try:
            return cls(
                id=data["id"],
                amount=Decimal(str(data["amount"])),
                interest_rate=Decimal(str(data["interest_rate"])),
                term_months=int(data["term_months"]),
                monthly_payment=Decimal(str(data["monthly_payment"])),
                remaining_balance=Decimal(str(data["remaining_balance"])),
                status=LoanStatus(data.get("status", "active")),
                created_at=parse_timestamp(data["created_at"]),
                due_date=parse_timestamp(data["due_date"]),
            )
        except (KeyError, ValueError, ArithmeticError) as e:
            raise ValidationError(f"Malformed loan record: {e}")


def originate_loan(
    amount: Decimal,
    term_months: int,
    annual_rate: Decimal,
    created_at: datetime,
    loan_id: Optional[str] = None
) -> Loan:
    """Create an active loan; the full principal is outstanding"""
    return Loan(
        id=loan_id or generate_loan_id(),
        amount=amount,
        interest_rate=annual_rate,
        term_months=term_months,
        monthly_payment=calculate_monthly_payment(amount, annual_rate, term_months),
        remaining_balance=amount,
        status=LoanStatus.ACTIVE,
        created_at=created_at,
        due_date=created_at + timedelta(days=term_months * DAYS_PER_TERM_MONTH),
    )
