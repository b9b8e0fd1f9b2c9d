"""
Reporting Module

Read projections over an account's transaction log: recent activity,
filtered views, windowed analytics summaries, the dashboard overview and
CSV export. Every function here is a pure function of its inputs.
"""

from decimal import Decimal
from datetime import date, datetime, timedelta, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple
from enum import Enum
import csv
import io

from .currency import Currency, CurrencyConverter
from .errors import ValidationError
from .transactions import Transaction, TransactionCategory, TransactionType

ZERO = Decimal('0')


class DateRange(Enum):
    """Relative windows offered by the transaction filter"""
    ALL = "all"
    LAST_7_DAYS = "7d"
    LAST_30_DAYS = "30d"
    LAST_90_DAYS = "90d"

    @property
    def days(self) -> Optional[int]:
        return {
            DateRange.LAST_7_DAYS: 7,
            DateRange.LAST_30_DAYS: 30,
            DateRange.LAST_90_DAYS: 90,
        }.get(self)


ANALYTICS_WINDOWS = (7, 30, 90)


def amount_text(amount: Decimal) -> str:
    """Plain amount text without trailing zeros (``100``, ``12.5``)"""
    if amount == amount.to_integral_value():
        return str(amount.quantize(Decimal('1')))
    return format(amount.normalize(), 'f')


def recent_transactions(transactions: Sequence[Transaction], limit: Optional[int] = None) -> List[Transaction]:
    """
    Transactions newest first.

    Ties on ``date`` put the later log entry first. ``limit`` caps the
    result; ``None`` returns everything.
    """
    if limit is not None and limit < 0:
        raise ValidationError("limit must not be negative")

    ordered = [
        txn for _, txn in sorted(
            enumerate(transactions),
            key=lambda pair: (pair[1].date, pair[0]),
            reverse=True
        )
    ]
    return ordered if limit is None else ordered[:limit]


@dataclass(frozen=True)
class TransactionFilter:
    """Criteria for ``filter_transactions``; unset fields match everything"""
    query: str = ""
    type: Optional[TransactionType] = None
    category: Optional[TransactionCategory] = None
    date_range: DateRange = DateRange.ALL
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None

    def __post_init__(self):
        if self.min_amount is not None and self.max_amount is not None and self.min_amount > self.max_amount:
            raise ValidationError("min_amount cannot exceed max_amount")

    @property
    def is_active(self) -> bool:
        return bool(
            self.query.strip() or self.type or self.category
            or self.date_range != DateRange.ALL
            or self.min_amount is not None or self.max_amount is not None
        )

    def matches(self, txn: Transaction, now: datetime) -> bool:
        query = self.query.strip().lower()
        if query:
            haystack = (
                txn.description.lower(),
                (txn.recipient or "").lower(),
                amount_text(txn.amount),
                txn.category.value,
            )
            if not any(query in text for text in haystack):
                return False

        if self.type is not None and txn.type != self.type:
            return False
        if self.category is not None and txn.category != self.category:
            return False

        days = self.date_range.days
        if days is not None and txn.date < now - timedelta(days=days):
            return False

        if self.min_amount is not None and txn.amount < self.min_amount:
            return False
        if self.max_amount is not None and txn.amount > self.max_amount:
            return False
        return True


def filter_transactions(
    transactions: Sequence[Transaction],
    criteria: TransactionFilter,
    now: Optional[datetime] = None
) -> List[Transaction]:
    """Apply ``criteria`` and return the matches newest first"""
    now = now or datetime.now(timezone.utc)
    return recent_transactions([txn for txn in transactions if criteria.matches(txn, now)])


@dataclass
class CategoryBreakdown:
    """Per-category totals within a summary window"""
    income: Decimal = ZERO
    expense: Decimal = ZERO
    count: int = 0


@dataclass(frozen=True)
class DailyPoint:
    """Totals for one calendar day (UTC)"""
    day: date
    income: Decimal
    expenses: Decimal

    @property
    def net(self) -> Decimal:
        return self.income - self.expenses


@dataclass(frozen=True)
class LedgerSummary:
    """Aggregate view of the transactions inside ``[since, until]``"""
    since: datetime
    until: datetime
    total_income: Decimal
    total_expenses: Decimal
    transaction_count: int
    by_category: Dict[str, CategoryBreakdown] = field(default_factory=dict)
    daily: List[DailyPoint] = field(default_factory=list)

    @property
    def net(self) -> Decimal:
        return self.total_income - self.total_expenses

    @property
    def top_category(self) -> Optional[Tuple[str, CategoryBreakdown]]:
        """Category with the most transactions, if any"""
        if not self.by_category:
            return None
        return max(self.by_category.items(), key=lambda item: item[1].count)


def _day(value: datetime) -> date:
    return value.astimezone(timezone.utc).date()


def summarize(
    transactions: Sequence[Transaction],
    since: datetime,
    until: Optional[datetime] = None
) -> LedgerSummary:
    """
    Income, expenses, category breakdown and a daily series for a window.

    Transactions dated exactly at ``since`` are included. The daily series
    has one point per UTC calendar date from ``since`` to ``until``, with
    zero-valued points for quiet days. Legacy ``transfer`` entries are
    counted but move neither total.
    """
    until = until or datetime.now(timezone.utc)
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    if until.tzinfo is None:
        until = until.replace(tzinfo=timezone.utc)
    if until < since:
        raise ValidationError("until must not be before since")

    in_window = [txn for txn in transactions if since <= txn.date <= until]

    total_income = ZERO
    total_expenses = ZERO
    by_category: Dict[str, CategoryBreakdown] = {}
    daily_income: Dict[date, Decimal] = {}
    daily_expenses: Dict[date, Decimal] = {}

    for txn in in_window:
        breakdown = by_category.setdefault(txn.category.value, CategoryBreakdown())
        breakdown.count += 1
        day = _day(txn.date)
        if txn.type == TransactionType.INCOME:
            total_income += txn.amount
            breakdown.income += txn.amount
            daily_income[day] = daily_income.get(day, ZERO) + txn.amount
        elif txn.type == TransactionType.EXPENSE:
            total_expenses += txn.amount
            breakdown.expense += txn.amount
            daily_expenses[day] = daily_expenses.get(day, ZERO) + txn.amount

    daily = []
    current = _day(since)
    last = _day(until)
    while current <= last:
        daily.append(DailyPoint(
            day=current,
            income=daily_income.get(current, ZERO),
            expenses=daily_expenses.get(current, ZERO),
        ))
        current += timedelta(days=1)

    return LedgerSummary(
        since=since,
        until=until,
        total_income=total_income,
        total_expenses=total_expenses,
        transaction_count=len(in_window),
        by_category=by_category,
        daily=daily,
    )


def summarize_window(
    transactions: Sequence[Transaction],
    days: int,
    now: Optional[datetime] = None
) -> LedgerSummary:
    """Summary for the analytics selector (7, 30 or 90 days back from ``now``)"""
    if days not in ANALYTICS_WINDOWS:
        raise ValidationError(f"Window must be one of {', '.join(str(d) for d in ANALYTICS_WINDOWS)} days")
    now = now or datetime.now(timezone.utc)
    return summarize(transactions, now - timedelta(days=days), now)


@dataclass(frozen=True)
class AccountOverview:
    """Figures shown on the account dashboard"""
    account_id: str
    account_number: str
    name: str
    balance: Decimal
    currency: Currency
    display_balance: Decimal
    display_currency: Currency
    month_income: Decimal
    month_expenses: Decimal
    active_loans: int
    recent: List[Transaction]


def account_overview(
    account,
    now: Optional[datetime] = None,
    converter: Optional[CurrencyConverter] = None,
    display_currency: Optional[Currency] = None,
    recent_limit: int = 5
) -> AccountOverview:
    """Balance (also in the display currency), this month's flows, active loans and latest activity"""
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    converter = converter or CurrencyConverter()
    display_currency = display_currency or account.display_currency or account.currency

    this_month = [
        txn for txn in account.transactions
        if txn.date.astimezone(timezone.utc).year == now.year
        and txn.date.astimezone(timezone.utc).month == now.month
    ]

    return AccountOverview(
        account_id=account.id,
        account_number=account.account_number,
        name=account.name,
        balance=account.balance,
        currency=account.currency,
        display_balance=converter.convert(account.balance, account.currency, display_currency),
        display_currency=display_currency,
        month_income=sum((t.amount for t in this_month if t.is_income), ZERO),
        month_expenses=sum((t.amount for t in this_month if t.is_expense), ZERO),
        active_loans=len(account.active_loans),
        recent=recent_transactions(account.transactions, recent_limit),
    )


CSV_HEADERS = ['Date', 'Type', 'Category', 'Description', 'Amount', 'Recipient', 'Status']


def export_csv(transactions: Sequence[Transaction]) -> str:
    """Export transactions (in the given order) as CSV text"""
    output = io.StringIO()
    writer = csv.writer(output, lineterminator='\n')
    writer.writerow(CSV_HEADERS)
    for txn in transactions:
        writer.writerow([
            txn.date.astimezone(timezone.utc).strftime('%Y-%m-%d %H:%M:%S'),
            txn.type.value,
            txn.category.value,
            txn.description,
            amount_text(txn.amount),
            txn.recipient or '',
            txn.status.value,
        ])
    return output.getvalue()
