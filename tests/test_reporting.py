"""
Test suite for reporting module

Tests recent activity, filters, windowed summaries, the dashboard overview
and CSV export.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timedelta, timezone

from fastpay_ledger.accounts import Account
from fastpay_ledger.currency import Currency, CurrencyConverter
from fastpay_ledger.errors import ValidationError
from fastpay_ledger.loans import originate_loan
from fastpay_ledger.reporting import (
    CSV_HEADERS, DateRange, TransactionFilter, account_overview, amount_text,
    export_csv, filter_transactions, recent_transactions, summarize, summarize_window
)
from fastpay_ledger.transactions import TransactionCategory, TransactionType, create_transaction

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


def txn(kind, amount, description, when, category=TransactionCategory.OTHER, recipient=None):
    return create_transaction(kind, Decimal(amount), description, when, category=category, recipient=recipient)


def sample_log():
    return [
        txn(TransactionType.INCOME, "2500.00", "Salary", NOW - timedelta(days=40)),
        txn(TransactionType.EXPENSE, "100.00", "Electricity Bill Payment - 12345", NOW - timedelta(days=5),
            category=TransactionCategory.BILL_PAY, recipient="Ada Obi"),
        txn(TransactionType.INCOME, "1.00", "Cashback from Electricity bill payment", NOW - timedelta(days=5)),
        txn(TransactionType.EXPENSE, "12.50", "MTN Nigeria Airtime - 08031234567", NOW - timedelta(days=1),
            category=TransactionCategory.AIRTIME, recipient="08031234567"),
        txn(TransactionType.EXPENSE, "200.00", "Transfer to 2647000002", NOW - timedelta(hours=2),
            category=TransactionCategory.TRANSFER, recipient="2647000002"),
    ]


class TestAmountText:
    """Test plain amount text"""

    def test_strips_trailing_zeros(self):
        """Test whole and fractional amounts"""
        assert amount_text(Decimal('100.00')) == "100"
        assert amount_text(Decimal('12.50')) == "12.5"
        assert amount_text(Decimal('0.05')) == "0.05"


class TestRecentTransactions:
    """Test newest-first ordering"""

    def test_newest_first(self):
        """Test ordering by date"""
        log = sample_log()
        assert recent_transactions(log)[0].description == "Transfer to 2647000002"
        assert recent_transactions(log)[-1].description == "Salary"

    def test_ties_keep_later_entry_first(self):
        """Test entries posted at the same instant"""
        log = sample_log()
        ordered = recent_transactions(log)
        assert [t.description for t in ordered[2:4]] == [
            "Cashback from Electricity bill payment", "Electricity Bill Payment - 12345"
        ]

    def test_limits(self):
        """Test limit handling"""
        log = sample_log()
        assert len(recent_transactions(log, 2)) == 2
        assert recent_transactions(log, 0) == []
        assert len(recent_transactions(log, 50)) == 5
        with pytest.raises(ValidationError):
            recent_transactions(log, -1)

    def test_does_not_mutate_input(self):
        """Test projections leave the log alone"""
        log = sample_log()
        snapshot = list(log)
        recent_transactions(log)
        assert log == snapshot


class TestFilter:
    """Test transaction filters"""

    def setup_method(self):
        self.log = sample_log()

    def descriptions(self, criteria):
        return [t.description for t in filter_transactions(self.log, criteria, NOW)]

    def test_inactive_filter_matches_all(self):
        """Test the empty filter"""
        assert not TransactionFilter().is_active
        assert len(filter_transactions(self.log, TransactionFilter(), NOW)) == 5

    def test_query_description_case_insensitive(self):
        """Test text search over descriptions"""
        assert self.descriptions(TransactionFilter(query="ELECTRICITY")) == [
            "Cashback from Electricity bill payment", "Electricity Bill Payment - 12345"
        ]

    def test_query_recipient_and_amount(self):
        """Test text search over recipient and amount"""
        assert self.descriptions(TransactionFilter(query="2647000002")) == ["Transfer to 2647000002"]
        assert self.descriptions(TransactionFilter(query="12.5")) == ["MTN Nigeria Airtime - 08031234567"]

    def test_query_category(self):
        """Test text search over the category name"""
        assert self.descriptions(TransactionFilter(query="airtime")) == ["MTN Nigeria Airtime - 08031234567"]

    def test_type_and_category(self):
        """Test exact type and category"""
        assert len(self.descriptions(TransactionFilter(type=TransactionType.INCOME))) == 2
        assert self.descriptions(TransactionFilter(category=TransactionCategory.BILL_PAY)) == [
            "Electricity Bill Payment - 12345"
        ]

    def test_date_range(self):
        """Test relative windows"""
        assert len(self.descriptions(TransactionFilter(date_range=DateRange.LAST_7_DAYS))) == 4
        assert len(self.descriptions(TransactionFilter(date_range=DateRange.LAST_90_DAYS))) == 5

    def test_amount_bounds(self):
        """Test inclusive amount bounds"""
        criteria = TransactionFilter(min_amount=Decimal('12.50'), max_amount=Decimal('200'))
        assert self.descriptions(criteria) == [
            "Transfer to 2647000002", "MTN Nigeria Airtime - 08031234567", "Electricity Bill Payment - 12345"
        ]

    def test_inverted_bounds(self):
        """Test min above max"""
        with pytest.raises(ValidationError, match="min_amount cannot exceed max_amount"):
            TransactionFilter(min_amount=Decimal('10'), max_amount=Decimal('1'))


class TestSummarize:
    """Test windowed summaries"""

    def test_totals_and_categories(self):
        """Test income, expenses and the category breakdown"""
        summary = summarize_window(sample_log(), 30, NOW)

        assert summary.total_income == Decimal('1.00')
        assert summary.total_expenses == Decimal('312.50')
        assert summary.net == Decimal('-311.50')
        assert summary.transaction_count == 4
        assert summary.by_category["bill_pay"].expense == Decimal('100.00')
        assert summary.by_category["other"].income == Decimal('1.00')
        assert summary.by_category["transfer"].count == 1

    def test_window_start_is_inclusive(self):
        """Test the boundary instant is in and one millisecond earlier is out"""
        since = NOW - timedelta(days=7)
        log = [
            txn(TransactionType.INCOME, "10", "At boundary", since),
            txn(TransactionType.INCOME, "20", "Just before", since - timedelta(milliseconds=1)),
        ]

        summary = summarize(log, since, NOW)

        assert summary.transaction_count == 1
        assert summary.total_income == Decimal('10')

    def test_window_end_is_inclusive(self):
        """Test a transaction dated exactly at until"""
        log = [txn(TransactionType.EXPENSE, "5", "At end", NOW)]
        assert summarize(log, NOW - timedelta(days=1), NOW).total_expenses == Decimal('5')

    def test_daily_series_zero_filled(self):
        """Test one point per UTC date with quiet days at zero"""
        summary = summarize(sample_log(), NOW - timedelta(days=6), NOW)

        assert len(summary.daily) == 7
        assert summary.daily[0].day == date(2024, 6, 9)
        assert summary.daily[-1].day == date(2024, 6, 15)
        assert summary.daily[1].income == Decimal('1.00')
        assert summary.daily[1].expenses == Decimal('100.00')
        assert summary.daily[2].net == Decimal('0')

    def test_legacy_transfer_counted_only(self):
        """Test legacy transfer entries move neither total"""
        log = [txn(TransactionType.TRANSFER, "99", "Old transfer", NOW)]
        summary = summarize(log, NOW - timedelta(days=1), NOW)

        assert summary.transaction_count == 1
        assert summary.total_income == Decimal('0')
        assert summary.total_expenses == Decimal('0')

    def test_top_category(self):
        """Test the most frequent category"""
        log = sample_log()
        log.append(txn(TransactionType.EXPENSE, "1", "Second airtime", NOW, category=TransactionCategory.AIRTIME))
        name, breakdown = summarize_window(log, 7, NOW).top_category
        assert name == "airtime"
        assert breakdown.count == 2
        assert summarize([], NOW - timedelta(days=1), NOW).top_category is None

    def test_idempotent(self):
        """Test summarizing twice gives the same result"""
        log = sample_log()
        assert summarize(log, NOW - timedelta(days=30), NOW) == summarize(log, NOW - timedelta(days=30), NOW)

    def test_inverted_window(self):
        """Test until before since"""
        with pytest.raises(ValidationError, match="until must not be before since"):
            summarize([], NOW, NOW - timedelta(seconds=1))

    def test_unsupported_window(self):
        """Test only the offered windows are accepted"""
        with pytest.raises(ValidationError, match="7, 30, 90"):
            summarize_window([], 14, NOW)


class TestOverview:
    """Test the dashboard overview"""

    def make_account(self):
        return Account(
            id="acct_1",
            account_number="2647000001",
            name="Ada Obi",
            balance=Decimal('2188.50'),
            transactions=sample_log(),
            loans=[originate_loan(Decimal('1000'), 12, Decimal('0.15'), NOW)],
            display_currency=Currency.NGN,
        )

    def test_month_flows(self):
        """Test only this month's transactions are totalled"""
        overview = account_overview(self.make_account(), NOW, CurrencyConverter())

        assert overview.month_income == Decimal('1.00')
        assert overview.month_expenses == Decimal('312.50')
        assert overview.active_loans == 1
        assert len(overview.recent) == 5

    def test_display_currency(self):
        """Test the balance in the account's display currency"""
        overview = account_overview(self.make_account(), NOW, CurrencyConverter())

        assert overview.display_currency == Currency.NGN
        assert overview.display_balance == Decimal('3611025.00')
        assert overview.balance == Decimal('2188.50')

    def test_display_currency_override(self):
        """Test an explicit display currency wins"""
        overview = account_overview(self.make_account(), NOW, CurrencyConverter(), Currency.USD)
        assert overview.display_balance == Decimal('2188.50')


class TestExportCsv:
    """Test CSV export"""

    def test_headers_and_rows(self):
        """Test the column layout"""
        log = [
            txn(TransactionType.INCOME, "2500.00", "Salary", datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)),
            txn(TransactionType.EXPENSE, "12.50", "Airtime, weekly", datetime(2024, 1, 16, 8, 0, tzinfo=timezone.utc),
                category=TransactionCategory.AIRTIME, recipient="08031234567"),
        ]

        lines = export_csv(log).splitlines()

        assert lines[0] == ",".join(CSV_HEADERS)
        assert lines[1] == "2024-01-15 10:30:00,income,other,Salary,2500,,completed"
        assert lines[2] == '2024-01-16 08:00:00,expense,airtime,"Airtime, weekly",12.5,08031234567,completed'

    def test_empty(self):
        """Test an empty export still has headers"""
        assert export_csv([]) == "Date,Type,Category,Description,Amount,Recipient,Status\n"
