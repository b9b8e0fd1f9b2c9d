"""
Test suite for loans module

Tests the amortization formula, quotes, schedules and loan records.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timedelta, timezone

from fastpay_ledger.errors import ValidationError
from fastpay_ledger.loans import (
    Loan, LoanStatus, amortization_schedule, calculate_monthly_payment,
    originate_loan, quote_loan, _add_months
)

RATE = Decimal('0.15')


class TestMonthlyPayment:
    """Test the equal-installment formula"""

    def test_standard_loan(self):
        """Test 1000 at 15% over 12 months"""
        assert calculate_monthly_payment(Decimal('1000'), RATE, 12) == Decimal('90.26')

    def test_zero_rate(self):
        """Test that a zero rate splits the principal evenly"""
        assert calculate_monthly_payment(Decimal('1200'), Decimal('0'), 12) == Decimal('100.00')

    def test_rounded_to_cents(self):
        """Test payments never carry fractions of a cent"""
        payment = calculate_monthly_payment(Decimal('5000'), RATE, 36)
        assert payment == payment.quantize(Decimal('0.01'))

    def test_invalid_term(self):
        """Test zero and negative terms"""
        with pytest.raises(ValidationError, match="positive number of months"):
            calculate_monthly_payment(Decimal('1000'), RATE, 0)
        with pytest.raises(ValidationError, match="positive number of months"):
            calculate_monthly_payment(Decimal('1000'), RATE, -6)


class TestQuote:
    """Test loan quotes"""

    def test_quote_totals(self):
        """Test total payment and interest"""
        quote = quote_loan(Decimal('1000'), 12, RATE)

        assert quote.monthly_payment == Decimal('90.26')
        assert quote.total_payment == Decimal('1083.12')
        assert quote.total_interest == Decimal('83.12')


class TestSchedule:
    """Test amortization schedules"""

    def test_schedule_pays_off_principal(self):
        """Test the balance ends at zero and principal sums exactly"""
        schedule = amortization_schedule(Decimal('1000'), RATE, 12, date(2024, 2, 1))

        assert len(schedule) == 12
        assert schedule[-1].remaining_balance == Decimal('0.00')
        assert sum(entry.principal_amount for entry in schedule) == Decimal('1000')

    def test_first_row(self):
        """Test interest on the first installment"""
        first = amortization_schedule(Decimal('1000'), RATE, 12, date(2024, 2, 1))[0]

        assert first.interest_amount == Decimal('12.50')
        assert first.principal_amount == Decimal('77.76')
        assert first.remaining_balance == Decimal('922.24')

    def test_payment_dates_monthly(self):
        """Test one payment per calendar month"""
        schedule = amortization_schedule(Decimal('600'), RATE, 6, date(2024, 1, 31))
        assert [entry.payment_date for entry in schedule[:3]] == [
            date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31)
        ]

    def test_add_months_across_year(self):
        """Test month arithmetic over a year boundary"""
        assert _add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)


class TestLoan:
    """Test loan records"""

    def setup_method(self):
        self.created = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
        self.loan = originate_loan(Decimal('1000.00'), 12, RATE, self.created)

    def test_originate(self):
        """Test a new loan is active with the full principal outstanding"""
        assert self.loan.status == LoanStatus.ACTIVE
        assert self.loan.is_active
        assert self.loan.remaining_balance == Decimal('1000.00')
        assert self.loan.monthly_payment == Decimal('90.26')
        assert self.loan.id.startswith("loan_")

    def test_due_date_uses_thirty_day_months(self):
        """Test the due date is term x 30 days after origination"""
        assert self.loan.due_date == self.created + timedelta(days=360)

    def test_totals(self):
        """Test totals derived from the installment"""
        assert self.loan.total_payment == Decimal('1083.12')
        assert self.loan.total_interest == Decimal('83.12')

    def test_schedule_starts_next_month(self):
        """Test the first installment falls a month after origination"""
        assert self.loan.schedule()[0].payment_date == date(2024, 2, 15)

    def test_with_status(self):
        """Test status changes return a new loan"""
        paid = self.loan.with_status(LoanStatus.PAID)
        assert not paid.is_active
        assert self.loan.is_active

    def test_dict_round_trip(self):
        """Test serialization keeps every field"""
        assert Loan.from_dict(self.loan.to_dict()) == self.loan

    def test_from_dict_malformed(self):
        """Test a record without an amount"""
        data = self.loan.to_dict()
        del data["amount"]
        with pytest.raises(ValidationError, match="Malformed loan record"):
            Loan.from_dict(data)
