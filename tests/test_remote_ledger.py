"""
Tests for the remote (signed-in) ledger service

Tests postings, transfers and loans committed through an async account
store, failed commits, idempotency and simulated latency.
"""

import asyncio
import pytest
import pytest_asyncio
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from fastpay_ledger.accounts import AccountProfile
from fastpay_ledger.async_storage import AsyncInMemoryAccountStore
from fastpay_ledger.config import FastPayConfig
from fastpay_ledger.errors import (
    InsufficientFundsError, NotFoundError, PersistenceError, PolicyLimitError, ValidationError
)
from fastpay_ledger.remote_ledger import LatencyPolicy, RemoteLedgerService, SimulatedLatency
from fastpay_ledger.transactions import TransactionCategory


# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


class FailingStore(AsyncInMemoryAccountStore):
    """Store whose writes fail, as when the database is unreachable"""

    async def update_account(self, user_id, account):
        raise PersistenceError("Database unavailable")

    async def commit_transfer(self, sender, recipient):
        raise PersistenceError("Database unavailable")


class TestRemoteLedgerService:
    """Test RemoteLedgerService over the in-memory store"""

    @pytest_asyncio.fixture
    async def service(self):
        """Service with two funded users"""
        store = AsyncInMemoryAccountStore()
        service = RemoteLedgerService(
            store, FastPayConfig(storage_backend="memory"),
            clock=lambda: NOW, latency=LatencyPolicy()
        )
        await service.open_account("user-1", AccountProfile(name="Ada Obi"))
        await service.open_account("user-2", AccountProfile(name="Bola Ade"))
        await service.deposit("user-1", "500", "Salary")
        yield service
        await store.close()

    @pytest.mark.asyncio
    async def test_open_account_is_get_or_create(self, service):
        """Test signing in again returns the same account"""
        first = await service.get_account("user-1")
        again = await service.open_account("user-1", AccountProfile(name="Someone else"))

        assert again.id == first.id
        assert again.name == "Ada Obi"

    @pytest.mark.asyncio
    async def test_unknown_user(self, service):
        """Test a user without an account"""
        with pytest.raises(NotFoundError, match="No account for user"):
            await service.get_account("user-9")

    @pytest.mark.asyncio
    async def test_deposit_and_withdraw(self, service):
        """Test postings keep balance and log together"""
        await service.withdraw("user-1", "120.25", "Groceries")

        account = await service.get_account("user-1")
        assert account.balance == Decimal('379.75')
        assert account.balance == account.ledger_balance
        assert account.version == 2

    @pytest.mark.asyncio
    async def test_withdraw_insufficient(self, service):
        """Test an overdraw is rejected before any write"""
        with pytest.raises(InsufficientFundsError):
            await service.withdraw("user-1", "600", "Too much")
        assert (await service.get_account("user-1")).balance == Decimal('500.00')

    @pytest.mark.asyncio
    async def test_transfer(self, service):
        """Test both accounts are committed together"""
        recipient = await service.get_account("user-2")

        result = await service.transfer("user-1", recipient.account_number, "100", "Rent share")

        assert result.sender_balance == Decimal('400.00')
        assert (await service.get_account("user-1")).balance == Decimal('400.00')
        assert (await service.get_account("user-2")).balance == Decimal('100.00')
        assert result.credit.category == TransactionCategory.TRANSFER

    @pytest.mark.asyncio
    async def test_transfer_unknown_recipient(self, service):
        """Test a number no account holds"""
        with pytest.raises(NotFoundError, match="Recipient account not found"):
            await service.transfer("user-1", "0000000000", "100")
        assert (await service.get_account("user-1")).balance == Decimal('500.00')

    @pytest.mark.asyncio
    async def test_transfer_funds_checked_first(self, service):
        """Test insufficient funds wins over an unknown recipient"""
        with pytest.raises(InsufficientFundsError):
            await service.transfer("user-2", "0000000000", "100")

    @pytest.mark.asyncio
    async def test_idempotent_transfer(self, service):
        """Test a retried transfer moves the money once"""
        recipient = await service.get_account("user-2")

        first = await service.transfer("user-1", recipient.account_number, "50", idempotency_key="t-1")
        second = await service.transfer("user-1", recipient.account_number, "50", idempotency_key="t-1")

        assert first.transfer_id == second.transfer_id
        assert (await service.get_account("user-2")).balance == Decimal('50.00')

    @pytest.mark.asyncio
    async def test_deposit_key_used_by_withdrawal(self, service):
        """Test a withdrawal key cannot be replayed as a deposit"""
        await service.withdraw("user-1", "10", "Snacks", idempotency_key="k1")

        with pytest.raises(ValidationError, match="different operation"):
            await service.deposit("user-1", "50", "Top up", idempotency_key="k1")
        assert (await service.get_account("user-1")).balance == Decimal('490.00')

    @pytest.mark.asyncio
    async def test_loan_key_used_by_deposit(self, service):
        """Test a deposit key never disburses a loan"""
        await service.deposit("user-2", "5", "Gift", idempotency_key="k2")

        for _ in range(2):
            with pytest.raises(ValidationError, match="different operation"):
                await service.request_loan("user-2", "1000", 12, idempotency_key="k2")

        account = await service.get_account("user-2")
        assert account.loans == []
        assert account.balance == Decimal('5.00')

    @pytest.mark.asyncio
    async def test_request_loan(self, service):
        """Test disbursement and the active-loan cap"""
        loan = await service.request_loan("user-2", "1000", 12)
        await service.request_loan("user-2", "200", 6)

        assert loan.monthly_payment == Decimal('90.26')
        assert (await service.get_account("user-2")).balance == Decimal('1200.00')
        with pytest.raises(PolicyLimitError):
            await service.request_loan("user-2", "100", 6)

    @pytest.mark.asyncio
    async def test_list_and_summarize(self, service):
        """Test reads over the stored log"""
        await service.withdraw("user-1", "20", "Lunch")

        transactions = await service.list_transactions("user-1", limit=1)
        summary = await service.summarize("user-1", NOW - timedelta(days=1))

        assert len(transactions) == 1
        assert summary.total_income == Decimal('500.00')
        assert summary.total_expenses == Decimal('20.00')

    @pytest.mark.asyncio
    async def test_find_recipient(self, service):
        """Test resolving a recipient by number"""
        recipient = await service.get_account("user-2")

        assert (await service.find_recipient(recipient.account_number)).name == "Bola Ade"
        with pytest.raises(ValidationError, match="10 digits"):
            await service.find_recipient("123")
        with pytest.raises(NotFoundError):
            await service.find_recipient("0000000000")

    @pytest.mark.asyncio
    async def test_subscribe(self, service):
        """Test change notifications after commits"""
        events = []
        service.subscribe("user-1", events.append)

        await service.deposit("user-1", "5", "Gift")

        assert events[-1].data["balance"] == "505.00"


class TestFailedCommits:
    """Test behaviour when the store rejects a write"""

    @pytest_asyncio.fixture
    async def service(self):
        store = FailingStore()
        await store.create_account("user-1", AccountProfile(name="Ada"))
        await store.create_account("user-2", AccountProfile(name="Bola"))
        return RemoteLedgerService(store, FastPayConfig(storage_backend="memory"), latency=LatencyPolicy())

    @pytest.mark.asyncio
    async def test_deposit_not_committed(self, service):
        """Test a failed write reports that nothing was saved"""
        with pytest.raises(PersistenceError) as exc_info:
            await service.deposit("user-1", "10", "Deposit")

        assert exc_info.value.committed is False
        assert (await service.get_account("user-1")).balance == Decimal('0.00')

    @pytest.mark.asyncio
    async def test_loan_not_committed(self, service):
        """Test no loan is recorded when the write fails"""
        with pytest.raises(PersistenceError):
            await service.request_loan("user-1", "1000", 12)
        assert (await service.get_account("user-1")).loans == []


class TestSimulatedLatency:
    """Test demo latency"""

    @pytest.mark.asyncio
    async def test_delays_per_operation(self):
        """Test each operation kind sleeps its configured time"""
        slept = []

        async def fake_sleep(seconds):
            slept.append(seconds)

        latency = SimulatedLatency(sleep=fake_sleep)
        await latency.delay("transaction")
        await latency.delay("transfer")
        await latency.delay("loan")
        await latency.delay("lookup")

        assert slept == [1.0, 1.5, 2.0]

    @pytest.mark.asyncio
    async def test_service_applies_latency(self):
        """Test the service waits before a transfer"""
        slept = []

        async def fake_sleep(seconds):
            slept.append(seconds)

        store = AsyncInMemoryAccountStore()
        service = RemoteLedgerService(
            store, FastPayConfig(storage_backend="memory"),
            latency=SimulatedLatency({"transaction": 0.1}, sleep=fake_sleep)
        )
        await service.open_account("user-1", AccountProfile(name="Ada"))
        await service.deposit("user-1", "1", "Deposit")

        assert slept == [0.1]

    def test_enabled_by_config(self):
        """Test the config switch selects simulated latency"""
        service = RemoteLedgerService(
            AsyncInMemoryAccountStore(), FastPayConfig(storage_backend="memory", simulate_latency=True)
        )
        assert isinstance(service.latency, SimulatedLatency)
        assert asyncio.iscoroutinefunction(service.latency.delay)
