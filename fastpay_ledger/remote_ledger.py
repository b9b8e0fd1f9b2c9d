"""
Remote Ledger Service Module

Async counterpart of ``LedgerEngine`` for signed-in users whose accounts live
in a ``RemoteAccountStore``. It applies the same posting rules, then commits
through the store with a version check. A failed commit raises
``PersistenceError`` with ``committed=False`` so callers know the mutation did
not happen and may retry it with the same idempotency key.
"""

from datetime import datetime
from typing import Dict, List, Optional
import asyncio

from .accounts import Account, AccountProfile, is_valid_account_number
from .async_storage import RemoteAccountStore
from .config import FastPayConfig, get_config
from .errors import NotFoundError, ValidationError
from .events import Subscription
from .ledger import (
    AmountLike, Clock, TransferResult, build_loan, build_transfer, check_transfer, check_transfer_replay,
    post_credit, post_debit, replay_loan, replay_posting, replay_transfer, utc_now
)
from .loans import Loan
from .logging_config import get_logger, log_action
from .reporting import LedgerSummary, recent_transactions, summarize
from .transactions import Transaction, TransactionCategory, TransactionType


class LatencyPolicy:
    """Delay applied before each operation; none by default"""

    async def delay(self, operation: str) -> None:
        return None


class SimulatedLatency(LatencyPolicy):
    """Demo-style network delays per operation kind"""

    DEFAULT_DELAYS = {
        "transaction": 1.0,
        "transfer": 1.5,
        "loan": 2.0,
    }

    def __init__(self, delays: Optional[Dict[str, float]] = None, sleep=asyncio.sleep):
        self.delays = dict(self.DEFAULT_DELAYS)
        if delays:
            self.delays.update(delays)
        self._sleep = sleep

    async def delay(self, operation: str) -> None:
        seconds = self.delays.get(operation, 0)
        if seconds > 0:
            await self._sleep(seconds)


class RemoteLedgerService:
    """Ledger operations for signed-in users, keyed by user id"""

    def __init__(
        self,
        store: RemoteAccountStore,
        config: Optional[FastPayConfig] = None,
        clock: Optional[Clock] = None,
        latency: Optional[LatencyPolicy] = None
    ):
        self.store = store
        self.config = config or get_config()
        self.clock = clock or utc_now
        if latency is None:
            latency = SimulatedLatency() if self.config.simulate_latency else LatencyPolicy()
        self.latency = latency
        self.logger = get_logger("fastpay.remote_ledger")
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        if user_id not in self._locks:
            self._locks[user_id] = asyncio.Lock()
        return self._locks[user_id]

    async def open_account(self, user_id: str, profile: AccountProfile) -> Account:
        """Return the user's account, creating it on first sign-in"""
        account = await self.store.get_account_by_user(user_id)
        if account is not None:
            return account
        account = await self.store.create_account(user_id, profile)
        log_action(self.logger, "info", "Account opened", account_id=account.id,
                   action="open_account", extra={"user_id": user_id})
        return account

    async def get_account(self, user_id: str) -> Account:
        account = await self.store.get_account_by_user(user_id)
        if account is None:
            raise NotFoundError(f"No account for user {user_id}")
        return account

    def subscribe(self, user_id: str, on_change) -> Subscription:
        return self.store.subscribe(user_id, on_change)

    async def _post(self, user_id: str, account: Account, txn: Transaction, action: str) -> Transaction:
        await self.store.update_account(user_id, account)
        log_action(self.logger, "info", f"{action.capitalize()} posted", account_id=account.id,
                   action=action, resource=txn.id, extra={"amount": str(txn.amount)})
        return txn

    async def deposit(
        self,
        user_id: str,
        amount: AmountLike,
        description: str,
        category: TransactionCategory = TransactionCategory.OTHER,
        recipient: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Transaction:
        await self.latency.delay("transaction")
        async with self._lock_for(user_id):
            account = await self.get_account(user_id)
            existing = account.find_transaction_by_key(idempotency_key)
            if existing is not None:
                return replay_posting(existing, TransactionType.INCOME, category)
            updated, txn = post_credit(
                account, amount, description, self.clock(),
                category=category, recipient=recipient, idempotency_key=idempotency_key
            )
            return await self._post(user_id, updated, txn, "deposit")

    async def withdraw(
        self,
        user_id: str,
        amount: AmountLike,
        description: str,
        category: TransactionCategory = TransactionCategory.OTHER,
        recipient: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Transaction:
        await self.latency.delay("transaction")
        async with self._lock_for(user_id):
            account = await self.get_account(user_id)
            existing = account.find_transaction_by_key(idempotency_key)
            if existing is not None:
                return replay_posting(existing, TransactionType.EXPENSE, category)
            updated, txn = post_debit(
                account, amount, description, self.clock(),
                category=category, recipient=recipient, idempotency_key=idempotency_key,
                allow_overdraft=self.config.allow_overdraft
            )
            return await self._post(user_id, updated, txn, "withdraw")

    async def transfer(
        self,
        user_id: str,
        recipient_account_number: str,
        amount: AmountLike,
        description: str = "",
        idempotency_key: Optional[str] = None
    ) -> TransferResult:
        """
        Transfer to another account by number.

        Both accounts are committed by ``RemoteAccountStore.commit_transfer``
        in one transaction; on any failure neither side changes.
        """
        await self.latency.delay("transfer")
        async with self._lock_for(user_id):
            sender = await self.get_account(user_id)
            existing = sender.find_transaction_by_key(idempotency_key)
            if existing is not None:
                check_transfer_replay(existing)
                recipient = await self.store.get_account_by_number(existing.recipient)
                return replay_transfer(sender, recipient, existing)

            check_transfer(sender, recipient_account_number, amount, self.config.allow_overdraft)
            recipient = await self.store.get_account_by_number(recipient_account_number)
            if recipient is None:
                raise NotFoundError("Recipient account not found")

            new_sender, new_recipient, result = build_transfer(
                sender, recipient, amount, description, self.clock(),
                idempotency_key=idempotency_key,
                allow_overdraft=self.config.allow_overdraft
            )
            committed_sender, _ = await self.store.commit_transfer(new_sender, new_recipient)

        log_action(self.logger, "info", "Transfer completed", account_id=committed_sender.id,
                   action="transfer", resource=result.transfer_id,
                   extra={"amount": str(result.debit.amount),
                          "recipient_account_number": recipient_account_number})
        return result

    async def request_loan(
        self,
        user_id: str,
        amount: AmountLike,
        term_months: int,
        idempotency_key: Optional[str] = None
    ) -> Loan:
        await self.latency.delay("loan")
        async with self._lock_for(user_id):
            account = await self.get_account(user_id)
            existing = account.find_transaction_by_key(idempotency_key)
            if existing is not None:
                return replay_loan(account, existing)
            updated, loan, txn = build_loan(
                account, amount, term_months, self.clock(), self.config,
                idempotency_key=idempotency_key
            )
            await self.store.update_account(user_id, updated)

        log_action(self.logger, "info", "Loan disbursed", account_id=account.id,
                   action="request_loan", resource=loan.id,
                   extra={"amount": str(loan.amount), "term_months": loan.term_months})
        return loan

    async def list_transactions(self, user_id: str, limit: Optional[int] = None) -> List[Transaction]:
        account = await self.get_account(user_id)
        return recent_transactions(account.transactions, limit)

    async def summarize(self, user_id: str, since: datetime, until: Optional[datetime] = None) -> LedgerSummary:
        account = await self.get_account(user_id)
        return summarize(account.transactions, since, until or self.clock())

    async def find_recipient(self, account_number: str) -> Account:
        """Resolve a transfer recipient, e.g. to show their name before sending"""
        if not is_valid_account_number(account_number):
            raise ValidationError("Account number must be exactly 10 digits")
        account = await self.store.get_account_by_number(account_number)
        if account is None:
            raise NotFoundError("Recipient account not found")
        return account
