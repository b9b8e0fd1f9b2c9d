"""
Ledger Engine Module

Applies mutations (deposits, withdrawals, transfers, loan disbursements) to
accounts so that an account's balance and its transaction log always change
together. The posting rules are pure functions over ``Account`` values and
are shared by the synchronous engine here and the async remote service.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union
import threading
import uuid

from .accounts import (
    Account, AccountRepository, GUEST_ACCOUNT_ID, GUEST_ACCOUNT_NAME, GUEST_ACCOUNT_NUMBER,
    generate_account_id, generate_account_number, is_valid_account_number
)
from .config import FastPayConfig, get_config
from .currency import Currency, CurrencyConverter
from .errors import InsufficientFundsError, NotFoundError, PolicyLimitError, ValidationError
from .events import (
    DomainEvent, EventDispatcher, create_account_event, create_loan_event, create_transaction_event
)
from .loans import Loan, originate_loan
from .logging_config import get_logger, log_action
from .reporting import (
    AccountOverview, LedgerSummary, TransactionFilter, account_overview, filter_transactions,
    recent_transactions, summarize
)
from .transactions import Transaction, TransactionCategory, TransactionType, create_transaction

Clock = Callable[[], datetime]
AmountLike = Union[Decimal, int, str]

ACCOUNT_NUMBER_ATTEMPTS = 20


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_amount(amount: AmountLike, currency: Currency = Currency.USD) -> Decimal:
    """
    Normalize a caller-supplied amount.

    Floats are rejected so binary rounding never reaches a balance. The
    result is rounded to the currency's minor unit and must be positive.
    """
    if isinstance(amount, (bool, float)):
        raise ValidationError("Amount must be a Decimal, integer or numeric string")
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}")

    try:
        value = value.quantize(currency.quantum, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(f"Amount is out of range: {amount!r}")
    if value <= Decimal('0'):
        raise ValidationError("Amount must be greater than zero")
    return value


@dataclass(frozen=True)
class TransferResult:
    """Both sides of a completed transfer"""
    transfer_id: str
    debit: Transaction
    credit: Transaction
    sender_balance: Decimal
    recipient_account_number: str


@dataclass(frozen=True)
class PaymentPosting:
    """A payment debit and the cashback credited with it"""
    debit: Transaction
    cashback: Optional[Transaction]
    balance: Decimal


def _append(account: Account, txn: Transaction, occurred_at: datetime) -> Account:
    updated = account.copy()
    updated.transactions.append(txn)
    updated.balance = account.balance + txn.signed_amount
    updated.updated_at = occurred_at
    return updated


def post_credit(
    account: Account,
    amount: Decimal,
    description: str,
    occurred_at: datetime,
    category: TransactionCategory = TransactionCategory.OTHER,
    recipient: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    transaction_id: Optional[str] = None
) -> Tuple[Account, Transaction]:
    """Return the account with an ``income`` entry appended, and that entry"""
    amount = validate_amount(amount, account.currency)
    txn = create_transaction(
        TransactionType.INCOME, amount, description, occurred_at,
        category=category, recipient=recipient,
        idempotency_key=idempotency_key, transaction_id=transaction_id
    )
    return _append(account, txn, occurred_at), txn


def ensure_funds(account: Account, amount: Decimal, allow_overdraft: bool = False) -> None:
    if not allow_overdraft and amount > account.balance:
        raise InsufficientFundsError(
            f"Insufficient balance: {account.balance} {account.currency.code} available, "
            f"{amount} {account.currency.code} requested"
        )


def post_debit(
    account: Account,
    amount: Decimal,
    description: str,
    occurred_at: datetime,
    category: TransactionCategory = TransactionCategory.OTHER,
    recipient: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    transaction_id: Optional[str] = None,
    allow_overdraft: bool = False
) -> Tuple[Account, Transaction]:
    """Return the account with an ``expense`` entry appended, and that entry"""
    amount = validate_amount(amount, account.currency)
    ensure_funds(account, amount, allow_overdraft)
    txn = create_transaction(
        TransactionType.EXPENSE, amount, description, occurred_at,
        category=category, recipient=recipient,
        idempotency_key=idempotency_key, transaction_id=transaction_id
    )
    return _append(account, txn, occurred_at), txn


def check_transfer(
    sender: Account,
    recipient_account_number: str,
    amount: AmountLike,
    allow_overdraft: bool = False
) -> Decimal:
    """
    Validate a transfer before the recipient is looked up.

    Order matters: input problems first, then the sender's funds. An unknown
    recipient is only reported for requests the sender could afford.
    """
    amount = validate_amount(amount, sender.currency)
    if not is_valid_account_number(recipient_account_number):
        raise ValidationError("Recipient account number must be exactly 10 digits")
    if recipient_account_number == sender.account_number:
        raise ValidationError("Cannot transfer to the same account")
    ensure_funds(sender, amount, allow_overdraft)
    return amount


def build_transfer(
    sender: Account,
    recipient: Account,
    amount: AmountLike,
    description: str,
    occurred_at: datetime,
    idempotency_key: Optional[str] = None,
    transfer_id: Optional[str] = None,
    allow_overdraft: bool = False
) -> Tuple[Account, Account, TransferResult]:
    """Post both legs of a transfer; neither account is modified in place"""
    amount = check_transfer(sender, recipient.account_number, amount, allow_overdraft)
    if recipient.id == sender.id:
        raise ValidationError("Cannot transfer to the same account")
    if recipient.currency != sender.currency:
        raise ValidationError(
            f"Cannot transfer {sender.currency.code} to a {recipient.currency.code} account"
        )

    transfer_id = transfer_id or f"transfer_{uuid.uuid4().hex[:16]}"
    new_sender, debit = post_debit(
        sender, amount, description or f"Transfer to {recipient.account_number}", occurred_at,
        category=TransactionCategory.TRANSFER,
        recipient=recipient.account_number,
        idempotency_key=idempotency_key,
        transaction_id=f"{transfer_id}_out",
        allow_overdraft=allow_overdraft
    )
    new_recipient, credit = post_credit(
        recipient, amount, f"Transfer from {sender.account_number}", occurred_at,
        category=TransactionCategory.TRANSFER,
        recipient=sender.account_number,
        transaction_id=f"{transfer_id}_in"
    )
    result = TransferResult(
        transfer_id=transfer_id,
        debit=debit,
        credit=credit,
        sender_balance=new_sender.balance,
        recipient_account_number=recipient.account_number,
    )
    return new_sender, new_recipient, result


def check_loan_request(
    account: Account,
    amount: AmountLike,
    term_months: int,
    config: FastPayConfig
) -> Decimal:
    amount = validate_amount(amount, account.currency)
    min_amount, max_amount = config.loan_amount_range
    if amount < min_amount or amount > max_amount:
        raise ValidationError(f"Loan amount must be between {min_amount} and {max_amount}")
    if isinstance(term_months, bool) or not isinstance(term_months, int) or term_months <= 0:
        raise ValidationError("Loan term must be a positive whole number of months")
    if len(account.active_loans) >= config.max_active_loans:
        raise PolicyLimitError(
            f"Maximum of {config.max_active_loans} active loans reached"
        )
    return amount


def build_loan(
    account: Account,
    amount: AmountLike,
    term_months: int,
    occurred_at: datetime,
    config: FastPayConfig,
    idempotency_key: Optional[str] = None
) -> Tuple[Account, Loan, Transaction]:
    """Originate an active loan and post its disbursement"""
    amount = check_loan_request(account, amount, term_months, config)
    loan = originate_loan(amount, term_months, config.loan_rate, occurred_at)
    updated, txn = post_credit(
        account, amount, f"Loan disbursement - {term_months} months", occurred_at,
        category=TransactionCategory.LOAN,
        idempotency_key=idempotency_key,
        transaction_id=f"{loan.id}_disbursement"
    )
    updated.loans.append(loan)
    return updated, loan, txn


def find_loan_for_transaction(account: Account, txn: Transaction) -> Optional[Loan]:
    for loan in account.loans:
        if txn.id == f"{loan.id}_disbursement":
            return loan
    return None


KEY_REUSED_MESSAGE = "Idempotency key was already used for a different operation"

# Entries whose keys belong to a transfer or a loan, never to a plain posting
DERIVED_ENTRY_SUFFIXES = ("_out", "_in", "_disbursement", "_cashback")


def replay_posting(
    existing: Transaction,
    txn_type: TransactionType,
    category: TransactionCategory
) -> Transaction:
    """
    Return the entry an earlier call with the same key created.

    Raises:
        ValidationError: If the key belongs to a different kind of operation
    """
    if (existing.type != txn_type or existing.category != category
            or existing.id.endswith(DERIVED_ENTRY_SUFFIXES)):
        raise ValidationError(KEY_REUSED_MESSAGE)
    return existing


def replay_loan(account: Account, existing: Transaction) -> Loan:
    """Return the loan whose disbursement carries the reused key"""
    loan = find_loan_for_transaction(account, existing)
    if loan is None:
        raise ValidationError(KEY_REUSED_MESSAGE)
    return loan


def check_transfer_replay(debit: Transaction) -> None:
    if (debit.type != TransactionType.EXPENSE or debit.category != TransactionCategory.TRANSFER
            or not debit.recipient or not debit.id.endswith("_out")):
        raise ValidationError(KEY_REUSED_MESSAGE)


def replay_transfer(sender: Account, recipient: Optional[Account], debit: Transaction) -> TransferResult:
    """Rebuild the result of a transfer that was already committed"""
    transfer_id = debit.id[:-len("_out")] if debit.id.endswith("_out") else debit.id
    credit = None
    if recipient is not None:
        credit = next((t for t in recipient.transactions if t.id == f"{transfer_id}_in"), None)
    return TransferResult(
        transfer_id=transfer_id,
        debit=debit,
        credit=credit,
        sender_balance=sender.balance,
        recipient_account_number=debit.recipient,
    )


class LedgerEngine:
    """
    Synchronous ledger over an ``AccountRepository``.

    Operations on one account are serialized by a per-account lock, and each
    commit is checked against the account's version stamp, so a stale write
    fails with ``ConcurrencyError`` instead of silently losing an update.
    """

    def __init__(
        self,
        repository: AccountRepository,
        config: Optional[FastPayConfig] = None,
        clock: Optional[Clock] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        converter: Optional[CurrencyConverter] = None
    ):
        self.repository = repository
        self.config = config or get_config()
        self.clock = clock or utc_now
        self.event_dispatcher = event_dispatcher
        self.converter = converter or CurrencyConverter()
        self.logger = get_logger("fastpay.ledger")
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.RLock:
        with self._locks_guard:
            if account_id not in self._locks:
                self._locks[account_id] = threading.RLock()
            return self._locks[account_id]

    def _publish(self, event) -> None:
        if self.event_dispatcher:
            self.event_dispatcher.publish(event)

    def _commit(self, *accounts: Account) -> List[Account]:
        return self.repository.save(list(accounts))

    # Accounts

    def open_account(
        self,
        name: str,
        opening_balance: Optional[AmountLike] = None,
        currency: Union[str, Currency] = None,
        owner_id: Optional[str] = None,
        display_currency: Optional[Union[str, Currency]] = None,
        account_id: Optional[str] = None,
        account_number: Optional[str] = None,
        opening_description: str = "Initial balance"
    ) -> Account:
        """
        Open a new account with a unique 10-digit number.

        An opening balance is posted as an ``income`` transaction so the
        balance always matches the log.
        """
        if not name or not name.strip():
            raise ValidationError("Account name is required")
        currency = Currency.from_code(currency or self.config.base_currency)
        now = self.clock()

        if account_number is None:
            account_number = self._unique_account_number()
        elif not is_valid_account_number(account_number):
            raise ValidationError("Account number must be exactly 10 digits")

        account = Account(
            id=account_id or generate_account_id(),
            account_number=account_number,
            name=name.strip(),
            currency=currency,
            owner_id=owner_id,
            display_currency=Currency.from_code(display_currency) if display_currency else None,
            created_at=now,
            updated_at=now,
        )
        if opening_balance is not None:
            account, _ = post_credit(account, opening_balance, opening_description, now)

        self.repository.add(account)
        log_action(self.logger, "info", "Account opened", account_id=account.id,
                   action="open_account", extra={"account_number": account.account_number})
        self._publish(create_account_event(DomainEvent.ACCOUNT_CREATED, account))
        return account

    def open_guest_account(self, display_currency: Optional[Union[str, Currency]] = None) -> Account:
        """Create the demo account, or return it if it already exists"""
        with self._lock_for(GUEST_ACCOUNT_ID):
            existing = self.repository.get(GUEST_ACCOUNT_ID)
            if existing is not None:
                return existing
            return self.open_account(
                GUEST_ACCOUNT_NAME,
                opening_balance=self.config.guest_opening_balance,
                currency=Currency.USD,
                display_currency=display_currency,
                account_id=GUEST_ACCOUNT_ID,
                account_number=GUEST_ACCOUNT_NUMBER,
                opening_description="Initial demo balance",
            )

    def _unique_account_number(self) -> str:
        for _ in range(ACCOUNT_NUMBER_ATTEMPTS):
            candidate = generate_account_number()
            if not self.repository.number_exists(candidate):
                return candidate
        raise PolicyLimitError("Could not allocate a unique account number")

    def get_account(self, account_id: str) -> Account:
        account = self.repository.get(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def get_account_by_number(self, account_number: str) -> Account:
        if not is_valid_account_number(account_number):
            raise ValidationError("Account number must be exactly 10 digits")
        account = self.repository.get_by_number(account_number)
        if account is None:
            raise NotFoundError("Recipient account not found")
        return account

    def set_display_currency(self, account_id: str, currency: Union[str, Currency]) -> Account:
        """Change the display currency; balances stay in the base currency"""
        display = Currency.from_code(currency)
        with self._lock_for(account_id):
            account = self.get_account(account_id)
            updated = account.copy()
            updated.display_currency = display
            updated.updated_at = self.clock()
            committed, = self._commit(updated)
        self._publish(create_account_event(DomainEvent.ACCOUNT_UPDATED, committed,
                                           display_currency=display.code))
        return committed

    # Mutations

    def deposit(
        self,
        account_id: str,
        amount: AmountLike,
        description: str,
        category: TransactionCategory = TransactionCategory.OTHER,
        recipient: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Transaction:
        """Credit the account with an ``income`` transaction"""
        with self._lock_for(account_id):
            account = self.get_account(account_id)
            existing = account.find_transaction_by_key(idempotency_key)
            if existing is not None:
                return replay_posting(existing, TransactionType.INCOME, category)

            updated, txn = post_credit(
                account, amount, description, self.clock(),
                category=category, recipient=recipient, idempotency_key=idempotency_key
            )
            committed, = self._commit(updated)

        log_action(self.logger, "info", "Deposit posted", account_id=account_id,
                   action="deposit", resource=txn.id,
                   extra={"amount": str(txn.amount), "category": txn.category.value})
        self._publish(create_transaction_event(committed, txn))
        return txn

    def withdraw(
        self,
        account_id: str,
        amount: AmountLike,
        description: str,
        category: TransactionCategory = TransactionCategory.OTHER,
        recipient: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Transaction:
        """
        Debit the account with an ``expense`` transaction.

        Raises:
            InsufficientFundsError: If the amount exceeds the balance and
                overdraft is not allowed
        """
        with self._lock_for(account_id):
            account = self.get_account(account_id)
            existing = account.find_transaction_by_key(idempotency_key)
            if existing is not None:
                return replay_posting(existing, TransactionType.EXPENSE, category)

            try:
                updated, txn = post_debit(
                    account, amount, description, self.clock(),
                    category=category, recipient=recipient, idempotency_key=idempotency_key,
                    allow_overdraft=self.config.allow_overdraft
                )
            except InsufficientFundsError:
                log_action(self.logger, "warning", "Withdrawal rejected: insufficient funds",
                           account_id=account_id, action="withdraw",
                           extra={"amount": str(amount)})
                raise
            committed, = self._commit(updated)

        log_action(self.logger, "info", "Withdrawal posted", account_id=account_id,
                   action="withdraw", resource=txn.id,
                   extra={"amount": str(txn.amount), "category": txn.category.value})
        self._publish(create_transaction_event(committed, txn))
        return txn

    def pay(
        self,
        account_id: str,
        amount: AmountLike,
        description: str,
        category: TransactionCategory,
        recipient: Optional[str] = None,
        cashback_rate: Decimal = Decimal('0'),
        cashback_description: str = "",
        idempotency_key: Optional[str] = None
    ) -> PaymentPosting:
        """
        Debit a payment and credit its cashback in one commit.

        The cashback is ``amount * cashback_rate`` rounded to the minor unit
        and is skipped when it rounds to zero.
        """
        with self._lock_for(account_id):
            account = self.get_account(account_id)
            existing = account.find_transaction_by_key(idempotency_key)
            if existing is not None:
                debit = replay_posting(existing, TransactionType.EXPENSE, category)
                cashback = next((t for t in account.transactions if t.id == f"{debit.id}_cashback"), None)
                return PaymentPosting(debit, cashback, account.balance)

            now = self.clock()
            updated, debit = post_debit(
                account, amount, description, now,
                category=category, recipient=recipient, idempotency_key=idempotency_key,
                allow_overdraft=self.config.allow_overdraft
            )
            cashback = None
            cashback_amount = (debit.amount * cashback_rate).quantize(account.currency.quantum, rounding=ROUND_HALF_UP)
            if cashback_amount > Decimal('0'):
                updated, cashback = post_credit(
                    updated, cashback_amount, cashback_description, now,
                    transaction_id=f"{debit.id}_cashback"
                )
            committed, = self._commit(updated)

        log_action(self.logger, "info", "Payment posted", account_id=account_id,
                   action="pay", resource=debit.id,
                   extra={"amount": str(debit.amount), "category": debit.category.value,
                          "cashback": str(cashback.amount) if cashback else "0"})
        self._publish(create_transaction_event(committed, debit))
        if cashback:
            self._publish(create_transaction_event(committed, cashback))
        return PaymentPosting(debit, cashback, committed.balance)

    def transfer(
        self,
        sender_account_id: str,
        recipient_account_number: str,
        amount: AmountLike,
        description: str = "",
        idempotency_key: Optional[str] = None
    ) -> TransferResult:
        """
        Move funds to another account by account number.

        Both legs are committed in one repository transaction: either the
        sender is debited and the recipient credited, or nothing changes.
        """
        # Checks without locks, in the order errors are reported
        sender = self.get_account(sender_account_id)
        existing = sender.find_transaction_by_key(idempotency_key)
        if existing is not None:
            return self._replay_transfer(sender, existing)
        check_transfer(sender, recipient_account_number, amount, self.config.allow_overdraft)
        recipient_id = self.get_account_by_number(recipient_account_number).id

        first, second = sorted([sender_account_id, recipient_id])
        with self._lock_for(first), self._lock_for(second):
            # Re-read under both locks; balances may have moved meanwhile
            sender = self.get_account(sender_account_id)
            existing = sender.find_transaction_by_key(idempotency_key)
            if existing is not None:
                return self._replay_transfer(sender, existing)
            recipient = self.get_account(recipient_id)

            new_sender, new_recipient, result = build_transfer(
                sender, recipient, amount, description, self.clock(),
                idempotency_key=idempotency_key,
                allow_overdraft=self.config.allow_overdraft
            )
            committed_sender, committed_recipient = self._commit(new_sender, new_recipient)

        log_action(self.logger, "info", "Transfer completed", account_id=sender_account_id,
                   action="transfer", resource=result.transfer_id,
                   extra={"amount": str(result.debit.amount),
                          "recipient_account_number": recipient_account_number})
        self._publish(create_transaction_event(committed_sender, result.debit))
        self._publish(create_transaction_event(committed_recipient, result.credit))
        self._publish(create_transaction_event(committed_sender, result.debit, DomainEvent.TRANSFER_COMPLETED))
        return result

    def _replay_transfer(self, sender: Account, debit: Transaction) -> TransferResult:
        check_transfer_replay(debit)
        return replay_transfer(sender, self.repository.get_by_number(debit.recipient), debit)

    def request_loan(
        self,
        account_id: str,
        amount: AmountLike,
        term_months: int,
        idempotency_key: Optional[str] = None
    ) -> Loan:
        """
        Originate a loan and credit its principal to the account.

        Raises:
            ValidationError: Amount outside the allowed range or bad term
            PolicyLimitError: The account already has the maximum active loans
        """
        with self._lock_for(account_id):
            account = self.get_account(account_id)
            existing = account.find_transaction_by_key(idempotency_key)
            if existing is not None:
                return replay_loan(account, existing)

            try:
                updated, loan, txn = build_loan(
                    account, amount, term_months, self.clock(), self.config,
                    idempotency_key=idempotency_key
                )
            except PolicyLimitError:
                log_action(self.logger, "warning", "Loan rejected: active loan limit reached",
                           account_id=account_id, action="request_loan")
                raise
            committed, = self._commit(updated)

        log_action(self.logger, "info", "Loan disbursed", account_id=account_id,
                   action="request_loan", resource=loan.id,
                   extra={"amount": str(loan.amount), "term_months": loan.term_months,
                          "monthly_payment": str(loan.monthly_payment)})
        self._publish(create_transaction_event(committed, txn))
        self._publish(create_loan_event(committed, loan))
        return loan

    # Read projections

    def list_transactions(self, account_id: str, limit: Optional[int] = None) -> List[Transaction]:
        """Transactions newest first, at most ``limit``"""
        return recent_transactions(self.get_account(account_id).transactions, limit)

    def list_loans(self, account_id: str, active_only: bool = False) -> List[Loan]:
        account = self.get_account(account_id)
        return account.active_loans if active_only else list(account.loans)

    def summarize(self, account_id: str, since: datetime, until: Optional[datetime] = None) -> LedgerSummary:
        return summarize(self.get_account(account_id).transactions, since, until or self.clock())

    def filter_transactions(self, account_id: str, criteria: TransactionFilter) -> List[Transaction]:
        return filter_transactions(self.get_account(account_id).transactions, criteria, self.clock())

    def overview(self, account_id: str, display_currency: Optional[Union[str, Currency]] = None) -> AccountOverview:
        display = Currency.from_code(display_currency) if display_currency else None
        return account_overview(self.get_account(account_id), self.clock(), self.converter, display)
