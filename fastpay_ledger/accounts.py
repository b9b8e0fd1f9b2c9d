"""
Account Management Module

Defines the ledger account (balance, transaction log and loans) and the
repository that persists accounts as versioned JSON records on a key-value
store. Commits are atomic across every account they touch and are guarded by
an optimistic version stamp.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence
import json
import logging
import secrets
import uuid

from .currency import Currency
from .errors import ConcurrencyError, PersistenceError, RecordSchemaError, ValidationError
from .loans import Loan
from .migrations import CURRENT_SCHEMA_VERSION, RecordMigrator
from .storage import KeyValueStore
from .transactions import Transaction, format_timestamp, parse_timestamp

logger = logging.getLogger("fastpay.accounts")

ACCOUNT_NUMBER_LENGTH = 10
ACCOUNT_NUMBER_PREFIX = "2647"

GUEST_ACCOUNT_ID = "guest_account"
GUEST_ACCOUNT_NUMBER = "2647634099"
GUEST_ACCOUNT_NAME = "Demo User"
GUEST_ACCOUNT_KEY = "guestAccount"

ACCOUNT_KEY_PREFIX = "account:"
ACCOUNT_NUMBER_KEY_PREFIX = "account-number:"
ACCOUNT_OWNER_KEY_PREFIX = "account-owner:"


def is_valid_account_number(account_number: Any) -> bool:
    return (
        isinstance(account_number, str)
        and len(account_number) == ACCOUNT_NUMBER_LENGTH
        and account_number.isdigit()
        and account_number.isascii()
    )


def generate_account_number() -> str:
    """Random 10-digit account number in the FastPay range"""
    suffix_length = ACCOUNT_NUMBER_LENGTH - len(ACCOUNT_NUMBER_PREFIX)
    suffix = "".join(str(secrets.randbelow(10)) for _ in range(suffix_length))
    return ACCOUNT_NUMBER_PREFIX + suffix


def generate_account_id() -> str:
    return f"acct_{uuid.uuid4().hex[:16]}"


def normalize_guest_record(record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Pin the record held in the guest slot to the demo account identity.

    Older browser builds stored the guest as ``guest-<timestamp>`` with a
    15-digit number; the slot is addressed by ``GUEST_ACCOUNT_ID`` and only
    10-digit numbers can receive transfers.
    """
    normalized = dict(record)
    normalized["id"] = GUEST_ACCOUNT_ID
    if not is_valid_account_number(normalized.get("account_number")):
        normalized["account_number"] = GUEST_ACCOUNT_NUMBER
    return normalized


@dataclass(frozen=True)
class AccountProfile:
    """Details supplied when a signed-in user's account is created"""
    name: str
    phone: Optional[str] = None
    currency: str = "USD"
    display_currency: Optional[str] = None


@dataclass
class Account:
    """
    A single ledger account.

    ``balance`` is kept in ``currency`` (the base currency) and always equals
    the signed sum of ``transactions``. ``version`` counts committed
    mutations and is checked on every save.
    """
    id: str
    account_number: str
    name: str
    balance: Decimal = Decimal('0.00')
    currency: Currency = Currency.USD
    transactions: List[Transaction] = field(default_factory=list)
    loans: List[Loan] = field(default_factory=list)
    owner_id: Optional[str] = None
    display_currency: Optional[Currency] = None
    version: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if not isinstance(self.balance, Decimal):
            self.balance = Decimal(str(self.balance))

    @property
    def active_loans(self) -> List[Loan]:
        return [loan for loan in self.loans if loan.is_active]

    @property
    def is_guest(self) -> bool:
        return self.id == GUEST_ACCOUNT_ID

    @property
    def ledger_balance(self) -> Decimal:
        """Balance recomputed from the transaction log"""
        return sum((txn.signed_amount for txn in self.transactions), Decimal('0'))

    def find_transaction_by_key(self, idempotency_key: Optional[str]) -> Optional[Transaction]:
        if not idempotency_key:
            return None
        for txn in self.transactions:
            if txn.idempotency_key == idempotency_key:
                return txn
        return None

    def copy(self) -> 'Account':
        """Shallow copy whose lists can be extended without touching the original"""
        return replace(self, transactions=list(self.transactions), loans=list(self.loans))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": CURRENT_SCHEMA_VERSION,
            "id": self.id,
            "account_number": self.account_number,
            "name": self.name,
            "balance": str(self.balance),
            "currency": self.currency.code,
            "display_currency": self.display_currency.code if self.display_currency else None,
            "owner_id": self.owner_id,
            "version": self.version,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "transactions": [txn.to_dict() for txn in self.transactions],
            "loans": [loan.to_dict() for loan in self.loans],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        """Build an account from a current-schema record"""
        try:
            display = data.get("display_currency")
            return cls(
                id=data["id"],
                account_number=data["account_number"],
                name=data.get("name", ""),
                balance=Decimal(str(data["balance"])),
                currency=Currency.from_code(data.get("currency") or "USD"),
                transactions=[Transaction.from_dict(t) for t in data.get("transactions", [])],
                loans=[Loan.from_dict(l) for l in data.get("loans", [])],
                owner_id=data.get("owner_id"),
                display_currency=Currency.from_code(display) if display else None,
                version=int(data.get("version", 0)),
                created_at=parse_timestamp(data["created_at"]),
                updated_at=parse_timestamp(data.get("updated_at") or data["created_at"]),
            )
        except (KeyError, ValueError, ArithmeticError) as e:
            raise RecordSchemaError(f"Malformed account record: {e}") from e


class AccountRepository(ABC):
    """Abstract persistence for ledger accounts"""

    @abstractmethod
    def get(self, account_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    def get_by_number(self, account_number: str) -> Optional[Account]:
        pass

    @abstractmethod
    def add(self, account: Account) -> Account:
        """Store a new account. Fails if the id or number is taken."""
        pass

    @abstractmethod
    def save(self, accounts: Sequence[Account]) -> List[Account]:
        """
        Commit updated accounts atomically.

        Each account's ``version`` must equal the stored version; the stored
        copies get ``version + 1``. Either every account is written or none.
        """
        pass

    @abstractmethod
    def list_accounts(self) -> List[Account]:
        pass

    def get_by_owner(self, owner_id: str) -> Optional[Account]:
        for account in self.list_accounts():
            if account.owner_id == owner_id:
                return account
        return None

    def number_exists(self, account_number: str) -> bool:
        return self.get_by_number(account_number) is not None


class KeyValueAccountRepository(AccountRepository):
    """Accounts stored as JSON records on a ``KeyValueStore``"""

    def __init__(self, store: KeyValueStore, migrator: Optional[RecordMigrator] = None):
        self.store = store
        self.migrator = migrator or RecordMigrator()

    @staticmethod
    def account_key(account_id: str) -> str:
        if account_id == GUEST_ACCOUNT_ID:
            return GUEST_ACCOUNT_KEY
        return ACCOUNT_KEY_PREFIX + account_id

    @staticmethod
    def number_key(account_number: str) -> str:
        return ACCOUNT_NUMBER_KEY_PREFIX + account_number

    @staticmethod
    def owner_key(owner_id: str) -> str:
        return ACCOUNT_OWNER_KEY_PREFIX + owner_id

    def _upgrade(self, raw: str, key: str) -> Dict[str, Any]:
        try:
            record = json.loads(raw)
        except ValueError as e:
            raise RecordSchemaError(f"Account record is not valid JSON: {e}") from e
        record = self.migrator.upgrade(record)
        if key == GUEST_ACCOUNT_KEY:
            record = normalize_guest_record(record)
        return record

    def _decode(self, raw: str, key: str) -> Account:
        return Account.from_dict(self._upgrade(raw, key))

    @staticmethod
    def _encode(account: Account) -> str:
        return json.dumps(account.to_dict())

    def get(self, account_id: str) -> Optional[Account]:
        key = self.account_key(account_id)
        raw = self.store.get(key)
        if raw is None:
            return None
        return self._decode(raw, key)

    def get_by_number(self, account_number: str) -> Optional[Account]:
        account_id = self.store.get(self.number_key(account_number))
        if account_id is None:
            return None
        return self.get(account_id)

    def get_by_owner(self, owner_id: str) -> Optional[Account]:
        account_id = self.store.get(self.owner_key(owner_id))
        if account_id is None:
            return None
        return self.get(account_id)

    def add(self, account: Account) -> Account:
        with self.store.atomic():
            if self.store.get(self.account_key(account.id)) is not None:
                raise ValidationError(f"Account {account.id} already exists")
            if self.store.get(self.number_key(account.account_number)) is not None:
                raise ValidationError(f"Account number {account.account_number} is already in use")
            if account.owner_id and self.store.get(self.owner_key(account.owner_id)) is not None:
                raise ValidationError(f"User {account.owner_id} already has an account")
            self.store.set(self.account_key(account.id), self._encode(account))
            self.store.set(self.number_key(account.account_number), account.id)
            if account.owner_id:
                self.store.set(self.owner_key(account.owner_id), account.id)
        return account

    def save(self, accounts: Sequence[Account]) -> List[Account]:
        committed = []
        with self.store.atomic():
            for account in accounts:
                key = self.account_key(account.id)
                raw = self.store.get(key)
                if raw is None:
                    raise PersistenceError(f"Account {account.id} no longer exists")
                stored = self._decode(raw, key)
                if stored.version != account.version:
                    raise ConcurrencyError(
                        f"Account {account.id} is at version {stored.version}, "
                        f"update was based on version {account.version}"
                    )
                updated = replace(account, version=account.version + 1)
                self.store.set(key, self._encode(updated))
                committed.append(updated)
        return committed

    def list_accounts(self) -> List[Account]:
        accounts = []
        if self.store.get(GUEST_ACCOUNT_KEY) is not None:
            accounts.append(self.get(GUEST_ACCOUNT_ID))
        for key in self.store.keys(ACCOUNT_KEY_PREFIX):
            accounts.append(self._decode(self.store.get(key), key))
        return accounts

    def migrate(self) -> List[str]:
        """Rewrite every stored account in the current schema"""
        keys = list(self.store.keys(ACCOUNT_KEY_PREFIX))
        if self.store.get(GUEST_ACCOUNT_KEY) is not None:
            keys.insert(0, GUEST_ACCOUNT_KEY)
        upgraded = self.migrator.migrate_store(self.store, keys, json.loads, json.dumps)

        # Legacy records predate the lookup indexes and the fixed guest identity
        indexed = 0
        with self.store.atomic():
            for key in keys:
                raw = self.store.get(key)
                record = self._upgrade(raw, key)
                if record != json.loads(raw):
                    self.store.set(key, json.dumps(record))
                    if key not in upgraded:
                        upgraded.append(key)
                account = Account.from_dict(record)
                if self.store.get(self.number_key(account.account_number)) is None:
                    self.store.set(self.number_key(account.account_number), account.id)
                    indexed += 1
                if account.owner_id and self.store.get(self.owner_key(account.owner_id)) is None:
                    self.store.set(self.owner_key(account.owner_id), account.id)
        if indexed:
            logger.info(f"Indexed {indexed} account numbers")
        return upgraded
