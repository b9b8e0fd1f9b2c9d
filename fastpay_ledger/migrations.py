"""
Record Migration System

Persisted accounts are JSON documents tagged with ``schema_version``. Older
records are upgraded step by step when they are loaded, and
``RecordMigrator.migrate_store`` can rewrite a whole store in place.

Versions:
    0  untagged legacy browser record (camelCase keys, float amounts)
    1  snake_case keys, Decimal strings, every field present
    2  adds the ``version`` concurrency stamp and ``owner_id``
"""

from typing import Any, Callable, Dict, List, Optional
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
import copy
import logging

from .errors import RecordSchemaError
from .storage import KeyValueStore

logger = logging.getLogger("fastpay.migrations")

CURRENT_SCHEMA_VERSION = 2
REQUIRED_FIELDS = ("id", "account_number", "balance")

Record = Dict[str, Any]


class Migration:
    """Represents a single record upgrade to ``version``"""

    def __init__(self, version: int, name: str, upgrade: Callable[[Record], Record]):
        self.version = version
        self.name = name
        self.upgrade = upgrade

    def __str__(self) -> str:
        return f"Migration v{self.version:03d}: {self.name}"

    def __repr__(self) -> str:
        return f"Migration(version={self.version}, name='{self.name}')"


def _decimal_string(value: Any, field_name: str) -> str:
    try:
        # str() first so floats keep their shortest repr (1000.0 -> "1000.0")
        return str(Decimal(str(value)))
    except (InvalidOperation, TypeError, ValueError):
        raise RecordSchemaError(f"Field '{field_name}' is not a number: {value!r}")


def _legacy_transaction(txn: Record) -> Record:
    txn_type = txn.get("type", "income")
    category = txn.get("category") or ("transfer" if txn_type == "transfer" else "other")
    upgraded = {
        "id": txn.get("id"),
        "type": txn_type,
        "category": category,
        "amount": _decimal_string(abs(Decimal(str(txn.get("amount", 0)))), "amount"),
        "description": txn.get("description", ""),
        "date": txn.get("date") or txn.get("created_at"),
        "status": txn.get("status", "completed"),
    }
    if txn.get("recipient"):
        upgraded["recipient"] = txn["recipient"]
    return upgraded


def _legacy_loan(loan: Record, fallback_created_at: str) -> Record:
    term_months = int(loan.get("term_months", loan.get("termMonths", 0)))
    if "interest_rate" in loan:
        rate = Decimal(str(loan["interest_rate"]))
    else:
        # Guest-mode loans stored a percentage (5.5 meaning 5.5%)
        rate = Decimal(str(loan.get("interestRate", 0))) / Decimal('100')

    created_at = loan.get("created_at") or loan.get("disbursedAt") or fallback_created_at
    due_date = loan.get("due_date")
    if not due_date:
        start = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
        due_date = (start + timedelta(days=term_months * 30)).isoformat()

    amount = loan.get("amount", 0)
    return {
        "id": loan.get("id"),
        "amount": _decimal_string(amount, "amount"),
        "interest_rate": str(rate),
        "term_months": term_months,
        "monthly_payment": _decimal_string(loan.get("monthly_payment", loan.get("monthlyPayment", 0)), "monthly_payment"),
        "remaining_balance": _decimal_string(loan.get("remaining_balance", amount), "remaining_balance"),
        "status": loan.get("status", "active"),
        "created_at": created_at,
        "due_date": due_date,
    }


def upgrade_v0_to_v1(record: Record) -> Record:
    """Legacy camelCase browser record to snake_case"""
    now = datetime.now(timezone.utc).isoformat()
    created_at = record.get("created_at") or record.get("createdAt") or now

    return {
        "schema_version": 1,
        "id": record.get("id"),
        "account_number": record.get("account_number", record.get("accountNumber")),
        "name": record.get("name", ""),
        "balance": None if record.get("balance") is None else _decimal_string(record["balance"], "balance"),
        "currency": record.get("currency", "USD"),
        "display_currency": record.get("display_currency", record.get("displayCurrency")),
        "created_at": created_at,
        "updated_at": record.get("updated_at") or record.get("updatedAt") or created_at,
        "transactions": [_legacy_transaction(t) for t in record.get("transactions") or []],
        "loans": [_legacy_loan(l, created_at) for l in record.get("loans") or []],
    }


def upgrade_v1_to_v2(record: Record) -> Record:
    """Add the concurrency stamp and remote owner"""
    upgraded = dict(record)
    upgraded["schema_version"] = 2
    upgraded.setdefault("version", 0)
    upgraded.setdefault("owner_id", None)
    return upgraded


class RecordMigrator:
    """Upgrades account records to the current schema version"""

    def __init__(self, migrations: Optional[List[Migration]] = None):
        self.migrations: List[Migration] = []
        for migration in migrations or DEFAULT_MIGRATIONS:
            self.add_migration(migration)

    def add_migration(self, migration: Migration) -> None:
        """Add a migration to the chain"""
        if any(m.version == migration.version for m in self.migrations):
            raise ValueError(f"Migration version {migration.version} already exists")
        self.migrations.append(migration)
        self.migrations.sort(key=lambda m: m.version)

    @property
    def current_version(self) -> int:
        return self.migrations[-1].version if self.migrations else 0

    def detect_version(self, record: Record) -> int:
        version = record.get("schema_version", 0)
        if not isinstance(version, int) or isinstance(version, bool) or version < 0:
            raise RecordSchemaError(f"Invalid schema_version: {version!r}")
        if version > self.current_version:
            raise RecordSchemaError(
                f"Record schema v{version} is newer than supported v{self.current_version}"
            )
        return version

    def get_pending_migrations(self, record: Record) -> List[Migration]:
        version = self.detect_version(record)
        return [m for m in self.migrations if m.version > version]

    def upgrade(self, record: Any) -> Record:
        """
        Bring a record to the current schema version.

        Raises:
            RecordSchemaError: If the record is not a mapping, is newer than
                this code, or lacks an identifying field
        """
        if not isinstance(record, dict):
            raise RecordSchemaError("Account record must be a JSON object")

        upgraded = copy.deepcopy(record)
        for migration in self.get_pending_migrations(upgraded):
            try:
                upgraded = migration.upgrade(upgraded)
            except RecordSchemaError:
                raise
            except (KeyError, TypeError, ValueError, ArithmeticError) as e:
                raise RecordSchemaError(f"{migration} failed: {e}") from e
            logger.debug(f"Applied {migration} to account {upgraded.get('id')}")

        missing = [name for name in REQUIRED_FIELDS if upgraded.get(name) in (None, "")]
        if missing:
            raise RecordSchemaError(f"Account record is missing {', '.join(missing)}")
        return upgraded

    def needs_upgrade(self, record: Record) -> bool:
        return self.detect_version(record) < self.current_version

    def migrate_store(self, store: KeyValueStore, keys: List[str], load: Callable[[str], Any],
                      dump: Callable[[Any], str]) -> List[str]:
        """
        Rewrite every outdated record under ``keys`` in one transaction.

        Returns:
            Keys that were upgraded
        """
        upgraded_keys = []
        with store.atomic():
            for key in keys:
                raw = store.get(key)
                if raw is None:
                    continue
                record = load(raw)
                if self.needs_upgrade(record):
                    store.set(key, dump(self.upgrade(record)))
                    upgraded_keys.append(key)

        if upgraded_keys:
            logger.info(f"Upgraded {len(upgraded_keys)} account records to v{self.current_version}")
        return upgraded_keys

    def get_migration_status(self) -> Dict[str, Any]:
        return {
            "current_version": self.current_version,
            "migrations": [
                {"version": m.version, "name": m.name} for m in self.migrations
            ],
        }


DEFAULT_MIGRATIONS = [
    Migration(1, "Normalize legacy browser record", upgrade_v0_to_v1),
    Migration(2, "Add version stamp and owner", upgrade_v1_to_v2),
]
