"""
Test suite for record migrations

Tests upgrading legacy browser records and rejecting unknown schemas.
"""

import json
import pytest
from decimal import Decimal

from fastpay_ledger.errors import RecordSchemaError
from fastpay_ledger.migrations import (
    CURRENT_SCHEMA_VERSION, Migration, RecordMigrator, upgrade_v1_to_v2
)
from fastpay_ledger.storage import InMemoryKeyValueStore


def legacy_guest_record():
    return {
        "id": "guest_account",
        "accountNumber": "2647634099",
        "name": "Demo User",
        "balance": 1000.0,
        "currency": "USD",
        "createdAt": "2024-01-01T00:00:00.000Z",
        "transactions": [
            {
                "id": "txn_1",
                "type": "income",
                "amount": 1000.0,
                "description": "Initial demo balance",
                "date": "2024-01-01T00:00:00.000Z",
                "status": "completed",
            },
            {
                "id": "txn_2",
                "type": "transfer",
                "amount": 50,
                "description": "Old transfer",
                "date": "2024-01-02T00:00:00.000Z",
            },
        ],
        "loans": [
            {
                "id": "loan_1",
                "amount": 500,
                "interestRate": 15,
                "termMonths": 12,
                "monthlyPayment": 45.13,
                "status": "active",
                "disbursedAt": "2024-01-03T00:00:00.000Z",
            }
        ],
    }


class TestRecordMigrator:
    """Test the migration chain"""

    def setup_method(self):
        self.migrator = RecordMigrator()

    def test_current_version(self):
        """Test the default chain ends at the current schema"""
        assert self.migrator.current_version == CURRENT_SCHEMA_VERSION
        assert self.migrator.get_migration_status()["current_version"] == CURRENT_SCHEMA_VERSION

    def test_untagged_record_is_version_zero(self):
        """Test legacy records carry no schema_version"""
        assert self.migrator.detect_version(legacy_guest_record()) == 0
        assert self.migrator.needs_upgrade(legacy_guest_record())
        assert len(self.migrator.get_pending_migrations(legacy_guest_record())) == 2

    def test_upgrade_legacy_record(self):
        """Test camelCase keys, float amounts and percentage rates are normalized"""
        record = self.migrator.upgrade(legacy_guest_record())

        assert record["schema_version"] == CURRENT_SCHEMA_VERSION
        assert record["account_number"] == "2647634099"
        assert Decimal(record["balance"]) == Decimal('1000')
        assert record["version"] == 0
        assert record["owner_id"] is None

        txn = record["transactions"][0]
        assert txn["category"] == "other"
        assert record["transactions"][1]["category"] == "transfer"

        loan = record["loans"][0]
        assert Decimal(loan["interest_rate"]) == Decimal('0.15')
        assert loan["term_months"] == 12
        assert loan["created_at"] == "2024-01-03T00:00:00.000Z"
        assert loan["due_date"].startswith("2024-12-28")

    def test_upgrade_does_not_mutate_input(self):
        """Test the caller's record is left alone"""
        original = legacy_guest_record()
        self.migrator.upgrade(original)
        assert original == legacy_guest_record()

    def test_current_record_unchanged(self):
        """Test that an up-to-date record passes through"""
        record = self.migrator.upgrade(legacy_guest_record())
        assert self.migrator.upgrade(record) == record
        assert not self.migrator.needs_upgrade(record)

    def test_newer_schema_rejected(self):
        """Test records written by newer code"""
        with pytest.raises(RecordSchemaError, match="newer than supported"):
            self.migrator.upgrade({"schema_version": 99, "id": "a"})

    def test_invalid_schema_version(self):
        """Test a non-integer version tag"""
        with pytest.raises(RecordSchemaError, match="Invalid schema_version"):
            self.migrator.upgrade({"schema_version": "2", "id": "a"})

    def test_missing_balance(self):
        """Test that an identifying field is required"""
        record = legacy_guest_record()
        del record["balance"]
        with pytest.raises(RecordSchemaError, match="missing balance"):
            self.migrator.upgrade(record)

    def test_non_numeric_amount(self):
        """Test unparseable legacy amounts"""
        record = legacy_guest_record()
        record["balance"] = "lots"
        with pytest.raises(RecordSchemaError, match="not a number"):
            self.migrator.upgrade(record)

    def test_not_a_mapping(self):
        """Test a record that is not a JSON object"""
        with pytest.raises(RecordSchemaError, match="JSON object"):
            self.migrator.upgrade(["guest_account"])

    def test_duplicate_migration_version(self):
        """Test that versions are unique in the chain"""
        with pytest.raises(ValueError, match="already exists"):
            self.migrator.add_migration(Migration(2, "Again", upgrade_v1_to_v2))


class TestMigrateStore:
    """Test rewriting a whole store"""

    def test_rewrites_outdated_records(self):
        """Test that only outdated records are rewritten"""
        store = InMemoryKeyValueStore()
        migrator = RecordMigrator()
        current = migrator.upgrade(legacy_guest_record())
        current["id"] = "acct_current"
        store.set("guestAccount", json.dumps(legacy_guest_record()))
        store.set("account:acct_current", json.dumps(current))

        upgraded = migrator.migrate_store(
            store, ["guestAccount", "account:acct_current", "account:gone"], json.loads, json.dumps
        )

        assert upgraded == ["guestAccount"]
        assert json.loads(store.get("guestAccount"))["schema_version"] == CURRENT_SCHEMA_VERSION

    def test_failure_leaves_store_untouched(self):
        """Test that one bad record aborts the whole rewrite"""
        store = InMemoryKeyValueStore()
        broken = legacy_guest_record()
        broken["id"] = "acct_broken"
        del broken["balance"]
        store.set("guestAccount", json.dumps(legacy_guest_record()))
        store.set("account:acct_broken", json.dumps(broken))

        with pytest.raises(RecordSchemaError):
            RecordMigrator().migrate_store(
                store, ["guestAccount", "account:acct_broken"], json.loads, json.dumps
            )

        assert "schema_version" not in json.loads(store.get("guestAccount"))
