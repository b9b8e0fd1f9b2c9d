"""
Async Storage Backend Module

Account store for authenticated (remote) mode. Every method is awaited by
the caller; nothing mutates in the background. Implementations:

    AsyncInMemoryAccountStore    wraps the synchronous key-value repository
    AsyncPostgreSQLAccountStore  asyncpg, one JSONB document per account

Every commit is checked against the account's version stamp, and a transfer
writes both accounts inside one transaction.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple
from dataclasses import replace
from datetime import datetime, timezone
import asyncio
import json
import logging

from .accounts import (
    Account, AccountProfile, KeyValueAccountRepository,
    generate_account_id, generate_account_number
)
from .currency import Currency
from .errors import ConcurrencyError, NotFoundError, PersistenceError, ValidationError
from .events import DomainEvent, EventDispatcher, EventPayload, Subscription
from .migrations import RecordMigrator
from .storage import InMemoryKeyValueStore, KeyValueStore

logger = logging.getLogger("fastpay.async_storage")

ACCOUNT_NUMBER_ATTEMPTS = 20

ChangeHandler = Callable[[EventPayload], Any]


def new_account_from_profile(user_id: str, profile: AccountProfile, now: datetime) -> Account:
    """A zero-balance account owned by ``user_id``"""
    if not profile.name or not profile.name.strip():
        raise ValidationError("Account name is required")
    return Account(
        id=generate_account_id(),
        account_number=generate_account_number(),
        name=profile.name.strip(),
        currency=Currency.from_code(profile.currency),
        owner_id=user_id,
        display_currency=Currency.from_code(profile.display_currency) if profile.display_currency else None,
        created_at=now,
        updated_at=now,
    )


class RemoteAccountStore(ABC):
    """Abstract interface for async account stores"""

    def __init__(self):
        self.events = EventDispatcher()

    async def initialize(self) -> None:
        """Prepare connections and tables (default no-op)"""
        pass

    async def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass

    @abstractmethod
    async def get_account_by_user(self, user_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def get_account_by_number(self, account_number: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def create_account(self, user_id: str, profile: AccountProfile) -> Account:
        """Create a zero-balance account with a fresh unique account number"""
        pass

    @abstractmethod
    async def update_account(self, user_id: str, account: Account) -> Account:
        """
        Commit a new state for the user's account.

        ``account.version`` is the version the change was based on; a
        mismatch raises ``ConcurrencyError`` and nothing is written.
        """
        pass

    @abstractmethod
    async def commit_transfer(self, sender: Account, recipient: Account) -> Tuple[Account, Account]:
        """Commit both sides of a transfer in a single transaction"""
        pass

    def subscribe(self, user_id: str, on_change: ChangeHandler) -> Subscription:
        """Call ``on_change`` after each committed change to the user's account"""
        def owner_handler(event: EventPayload) -> None:
            if event.data.get('owner_id') == user_id:
                on_change(event)

        owner_handler.__name__ = f"on_change[{user_id}]"
        return self.events.subscribe_all(owner_handler)

    def _notify(self, event_type: DomainEvent, account: Account) -> None:
        self.events.publish(EventPayload(
            event_type=event_type,
            entity_type='account',
            entity_id=account.id,
            account_id=account.id,
            data={
                'owner_id': account.owner_id,
                'balance': str(account.balance),
                'version': account.version,
            }
        ))


class AsyncInMemoryAccountStore(RemoteAccountStore):
    """Async wrapper around the key-value account repository"""

    def __init__(self, store: Optional[KeyValueStore] = None):
        super().__init__()
        self._repository = KeyValueAccountRepository(store or InMemoryKeyValueStore())
        self._lock = asyncio.Lock()

    @property
    def repository(self) -> KeyValueAccountRepository:
        return self._repository

    async def get_account_by_user(self, user_id: str) -> Optional[Account]:
        async with self._lock:
            # Run sync operation in thread pool to avoid blocking
            return await asyncio.to_thread(self._repository.get_by_owner, user_id)

    async def get_account_by_number(self, account_number: str) -> Optional[Account]:
        async with self._lock:
            return await asyncio.to_thread(self._repository.get_by_number, account_number)

    async def create_account(self, user_id: str, profile: AccountProfile) -> Account:
        async with self._lock:
            if await asyncio.to_thread(self._repository.get_by_owner, user_id) is not None:
                raise ValidationError(f"User {user_id} already has an account")
            account = new_account_from_profile(user_id, profile, datetime.now(timezone.utc))
            for _ in range(ACCOUNT_NUMBER_ATTEMPTS):
                if not await asyncio.to_thread(self._repository.number_exists, account.account_number):
                    break
                account = replace(account, account_number=generate_account_number())
            else:
                raise PersistenceError("Could not allocate a unique account number")
            await asyncio.to_thread(self._repository.add, account)
        self._notify(DomainEvent.ACCOUNT_CREATED, account)
        return account

    async def update_account(self, user_id: str, account: Account) -> Account:
        if account.owner_id != user_id:
            raise NotFoundError(f"No account for user {user_id}")
        async with self._lock:
            committed, = await asyncio.to_thread(self._repository.save, [account])
        self._notify(DomainEvent.ACCOUNT_UPDATED, committed)
        return committed

    async def commit_transfer(self, sender: Account, recipient: Account) -> Tuple[Account, Account]:
        async with self._lock:
            committed_sender, committed_recipient = await asyncio.to_thread(
                self._repository.save, [sender, recipient]
            )
        self._notify(DomainEvent.ACCOUNT_UPDATED, committed_sender)
        self._notify(DomainEvent.ACCOUNT_UPDATED, committed_recipient)
        return committed_sender, committed_recipient

    async def close(self) -> None:
        await asyncio.to_thread(self._repository.store.close)


class AsyncPostgreSQLAccountStore(RemoteAccountStore):
    """True async PostgreSQL using asyncpg"""

    TABLE = "fastpay_accounts"

    def __init__(self, connection_string: str, pool_size: int = 10, migrator: Optional[RecordMigrator] = None):
        super().__init__()
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.migrator = migrator or RecordMigrator()
        self.pool = None
        self._asyncpg = None

    async def initialize(self) -> None:
        """Create connection pool and table, call on app startup"""
        try:
            import asyncpg
        except ImportError:
            raise ImportError("asyncpg is required for AsyncPostgreSQLAccountStore")
        self._asyncpg = asyncpg

        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=2,
                max_size=self.pool_size,
                command_timeout=60
            )
            async with self.pool.acquire() as conn:
                await conn.execute(f'''
                    CREATE TABLE IF NOT EXISTS {self.TABLE} (
                        id TEXT PRIMARY KEY,
                        owner_id TEXT UNIQUE,
                        account_number TEXT NOT NULL UNIQUE,
                        version INTEGER NOT NULL DEFAULT 0,
                        data JSONB NOT NULL,
                        created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
                        updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
                    )
                ''')
        except (asyncpg.PostgresError, OSError) as e:
            raise PersistenceError(f"Cannot connect to account database: {e}") from e

    async def close(self) -> None:
        """Close pool, call on app shutdown"""
        if self.pool:
            await self.pool.close()
            self.pool = None

    def _require_pool(self):
        if not self.pool:
            raise PersistenceError("Pool not initialized. Call initialize() first.")
        return self.pool

    def _driver_errors(self) -> tuple:
        return (self._asyncpg.PostgresError, self._asyncpg.InterfaceError, OSError)

    def _decode(self, row) -> Account:
        data = row['data']
        if isinstance(data, str):
            data = json.loads(data)
        account = Account.from_dict(self.migrator.upgrade(data))
        # The version column is authoritative
        return replace(account, version=row['version'])

    async def _fetch_one(self, where: str, value: str) -> Optional[Account]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    f'SELECT data, version FROM {self.TABLE} WHERE {where} = $1', value
                )
        except self._driver_errors() as e:
            raise PersistenceError(f"Account lookup failed: {e}") from e
        return self._decode(row) if row else None

    async def get_account_by_user(self, user_id: str) -> Optional[Account]:
        return await self._fetch_one('owner_id', user_id)

    async def get_account_by_number(self, account_number: str) -> Optional[Account]:
        return await self._fetch_one('account_number', account_number)

    async def create_account(self, user_id: str, profile: AccountProfile) -> Account:
        pool = self._require_pool()
        account = new_account_from_profile(user_id, profile, datetime.now(timezone.utc))

        for _ in range(ACCOUNT_NUMBER_ATTEMPTS):
            try:
                async with pool.acquire() as conn:
                    await conn.execute(f'''
                        INSERT INTO {self.TABLE} (id, owner_id, account_number, version, data)
                        VALUES ($1, $2, $3, $4, $5::jsonb)
                    ''', account.id, user_id, account.account_number, account.version,
                        json.dumps(account.to_dict()))
            except self._asyncpg.UniqueViolationError as e:
                if 'owner_id' in str(e):
                    raise ValidationError(f"User {user_id} already has an account") from e
                account = replace(account, account_number=generate_account_number())
                continue
            except self._driver_errors() as e:
                raise PersistenceError(f"Account creation failed: {e}") from e

            self._notify(DomainEvent.ACCOUNT_CREATED, account)
            return account

        raise PersistenceError("Could not allocate a unique account number")

    async def _write(self, conn, account: Account) -> Account:
        updated = replace(account, version=account.version + 1)
        result = await conn.execute(f'''
            UPDATE {self.TABLE}
            SET data = $1::jsonb, version = version + 1, updated_at = NOW()
            WHERE id = $2 AND version = $3
        ''', json.dumps(updated.to_dict()), account.id, account.version)
        if result == 'UPDATE 0':
            raise ConcurrencyError(
                f"Account {account.id} changed since version {account.version}"
            )
        return updated

    async def update_account(self, user_id: str, account: Account) -> Account:
        if account.owner_id != user_id:
            raise NotFoundError(f"No account for user {user_id}")
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                committed = await self._write(conn, account)
        except self._driver_errors() as e:
            raise PersistenceError(f"Account update failed: {e}") from e
        self._notify(DomainEvent.ACCOUNT_UPDATED, committed)
        return committed

    async def commit_transfer(self, sender: Account, recipient: Account) -> Tuple[Account, Account]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    # Fixed order keeps concurrent transfers from deadlocking
                    first, second = sorted([sender, recipient], key=lambda a: a.id)
                    written: Dict[str, Account] = {}
                    written[first.id] = await self._write(conn, first)
                    written[second.id] = await self._write(conn, second)
        except self._driver_errors() as e:
            raise PersistenceError(f"Transfer commit failed: {e}") from e

        committed_sender, committed_recipient = written[sender.id], written[recipient.id]
        self._notify(DomainEvent.ACCOUNT_UPDATED, committed_sender)
        self._notify(DomainEvent.ACCOUNT_UPDATED, committed_recipient)
        return committed_sender, committed_recipient


def create_account_store(config) -> RemoteAccountStore:
    """PostgreSQL when a database URL is configured, otherwise in-memory"""
    if config.database_url:
        return AsyncPostgreSQLAccountStore(config.database_url, config.database_pool_size)
    return AsyncInMemoryAccountStore()
