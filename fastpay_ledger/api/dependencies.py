"""
Ledger system wiring and request dependencies
"""

from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from ..accounts import KeyValueAccountRepository
from ..config import FastPayConfig, get_config
from ..currency import CurrencyConverter, ExchangeRateProvider
from ..errors import (
    ConcurrencyError, InsufficientFundsError, LedgerError, NotFoundError,
    PersistenceError, PolicyLimitError, ValidationError
)
from ..events import EventDispatcher
from ..ledger import LedgerEngine
from ..logging_config import get_logger
from ..payments import PaymentService
from ..storage import KeyValueStore, create_key_value_store
from ..transactions import TransactionCategory, TransactionType

logger = get_logger("fastpay.api")


class LedgerSystem:
    """Ledger components wired together for one application instance"""

    def __init__(
        self,
        config: Optional[FastPayConfig] = None,
        store: Optional[KeyValueStore] = None,
        converter: Optional[CurrencyConverter] = None
    ):
        self.config = config or get_config()
        self.store = store or create_key_value_store(self.config.storage_backend, self.config.storage_path)
        self.repository = KeyValueAccountRepository(self.store)
        self.events = EventDispatcher()

        self.rate_provider = None
        if converter is None:
            self.rate_provider = ExchangeRateProvider.from_config(self.config)
            converter = CurrencyConverter(self.rate_provider)
        self.converter = converter

        self.engine = LedgerEngine(
            self.repository, self.config,
            event_dispatcher=self.events, converter=self.converter
        )
        self.payments = PaymentService(self.engine, self.config)

    def close(self) -> None:
        if self.rate_provider:
            self.rate_provider.close()
        self.store.close()


def get_ledger_system(request: Request) -> LedgerSystem:
    return request.app.state.ledger_system


# Ordered most specific first
ERROR_STATUS = (
    (ValidationError, 422),
    (InsufficientFundsError, 409),
    (NotFoundError, 404),
    (PolicyLimitError, 403),
    (ConcurrencyError, 409),
    (PersistenceError, 503),
)


def status_for(error: LedgerError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 400


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Turn a ledger error into a response with its code and message"""
    status_code = status_for(exc)
    body = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, PersistenceError):
        body["committed"] = exc.committed
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content=body)


def parse_category(value: Optional[str]) -> Optional[TransactionCategory]:
    if value is None or value == "all":
        return None
    try:
        return TransactionCategory(value)
    except ValueError:
        raise ValidationError(f"Unknown category: {value}")


def parse_posting_category(value: Optional[str]) -> TransactionCategory:
    """Category for a new transaction; filters accept 'all', postings do not"""
    if value is None:
        return TransactionCategory.OTHER
    try:
        return TransactionCategory(value)
    except ValueError:
        raise ValidationError(f"Unknown category: {value}")


def parse_type(value: Optional[str]) -> Optional[TransactionType]:
    if value is None or value == "all":
        return None
    try:
        return TransactionType(value)
    except ValueError:
        raise ValidationError(f"Unknown transaction type: {value}")
