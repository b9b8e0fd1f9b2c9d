"""
Multi-Currency Support Module

Handles the supported currency codes, exchange-rate lookup with caching and a
static fallback table, and display conversion. Balances are always stored in
the account's base currency; conversion here is a read-only projection and
NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Union
from enum import Enum
import logging
import re
import threading
import time

import httpx

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

logger = logging.getLogger("fastpay.currency")


class Currency(Enum):
    """Supported ISO 4217 currencies with precision and display info"""
    USD = ("USD", 2, "$", "US Dollar")
    EUR = ("EUR", 2, "€", "Euro")
    GBP = ("GBP", 2, "£", "British Pound")
    NGN = ("NGN", 2, "₦", "Nigerian Naira")
    CAD = ("CAD", 2, "C$", "Canadian Dollar")
    AUD = ("AUD", 2, "A$", "Australian Dollar")
    JPY = ("JPY", 0, "¥", "Japanese Yen")
    CHF = ("CHF", 2, "CHF", "Swiss Franc")
    CNY = ("CNY", 2, "¥", "Chinese Yuan")
    INR = ("INR", 2, "₹", "Indian Rupee")

    def __init__(self, code: str, precision: int, symbol: str, display_name: str):
        self.code = code
        self.precision = precision
        self.symbol = symbol
        self.display_name = display_name

    @property
    def quantum(self) -> Decimal:
        return Decimal('0.1') ** self.precision

    @classmethod
    def from_code(cls, code: Union[str, 'Currency']) -> 'Currency':
        """Look up a currency by its ISO code (case-insensitive)"""
        if isinstance(code, Currency):
            return code
        try:
            return cls[str(code).strip().upper()]
        except KeyError:
            raise ValidationError(f"Unsupported currency: {code}")


# Used whenever every rate source is unreachable. Units of currency per 1 USD.
FALLBACK_RATES: Dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.85"),
    "GBP": Decimal("0.73"),
    "NGN": Decimal("1650"),
    "CAD": Decimal("1.35"),
    "AUD": Decimal("1.45"),
    "JPY": Decimal("150"),
    "CHF": Decimal("0.88"),
    "CNY": Decimal("7.2"),
    "INR": Decimal("83"),
}


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        # Round to currency precision
        rounded = self.amount.quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    def __add__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot add {self.currency.code} and {other.currency.code}")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot subtract {other.currency.code} from {self.currency.code}")
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __lt__(self, other: 'Money') -> bool:
        if self.currency != other.currency:
            raise ValueError(f"Cannot compare {self.currency.code} and {other.currency.code}")
        return self.amount < other.amount

    def is_zero(self) -> bool:
        return self.amount == Decimal('0')

    def is_negative(self) -> bool:
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display, e.g. ``$1,234.56``"""
        return format_amount(self.amount, self.currency)


def format_amount(amount: Decimal, currency: Union[str, Currency] = Currency.USD) -> str:
    """Format an amount with its currency symbol and thousands separators"""
    currency = Currency.from_code(currency)
    amount = Decimal(str(amount)).quantize(currency.quantum, rounding=ROUND_HALF_UP)
    if amount < 0:
        return f"-{currency.symbol}{-amount:,.{currency.precision}f}"
    return f"{currency.symbol}{amount:,.{currency.precision}f}"


def _code(currency: Union[str, Currency]) -> str:
    return currency.code if isinstance(currency, Currency) else str(currency).upper()


def convert_amount(
    amount: Decimal,
    from_currency: Union[str, Currency],
    to_currency: Union[str, Currency],
    rates: Mapping[str, Decimal]
) -> Decimal:
    """
    Convert an amount through the rate table's pivot currency.

    ``rates`` maps currency codes to units per one unit of the table's base
    (normally USD). Same-currency conversion returns ``amount`` unchanged.
    Codes missing from the table are treated as rate 1.

    Args:
        amount: Amount in ``from_currency``
        from_currency: Source currency
        to_currency: Target currency
        rates: Rate table

    Returns:
        Amount in ``to_currency``, rounded to its precision
    """
    from_code = _code(from_currency)
    to_code = _code(to_currency)
    if from_code == to_code:
        return amount

    from_rate = Decimal(str(rates.get(from_code) or 1))
    to_rate = Decimal(str(rates.get(to_code) or 1))
    converted = Decimal(str(amount)) / from_rate * to_rate

    quantum = Currency[to_code].quantum if to_code in Currency.__members__ else Decimal('0.01')
    return converted.quantize(quantum, rounding=ROUND_HALF_UP)


def fallback_rates(base: str = "USD") -> Dict[str, Decimal]:
    """Static rate table, rebased onto ``base`` when it is a known currency"""
    base = base.upper()
    base_rate = FALLBACK_RATES.get(base)
    if base_rate is None or base == "USD":
        return dict(FALLBACK_RATES)
    return {code: rate / base_rate for code, rate in FALLBACK_RATES.items()}


def _parse_rates(payload) -> Optional[Dict[str, Decimal]]:
    """Extract a rate table from any of the supported source payload shapes"""
    if not isinstance(payload, dict):
        return None
    raw = None
    if payload.get("result") == "success" and isinstance(payload.get("conversion_rates"), dict):
        raw = payload["conversion_rates"]
    elif isinstance(payload.get("rates"), dict):
        raw = payload["rates"]
    if not raw:
        return None
    try:
        return {str(code).upper(): Decimal(str(rate)) for code, rate in raw.items()}
    except InvalidOperation:
        return None


class ExchangeRateProvider:
    """
    Fetches rate tables over HTTP with a staleness window.

    Sources are tried in order; the first usable table is cached per base
    currency for ``cache_ttl_seconds``. When every source fails the static
    fallback table is returned (and not cached) so callers always get rates.
    """

    def __init__(
        self,
        source_urls: Callable[[str], List[str]],
        timeout: float = 5.0,
        cache_ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.monotonic,
        client: Optional[httpx.Client] = None
    ):
        self.source_urls = source_urls
        self.cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._client = client or httpx.Client(timeout=timeout)
        self._cache: Dict[str, tuple] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config, **kwargs) -> 'ExchangeRateProvider':
        return cls(
            source_urls=config.rate_source_urls,
            timeout=config.rate_api_timeout,
            cache_ttl_seconds=config.rate_cache_ttl_seconds,
            **kwargs
        )

    def get_rates(self, base: str = "USD") -> Dict[str, Decimal]:
        """Get the rate table for ``base``. Never raises."""
        base = base.upper()
        now = self._clock()

        with self._lock:
            cached = self._cache.get(base)
            if cached and now - cached[0] < self.cache_ttl_seconds:
                return dict(cached[1])

        for url in self.source_urls(base):
            try:
                response = self._client.get(url)
                if response.status_code != 200:
                    logger.warning(f"Rate source returned {response.status_code}: {url}")
                    continue
                rates = _parse_rates(response.json())
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Rate source failed: {url}: {e}")
                continue

            if rates:
                with self._lock:
                    self._cache[base] = (now, rates)
                return dict(rates)

        logger.warning(f"All rate sources failed for {base}, using fallback rates")
        return fallback_rates(base)

    def invalidate(self) -> None:
        """Drop cached tables"""
        with self._lock:
            self._cache.clear()

    def close(self) -> None:
        self._client.close()


class CurrencyConverter:
    """Display conversion on top of a rate provider. Always returns a number."""

    def __init__(self, provider: Optional[ExchangeRateProvider] = None):
        self.provider = provider

    def get_rates(self) -> Dict[str, Decimal]:
        if self.provider is None:
            return fallback_rates("USD")
        return self.provider.get_rates("USD")

    def convert(
        self,
        amount: Decimal,
        from_currency: Union[str, Currency],
        to_currency: Union[str, Currency]
    ) -> Decimal:
        if _code(from_currency) == _code(to_currency):
            return amount
        return convert_amount(amount, from_currency, to_currency, self.get_rates())

    def convert_money(self, money: Money, to_currency: Currency) -> Money:
        if money.currency == to_currency:
            return money
        return Money(self.convert(money.amount, money.currency, to_currency), to_currency)


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number

    Returns:
        Decimal value

    Raises:
        ValidationError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValidationError("Value must be a non-empty string")

    # Remove currency symbols and whitespace
    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    if ',' in clean_value and '.' in clean_value:
        # Both comma and dot - assume comma is thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) <= 2:  # Likely decimal separator
            clean_value = clean_value.replace(',', '.')
        else:  # Likely thousands separator
            clean_value = clean_value.replace(',', '')
    else:
        clean_value = clean_value.replace(',', '')

    try:
        result = Decimal(clean_value)
    except InvalidOperation:
        raise ValidationError(f"Cannot convert '{value}' to Decimal")
    if not result.is_finite():
        raise ValidationError(f"Cannot convert '{value}' to Decimal")
    return result
