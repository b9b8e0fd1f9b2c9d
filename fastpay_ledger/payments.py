"""
Payments Module

Bill payments and airtime top-ups. Each payment is an ``expense`` posting
with a cashback ``income`` credited in the same commit; the balance check
happens inside the ledger engine, not in the caller.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
import re

from .config import FastPayConfig, get_config
from .errors import ValidationError
from .ledger import AmountLike, LedgerEngine, validate_amount
from .logging_config import get_logger
from .transactions import Transaction, TransactionCategory

logger = get_logger("fastpay.payments")

PHONE_PATTERN = re.compile(r'^\+?[\d\s\-()]{10,}$')


@dataclass(frozen=True)
class Biller:
    id: str
    name: str


BILLERS: Dict[str, Biller] = {
    "electricity": Biller("electricity", "Electricity"),
    "internet": Biller("internet", "Internet"),
    "water": Biller("water", "Water"),
    "rent": Biller("rent", "Rent"),
}


@dataclass(frozen=True)
class MobileNetwork:
    id: str
    name: str
    prefixes: Tuple[str, ...] = ()


NETWORKS: Dict[str, MobileNetwork] = {
    "mtn": MobileNetwork("mtn", "MTN Nigeria", (
        "0803", "0806", "0813", "0816", "0810", "0814", "0903", "0906", "0913", "0916", "0704"
    )),
    "airtel": MobileNetwork("airtel", "Airtel Nigeria", (
        "0802", "0808", "0812", "0701", "0902", "0907", "0901"
    )),
    "glo": MobileNetwork("glo", "Globacom", ("0805", "0807", "0815", "0811", "0905", "0915")),
    "9mobile": MobileNetwork("9mobile", "9mobile", ("0809", "0817", "0818", "0908", "0909")),
    "verizon": MobileNetwork("verizon", "Verizon"),
    "att": MobileNetwork("att", "AT&T"),
    "tmobile": MobileNetwork("tmobile", "T-Mobile"),
    "sprint": MobileNetwork("sprint", "Sprint"),
}


def normalize_phone_number(phone_number: str) -> str:
    """Strip whitespace and validate the number's shape"""
    compact = re.sub(r'\s', '', phone_number or '')
    if not compact or not PHONE_PATTERN.match(compact):
        raise ValidationError("Please enter a valid phone number")
    return compact


def detect_network(phone_number: str) -> Optional[MobileNetwork]:
    """Guess the Nigerian network from the number's prefix"""
    digits = re.sub(r'\D', '', phone_number or '')
    if digits.startswith('234'):
        digits = '0' + digits[3:]
    prefix = digits[:4]
    for network in NETWORKS.values():
        if prefix in network.prefixes:
            return network
    return None


@dataclass(frozen=True)
class PaymentReceipt:
    """Outcome of a bill payment or airtime purchase"""
    payment: Transaction
    cashback: Optional[Transaction]
    balance: Decimal

    @property
    def cashback_amount(self) -> Decimal:
        return self.cashback.amount if self.cashback else Decimal('0')


class PaymentService:
    """Bill payments and airtime purchases on top of a ``LedgerEngine``"""

    def __init__(self, engine: LedgerEngine, config: Optional[FastPayConfig] = None):
        self.engine = engine
        self.config = config or engine.config or get_config()

    def pay_bill(
        self,
        account_id: str,
        biller: str,
        bill_number: str,
        customer_name: str,
        amount: AmountLike,
        idempotency_key: Optional[str] = None
    ) -> PaymentReceipt:
        """
        Pay a utility bill and credit the bill cashback.

        Raises:
            ValidationError: Unknown biller, missing bill number or customer name
            InsufficientFundsError: The balance cannot cover the bill
        """
        selected = BILLERS.get((biller or "").lower())
        if selected is None:
            raise ValidationError(f"Unknown biller: {biller}")
        if not bill_number or not bill_number.strip():
            raise ValidationError("Bill number is required")
        if not customer_name or not customer_name.strip():
            raise ValidationError("Customer name is required")

        posting = self.engine.pay(
            account_id,
            amount,
            f"{selected.name} Bill Payment - {bill_number.strip()}",
            TransactionCategory.BILL_PAY,
            recipient=customer_name.strip(),
            cashback_rate=Decimal(self.config.bill_cashback_rate),
            cashback_description=f"Cashback from {selected.name} bill payment",
            idempotency_key=idempotency_key,
        )
        return PaymentReceipt(posting.debit, posting.cashback, posting.balance)

    def buy_airtime(
        self,
        account_id: str,
        network: str,
        phone_number: str,
        amount: AmountLike,
        recipient_name: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> PaymentReceipt:
        """
        Buy airtime for a phone number and credit the airtime cashback.

        Raises:
            ValidationError: Unknown network, malformed phone number or an
                amount outside the airtime limits
            InsufficientFundsError: The balance cannot cover the purchase
        """
        selected = NETWORKS.get((network or "").lower())
        if selected is None:
            raise ValidationError(f"Unknown network: {network}")
        phone = normalize_phone_number(phone_number)

        value = validate_amount(amount)
        min_amount, max_amount = self.config.airtime_amount_range
        if value < min_amount:
            raise ValidationError(f"Minimum airtime amount is {min_amount}")
        if value > max_amount:
            raise ValidationError(f"Maximum airtime amount is {max_amount}")

        detected = detect_network(phone)
        if detected is not None and detected.id != selected.id:
            logger.info(f"Airtime for {phone} sent to {selected.name}, prefix suggests {detected.name}")

        posting = self.engine.pay(
            account_id,
            value,
            f"{selected.name} Airtime - {phone}",
            TransactionCategory.AIRTIME,
            recipient=(recipient_name or "").strip() or phone,
            cashback_rate=Decimal(self.config.airtime_cashback_rate),
            cashback_description=f"Cashback from {selected.name} airtime purchase",
            idempotency_key=idempotency_key,
        )
        return PaymentReceipt(posting.debit, posting.cashback, posting.balance)
