"""
Transaction endpoints
"""

from decimal import Decimal
from typing import Optional
from fastapi import APIRouter, Depends, status
from fastapi.responses import Response

from .dependencies import (
    LedgerSystem, get_ledger_system, parse_category, parse_posting_category, parse_type
)
from .schemas import (
    AirtimeRequest, BillPaymentRequest, DepositRequest, TransferRequest, WithdrawRequest,
    receipt_to_dict, summary_to_dict, transaction_to_dict, transfer_to_dict
)
from ..currency import decimal_from_string
from ..errors import ValidationError
from ..reporting import DateRange, TransactionFilter, export_csv, summarize_window


router = APIRouter()


def _optional_amount(value: Optional[str]) -> Optional[Decimal]:
    return decimal_from_string(value) if value else None


def _build_filter(query, type, category, date_range, min_amount, max_amount) -> TransactionFilter:
    try:
        window = DateRange(date_range)
    except ValueError:
        raise ValidationError(f"Unknown date range: {date_range}")
    return TransactionFilter(
        query=query or "",
        type=parse_type(type),
        category=parse_category(category),
        date_range=window,
        min_amount=_optional_amount(min_amount),
        max_amount=_optional_amount(max_amount),
    )


@router.post("/deposit", status_code=status.HTTP_201_CREATED)
async def deposit(
    request: DepositRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Make a deposit"""
    txn = system.engine.deposit(
        account_id=request.account_id,
        amount=request.amount,
        description=request.description,
        category=parse_posting_category(request.category),
        recipient=request.recipient,
        idempotency_key=request.idempotency_key
    )
    return transaction_to_dict(txn)


@router.post("/withdraw", status_code=status.HTTP_201_CREATED)
async def withdraw(
    request: WithdrawRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Make a withdrawal"""
    txn = system.engine.withdraw(
        account_id=request.account_id,
        amount=request.amount,
        description=request.description,
        category=parse_posting_category(request.category),
        recipient=request.recipient,
        idempotency_key=request.idempotency_key
    )
    return transaction_to_dict(txn)


@router.post("/transfer", status_code=status.HTTP_201_CREATED)
async def transfer(
    request: TransferRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Send money to another account by account number"""
    result = system.engine.transfer(
        sender_account_id=request.account_id,
        recipient_account_number=request.recipient_account_number,
        amount=request.amount,
        description=request.description,
        idempotency_key=request.idempotency_key
    )
    return transfer_to_dict(result)


@router.post("/bill-payment", status_code=status.HTTP_201_CREATED)
async def pay_bill(
    request: BillPaymentRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Pay a utility bill (1% cashback)"""
    receipt = system.payments.pay_bill(
        account_id=request.account_id,
        biller=request.biller,
        bill_number=request.bill_number,
        customer_name=request.customer_name,
        amount=request.amount,
        idempotency_key=request.idempotency_key
    )
    return receipt_to_dict(receipt)


@router.post("/airtime", status_code=status.HTTP_201_CREATED)
async def buy_airtime(
    request: AirtimeRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Buy airtime (2% cashback)"""
    receipt = system.payments.buy_airtime(
        account_id=request.account_id,
        network=request.network,
        phone_number=request.phone_number,
        amount=request.amount,
        recipient_name=request.recipient_name,
        idempotency_key=request.idempotency_key
    )
    return receipt_to_dict(receipt)


@router.get("")
async def list_transactions(
    account_id: str,
    limit: Optional[int] = None,
    query: Optional[str] = None,
    type: Optional[str] = None,
    category: Optional[str] = None,
    date_range: str = "all",
    min_amount: Optional[str] = None,
    max_amount: Optional[str] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """List transactions newest first, optionally filtered"""
    criteria = _build_filter(query, type, category, date_range, min_amount, max_amount)
    if criteria.is_active:
        transactions = system.engine.filter_transactions(account_id, criteria)
        if limit is not None:
            if limit < 0:
                raise ValidationError("limit must not be negative")
            transactions = transactions[:limit]
    else:
        transactions = system.engine.list_transactions(account_id, limit)
    return {
        "account_id": account_id,
        "count": len(transactions),
        "transactions": [transaction_to_dict(t) for t in transactions],
    }


@router.get("/export")
async def export_transactions(
    account_id: str,
    query: Optional[str] = None,
    type: Optional[str] = None,
    category: Optional[str] = None,
    date_range: str = "all",
    min_amount: Optional[str] = None,
    max_amount: Optional[str] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Download the (filtered) transaction list as CSV"""
    criteria = _build_filter(query, type, category, date_range, min_amount, max_amount)
    transactions = system.engine.filter_transactions(account_id, criteria)
    filename = f"fastpay-transactions-{system.engine.clock().date().isoformat()}.csv"
    return Response(
        content=export_csv(transactions),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )


@router.get("/summary")
async def get_summary(
    account_id: str,
    days: int = 30,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Analytics summary for the last 7, 30 or 90 days"""
    account = system.engine.get_account(account_id)
    summary = summarize_window(account.transactions, days, system.engine.clock())
    return summary_to_dict(summary)
