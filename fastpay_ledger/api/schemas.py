"""
Pydantic schemas for API requests and responses
"""

from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from ..accounts import Account
from ..ledger import TransferResult
from ..loans import AmortizationEntry, Loan, LoanQuote
from ..payments import PaymentReceipt
from ..reporting import AccountOverview, LedgerSummary
from ..transactions import Transaction, format_timestamp


# Account schemas
class CreateAccountRequest(BaseModel):
    name: str
    opening_balance: Optional[str] = Field(None, description="Decimal amount as string")
    currency: Optional[str] = Field(None, description="Base currency code, defaults to the configured one")
    display_currency: Optional[str] = None


class GuestAccountRequest(BaseModel):
    display_currency: Optional[str] = None


class DisplayCurrencyRequest(BaseModel):
    currency: str = Field(..., description="Currency code (USD, EUR, NGN, etc.)")


# Transaction schemas
class DepositRequest(BaseModel):
    account_id: str
    amount: str = Field(..., description="Decimal amount as string")
    description: str
    category: str = Field("other", description="transfer, bill_pay, airtime, loan or other")
    recipient: Optional[str] = None
    idempotency_key: Optional[str] = None


class WithdrawRequest(BaseModel):
    account_id: str
    amount: str = Field(..., description="Decimal amount as string")
    description: str
    category: str = Field("other", description="transfer, bill_pay, airtime, loan or other")
    recipient: Optional[str] = None
    idempotency_key: Optional[str] = None


class TransferRequest(BaseModel):
    account_id: str
    recipient_account_number: str = Field(..., description="10-digit account number")
    amount: str = Field(..., description="Decimal amount as string")
    description: str = ""
    idempotency_key: Optional[str] = None


class BillPaymentRequest(BaseModel):
    account_id: str
    biller: str = Field(..., description="electricity, internet, water or rent")
    bill_number: str
    customer_name: str
    amount: str = Field(..., description="Decimal amount as string")
    idempotency_key: Optional[str] = None


class AirtimeRequest(BaseModel):
    account_id: str
    network: str
    phone_number: str
    amount: str = Field(..., description="Decimal amount as string")
    recipient_name: Optional[str] = None
    idempotency_key: Optional[str] = None


# Loan schemas
class LoanRequest(BaseModel):
    account_id: str
    amount: str = Field(..., description="Decimal amount as string")
    term_months: int = Field(..., description="One of the offered terms")
    idempotency_key: Optional[str] = None


# Response serialization

def transaction_to_dict(txn: Transaction) -> Dict[str, Any]:
    return txn.to_dict()


def account_to_dict(account: Account, include_transactions: bool = False) -> Dict[str, Any]:
    data = {
        "id": account.id,
        "account_number": account.account_number,
        "name": account.name,
        "balance": str(account.balance),
        "currency": account.currency.code,
        "display_currency": account.display_currency.code if account.display_currency else None,
        "active_loans": len(account.active_loans),
        "transaction_count": len(account.transactions),
        "version": account.version,
        "created_at": format_timestamp(account.created_at),
        "updated_at": format_timestamp(account.updated_at),
    }
    if include_transactions:
        data["transactions"] = [transaction_to_dict(t) for t in account.transactions]
        data["loans"] = [loan_to_dict(l) for l in account.loans]
    return data


def loan_to_dict(loan: Loan) -> Dict[str, Any]:
    data = loan.to_dict()
    data["total_payment"] = str(loan.total_payment)
    data["total_interest"] = str(loan.total_interest)
    return data


def quote_to_dict(quote: LoanQuote) -> Dict[str, Any]:
    return {
        "principal": str(quote.principal),
        "annual_rate": str(quote.annual_rate),
        "term_months": quote.term_months,
        "monthly_payment": str(quote.monthly_payment),
        "total_payment": str(quote.total_payment),
        "total_interest": str(quote.total_interest),
    }


def schedule_entry_to_dict(entry: AmortizationEntry) -> Dict[str, Any]:
    return {
        "payment_number": entry.payment_number,
        "payment_date": entry.payment_date.isoformat(),
        "payment_amount": str(entry.payment_amount),
        "principal_amount": str(entry.principal_amount),
        "interest_amount": str(entry.interest_amount),
        "remaining_balance": str(entry.remaining_balance),
    }


def transfer_to_dict(result: TransferResult) -> Dict[str, Any]:
    return {
        "transfer_id": result.transfer_id,
        "transaction": transaction_to_dict(result.debit),
        "recipient_account_number": result.recipient_account_number,
        "balance": str(result.sender_balance),
    }


def receipt_to_dict(receipt: PaymentReceipt) -> Dict[str, Any]:
    return {
        "transaction": transaction_to_dict(receipt.payment),
        "cashback": transaction_to_dict(receipt.cashback) if receipt.cashback else None,
        "balance": str(receipt.balance),
    }


def summary_to_dict(summary: LedgerSummary) -> Dict[str, Any]:
    return {
        "since": format_timestamp(summary.since),
        "until": format_timestamp(summary.until),
        "income": str(summary.total_income),
        "expenses": str(summary.total_expenses),
        "net": str(summary.net),
        "transaction_count": summary.transaction_count,
        "categories": {
            name: {
                "income": str(breakdown.income),
                "expense": str(breakdown.expense),
                "count": breakdown.count,
            }
            for name, breakdown in summary.by_category.items()
        },
        "daily": [
            {
                "date": point.day.isoformat(),
                "income": str(point.income),
                "expenses": str(point.expenses),
                "net": str(point.net),
            }
            for point in summary.daily
        ],
    }


def overview_to_dict(overview: AccountOverview) -> Dict[str, Any]:
    return {
        "account_id": overview.account_id,
        "account_number": overview.account_number,
        "name": overview.name,
        "balance": str(overview.balance),
        "currency": overview.currency.code,
        "display_balance": str(overview.display_balance),
        "display_currency": overview.display_currency.code,
        "month_income": str(overview.month_income),
        "month_expenses": str(overview.month_expenses),
        "active_loans": overview.active_loans,
        "recent_transactions": [transaction_to_dict(t) for t in overview.recent],
    }
