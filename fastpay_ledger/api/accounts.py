"""
Account endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import LedgerSystem, get_ledger_system
from .schemas import (
    CreateAccountRequest, DisplayCurrencyRequest, GuestAccountRequest,
    account_to_dict, overview_to_dict
)


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_account(
    request: CreateAccountRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Open a new account"""
    account = system.engine.open_account(
        name=request.name,
        opening_balance=request.opening_balance,
        currency=request.currency,
        display_currency=request.display_currency
    )
    return account_to_dict(account)


@router.post("/guest")
async def open_guest_account(
    request: Optional[GuestAccountRequest] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Open the demo account (returns the existing one if already open)"""
    display_currency = request.display_currency if request else None
    account = system.engine.open_guest_account(display_currency=display_currency)
    return account_to_dict(account)


@router.get("/by-number/{account_number}")
async def lookup_account(
    account_number: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Resolve a transfer recipient by account number"""
    account = system.engine.get_account_by_number(account_number)
    return {
        "account_number": account.account_number,
        "name": account.name,
    }


@router.get("/{account_id}")
async def get_account(
    account_id: str,
    include_transactions: bool = False,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get account details"""
    account = system.engine.get_account(account_id)
    return account_to_dict(account, include_transactions=include_transactions)


@router.put("/{account_id}/display-currency")
async def set_display_currency(
    account_id: str,
    request: DisplayCurrencyRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Change the currency balances are displayed in"""
    account = system.engine.set_display_currency(account_id, request.currency)
    return account_to_dict(account)


@router.get("/{account_id}/overview")
def get_overview(
    account_id: str,
    display_currency: Optional[str] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """
    Dashboard figures: balance, this month's flows, active loans, recent activity.

    Declared sync so rate lookups run in the threadpool, off the event loop.
    """
    overview = system.engine.overview(account_id, display_currency)
    return overview_to_dict(overview)
