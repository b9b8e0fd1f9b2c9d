"""
Loan endpoints
"""

from fastapi import APIRouter, Depends, status

from .dependencies import LedgerSystem, get_ledger_system
from .schemas import LoanRequest, loan_to_dict, quote_to_dict, schedule_entry_to_dict
from ..errors import NotFoundError, ValidationError
from ..ledger import validate_amount
from ..loans import quote_loan


router = APIRouter()


def _check_offered_term(system: LedgerSystem, term_months: int) -> None:
    offered = system.config.loan_terms_months
    if term_months not in offered:
        raise ValidationError(
            f"Loan term must be one of {', '.join(str(t) for t in offered)} months"
        )


@router.post("", status_code=status.HTTP_201_CREATED)
async def request_loan(
    request: LoanRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Request a loan; the principal is credited immediately"""
    _check_offered_term(system, request.term_months)
    loan = system.engine.request_loan(
        account_id=request.account_id,
        amount=request.amount,
        term_months=request.term_months,
        idempotency_key=request.idempotency_key
    )
    return loan_to_dict(loan)


@router.get("")
async def list_loans(
    account_id: str,
    active_only: bool = False,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """List an account's loans"""
    loans = system.engine.list_loans(account_id, active_only=active_only)
    return {
        "account_id": account_id,
        "loans": [loan_to_dict(loan) for loan in loans],
    }


@router.get("/quote")
async def get_quote(
    amount: str,
    term_months: int,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Preview monthly payment, total payment and total interest"""
    _check_offered_term(system, term_months)
    quote = quote_loan(validate_amount(amount), term_months, system.config.loan_rate)
    return quote_to_dict(quote)


@router.get("/{loan_id}/schedule")
async def get_schedule(
    loan_id: str,
    account_id: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Repayment schedule for a loan"""
    for loan in system.engine.list_loans(account_id):
        if loan.id == loan_id:
            return {
                "loan_id": loan.id,
                "schedule": [schedule_entry_to_dict(entry) for entry in loan.schedule()],
            }
    raise NotFoundError(f"Loan {loan_id} not found")
