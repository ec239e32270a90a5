"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import LoanHealthSystem, get_system
from .errors import http_error
from .schemas import (
    ClassifyRequest, RefinanceRequest, RegisterLoanRequest,
    loan_response, refinance_response, schedule_response, snapshot_response, status_summary
)
from ..exceptions import LoanHealthError
from ..loans import LoanStatus
from ..refinance import RefinanceQuote


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def register_loan(
    request: RegisterLoanRequest,
    system: LoanHealthSystem = Depends(get_system)
):
    """Register an externally originated loan"""
    try:
        loan = system.service.register_loan(
            borrower_id=request.borrower_id,
            principal=request.principal.to_money(),
            annual_rate_bps=request.annual_rate_bps,
            term_months=request.term_months,
            originated_at=request.originated_at,
            first_due_date=request.first_due_date,
            loan_id=request.loan_id
        )
    except (LoanHealthError, ValueError, KeyError) as e:
        raise http_error(e)

    return loan_response(loan)


@router.get("")
async def list_loans(
    health_status: Optional[str] = None,
    system: LoanHealthSystem = Depends(get_system)
):
    """List loans, optionally filtered by health status"""
    try:
        status_filter = LoanStatus(health_status) if health_status else None
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown health status: {health_status}")

    loans = system.service.list_loans(status_filter)
    return {
        "loans": [loan_response(loan) for loan in loans],
        "count": len(loans)
    }


@router.get("/at-risk")
async def get_at_risk_loans(system: LoanHealthSystem = Depends(get_system)):
    """Loans that are late, at risk, defaulted or recovering, worst first"""
    results = system.service.get_at_risk_loans()
    return {
        "loans": [
            dict(loan_response(loan), health=snapshot_response(snapshot))
            for loan, snapshot in results
        ],
        "summary": status_summary([snapshot for _, snapshot in results])
    }


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LoanHealthSystem = Depends(get_system)
):
    """Get loan details"""
    try:
        loan = system.service.get_loan(loan_id)
    except LoanHealthError as e:
        raise http_error(e)
    return loan_response(loan)


@router.get("/{loan_id}/snapshot")
async def get_snapshot(
    loan_id: str,
    system: LoanHealthSystem = Depends(get_system)
):
    """Live health recomputed from the repayment ledger"""
    try:
        snapshot = system.service.get_snapshot(loan_id)
    except LoanHealthError as e:
        raise http_error(e)
    return snapshot_response(snapshot)


@router.get("/{loan_id}/schedule")
async def get_schedule(
    loan_id: str,
    version: Optional[int] = None,
    system: LoanHealthSystem = Depends(get_system)
):
    """Get the current schedule version, or any earlier one"""
    try:
        schedule = system.service.get_schedule(loan_id, version)
    except LoanHealthError as e:
        raise http_error(e)
    return schedule_response(schedule)


@router.get("/{loan_id}/schedules")
async def list_schedule_versions(
    loan_id: str,
    system: LoanHealthSystem = Depends(get_system)
):
    """Every schedule version of a loan, oldest first"""
    try:
        versions = system.service.list_schedule_versions(loan_id)
    except LoanHealthError as e:
        raise http_error(e)
    return {"versions": [schedule_response(v) for v in versions]}


@router.get("/{loan_id}/refinance-options")
async def get_refinance_options(
    loan_id: str,
    system: LoanHealthSystem = Depends(get_system)
):
    """Advisory refinance quote"""
    try:
        quote = system.service.get_refinance_options(loan_id)
    except LoanHealthError as e:
        raise http_error(e)
    return quote.to_dict()


@router.get("/{loan_id}/refinances")
async def get_refinance_history(
    loan_id: str,
    system: LoanHealthSystem = Depends(get_system)
):
    """Refinance records of a loan"""
    try:
        records = system.service.get_refinance_history(loan_id)
    except LoanHealthError as e:
        raise http_error(e)
    return {"refinances": [refinance_response(record) for record in records]}


@router.post("/{loan_id}/refinance")
async def execute_refinance(
    loan_id: str,
    request: RefinanceRequest,
    system: LoanHealthSystem = Depends(get_system)
):
    """Refinance a loan to one of the offered terms"""
    try:
        quote = None
        if request.quoted_balance is not None or request.quoted_fee is not None:
            if request.quoted_balance is None or request.quoted_fee is None:
                raise HTTPException(status_code=422, detail="quoted_balance and quoted_fee must be sent together")
            loan = system.service.get_loan(loan_id)
            quote = RefinanceQuote(
                loan_id=loan_id,
                eligible=True,
                remaining_balance=request.quoted_balance.to_money(),
                current_term=loan.term_months,
                current_monthly_payment=loan.monthly_payment,
                fee=request.quoted_fee.to_money(),
                schedule_version=(request.quoted_schedule_version
                                  if request.quoted_schedule_version is not None else loan.schedule_version)
            )

        record = system.service.execute_refinance(
            loan_id=loan_id,
            new_term=request.new_term,
            reason=request.reason,
            quote=quote
        )
    except (LoanHealthError, ValueError, KeyError) as e:
        raise http_error(e)

    return refinance_response(record)


@router.post("/{loan_id}/classify")
async def run_classification(
    loan_id: str,
    request: Optional[ClassifyRequest] = None,
    system: LoanHealthSystem = Depends(get_system)
):
    """Recompute and store a loan's health"""
    as_of = request.as_of if request else None
    try:
        snapshot = system.service.run_classification(loan_id, as_of)
    except LoanHealthError as e:
        raise http_error(e)
    return snapshot_response(snapshot)
