"""
Repayment endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import LoanHealthSystem, get_system
from .errors import http_error
from .schemas import RepaymentPostedRequest, snapshot_response
from ..exceptions import LoanHealthError
from ..ledger import Repayment


router = APIRouter()


@router.post("")
async def post_repayment(
    request: RepaymentPostedRequest,
    system: LoanHealthSystem = Depends(get_system)
):
    """RepaymentPosted from the payment processor; safe to retry"""
    try:
        repayment = Repayment(
            id=request.repayment_id,
            loan_id=request.loan_id,
            amount=request.amount.to_money(),
            posted_at=request.posted_at
        )
        snapshot = system.service.on_repayment_posted(request.loan_id, repayment)
    except (LoanHealthError, ValueError, KeyError) as e:
        raise http_error(e)

    return {
        "repayment_id": request.repayment_id,
        "health": snapshot_response(snapshot)
    }
