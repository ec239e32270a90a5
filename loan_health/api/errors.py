"""
Mapping of loan health failures to HTTP errors
"""

from fastapi import HTTPException

from ..exceptions import (
    DuplicateLoanError, InsufficientFundsError, LoanNotFoundError, StaleQuoteError
)


def http_error(error: Exception) -> HTTPException:
    """HTTPException for a user-facing failure"""
    if isinstance(error, LoanNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (StaleQuoteError, DuplicateLoanError)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, InsufficientFundsError):
        return HTTPException(status_code=402, detail=str(error))
    if isinstance(error, KeyError):
        return HTTPException(status_code=422, detail=f"Unknown value: {error}")
    # Ineligible loans and invalid terms, principals, rates or amounts
    return HTTPException(status_code=422, detail=str(error))
