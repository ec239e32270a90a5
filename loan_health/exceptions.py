"""
Loan health exceptions

User-facing failures subclass ``LoanHealthError``; programming-logic faults
subclass ``InvariantViolationError`` and always abort the surrounding atomic
commit.
"""


class LoanHealthError(ValueError):
    """Base class for typed loan health failures"""


class InvalidTermError(LoanHealthError):
    """Term in months must be a positive integer"""


class InvalidPrincipalError(LoanHealthError):
    """Principal must be strictly positive"""


class InvalidRateError(LoanHealthError):
    """Annual rate in basis points must not be negative"""


class LoanNotFoundError(LoanHealthError):
    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} not found")
        self.loan_id = loan_id


class DuplicateLoanError(LoanHealthError):
    """A loan with this id is already registered"""


class IneligibleLoanError(LoanHealthError):
    """Loan cannot be refinanced in its current state"""


class InsufficientFundsError(LoanHealthError):
    """Borrower wallet cannot cover a debit"""


class StaleQuoteError(LoanHealthError):
    """A refinance quote no longer matches the loan; fetch options again"""


class InvariantViolationError(RuntimeError):
    """Internal consistency check failed; nothing was committed"""


class ScheduleInvariantError(InvariantViolationError):
    pass


class NegativeBalanceError(InvariantViolationError):
    pass


class LockReentryError(InvariantViolationError):
    pass
