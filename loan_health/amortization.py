"""
Amortization Module

Pure equal-installment (French method) schedule math. Given principal, annual
rate in basis points and a term in months it produces the monthly payment and
every installment. The final installment absorbs the rounding remainder so the
principal portions always sum to the principal exactly.
"""

import calendar
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from typing import Optional, Tuple

from .currency import Money, quantize_amount
from .exceptions import (
    InvalidPrincipalError, InvalidRateError, InvalidTermError, ScheduleInvariantError
)

BASIS_POINTS = Decimal('10000')
MONTHS_PER_YEAR = Decimal('12')


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def monthly_rate(annual_rate_bps: int) -> Decimal:
    """Periodic (monthly) rate from an annual rate in basis points"""
    return Decimal(annual_rate_bps) / BASIS_POINTS / MONTHS_PER_YEAR


@dataclass(frozen=True)
class Installment:
    """Single expected payment in a schedule version"""
    sequence: int
    due_date: date
    principal_portion: Money
    interest_portion: Money
    amount_due: Money
    remaining_balance: Money  # Principal still outstanding after this installment
    loan_id: str = ""
    schedule_version: int = 0

    def __post_init__(self):
        if self.principal_portion + self.interest_portion != self.amount_due:
            raise ScheduleInvariantError(
                f"Installment {self.sequence}: amount due {self.amount_due.to_string()} does not equal "
                f"principal {self.principal_portion.to_string()} + interest {self.interest_portion.to_string()}"
            )


@dataclass(frozen=True)
class AmortizationSchedule:
    """Monthly payment plus the full list of installments"""
    principal: Money
    annual_rate_bps: int
    term_months: int
    monthly_payment: Money
    installments: Tuple[Installment, ...]

    @property
    def total_interest(self) -> Money:
        total = Money.zero(self.principal.currency)
        for installment in self.installments:
            total = total + installment.interest_portion
        return total

    @property
    def total_due(self) -> Money:
        return self.principal + self.total_interest

    def bind(self, loan_id: str, schedule_version: int) -> 'AmortizationSchedule':
        """Stamp every installment with its loan and schedule version"""
        return replace(self, installments=tuple(
            replace(i, loan_id=loan_id, schedule_version=schedule_version) for i in self.installments
        ))


class AmortizationCalculator:
    """
    Stateless amortization calculator

    Standard loan payment formula: M = P * r(1+r)^n / ((1+r)^n - 1)
    where P = principal, r = monthly rate, n = number of payments.
    """

    def monthly_payment(self, principal: Money, annual_rate_bps: int, term_months: int) -> Money:
        """Rounded level payment for the given terms"""
        self._validate(principal, annual_rate_bps, term_months)
        rate = monthly_rate(annual_rate_bps)
        amount = principal.amount
        n = Decimal(term_months)

        if rate == Decimal('0'):
            # No interest - simple division
            payment = amount / n
        else:
            factor = (Decimal('1') + rate) ** term_months
            payment = amount * (rate * factor) / (factor - Decimal('1'))

        return Money(payment, principal.currency)

    def compute_schedule(
        self,
        principal: Money,
        annual_rate_bps: int,
        term_months: int,
        first_due_date: Optional[date] = None
    ) -> AmortizationSchedule:
        """
        Generate an equal installment schedule

        Args:
            principal: Amount to amortize
            annual_rate_bps: Annual interest rate in basis points (1250 = 12.5%)
            term_months: Number of monthly installments
            first_due_date: Due date of installment 1 (defaults to one month from today)

        Returns:
            AmortizationSchedule whose principal portions sum exactly to principal

        Raises:
            InvalidTermError, InvalidPrincipalError, InvalidRateError
        """
        payment = self.monthly_payment(principal, annual_rate_bps, term_months)
        if first_due_date is None:
            first_due_date = add_months(date.today(), 1)

        currency = principal.currency
        rate = monthly_rate(annual_rate_bps)
        zero = Money.zero(currency)
        balance = principal
        installments = []

        for sequence in range(1, term_months + 1):
            interest = Money(quantize_amount(balance.amount * rate, currency), currency)

            if sequence == term_months:
                # Final installment pays exactly what's left
                principal_portion = balance
            else:
                principal_portion = payment - interest
                if principal_portion.is_negative():
                    principal_portion = zero
                if principal_portion > balance:
                    principal_portion = balance

            balance = balance - principal_portion
            installments.append(Installment(
                sequence=sequence,
                due_date=add_months(first_due_date, sequence - 1),
                principal_portion=principal_portion,
                interest_portion=interest,
                amount_due=principal_portion + interest,
                remaining_balance=balance
            ))

        schedule = AmortizationSchedule(
            principal=principal,
            annual_rate_bps=annual_rate_bps,
            term_months=term_months,
            monthly_payment=payment,
            installments=tuple(installments)
        )
        self._verify(schedule)
        return schedule

    def _validate(self, principal: Money, annual_rate_bps: int, term_months: int) -> None:
        if not isinstance(term_months, int) or isinstance(term_months, bool) or term_months <= 0:
            raise InvalidTermError(f"Term must be a positive number of months, got {term_months!r}")
        if not principal.is_positive():
            raise InvalidPrincipalError(f"Principal must be positive, got {principal.to_string()}")
        if annual_rate_bps < 0:
            raise InvalidRateError(f"Annual rate cannot be negative, got {annual_rate_bps} bps")

    def _verify(self, schedule: AmortizationSchedule) -> None:
        total_principal = Money.zero(schedule.principal.currency)
        for installment in schedule.installments:
            total_principal = total_principal + installment.principal_portion
        if total_principal != schedule.principal:
            raise ScheduleInvariantError(
                f"Schedule principal {total_principal.to_string()} does not sum to "
                f"{schedule.principal.to_string()}"
            )
        if schedule.installments[-1].remaining_balance.is_positive():
            raise ScheduleInvariantError("Schedule leaves an outstanding balance")


def compute_schedule(principal: Money, annual_rate_bps: int, term_months: int,
                     first_due_date: Optional[date] = None) -> AmortizationSchedule:
    """Module-level shortcut for AmortizationCalculator().compute_schedule"""
    return AmortizationCalculator().compute_schedule(principal, annual_rate_bps, term_months, first_due_date)
