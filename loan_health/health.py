"""
Health Classification Module

Allocates repayments to installments (FIFO, interest before principal),
derives days behind and missed installments as of a date, and maps days
behind to a health status through the policy threshold table.

Classification is a pure function of (loan, schedule, repayments, as_of):
running it twice gives the same snapshot.
"""

from datetime import date
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .amortization import Installment
from .config import LoanPolicy
from .currency import Money
from .ledger import Repayment, repayment_order
from .loans import Loan, LoanStatus, ScheduleVersion


@dataclass
class InstallmentAllocation:
    """How much of one installment the repayments covered"""
    installment: Installment
    interest_paid: Money
    principal_paid: Money
    satisfied_on: Optional[date] = None  # Posting date of the repayment that completed it

    @property
    def paid(self) -> Money:
        return self.interest_paid + self.principal_paid

    @property
    def outstanding(self) -> Money:
        return self.installment.amount_due - self.paid

    @property
    def is_satisfied(self) -> bool:
        return self.paid >= self.installment.amount_due


@dataclass
class Allocation:
    """Result of applying repayments to a schedule version"""
    installments: List[InstallmentAllocation]
    principal_paid: Money
    interest_paid: Money
    unapplied: Money
    completed_by: Dict[str, List[int]] = field(default_factory=dict)  # repayment id -> sequences

    def unsatisfied(self) -> List[InstallmentAllocation]:
        return [a for a in self.installments if not a.is_satisfied]


def allocate(schedule: ScheduleVersion, repayments: Iterable[Repayment]) -> Allocation:
    """
    Apply repayments FIFO to the oldest unsatisfied installment

    Each repayment pays the open installment's interest first, then its
    principal, then moves on to the next installment. A satisfied installment
    is never reopened; money left after the final installment is unapplied.
    """
    currency = schedule.principal.currency
    zero = Money.zero(currency)
    allocations = [InstallmentAllocation(i, zero, zero) for i in schedule.installments]
    completed_by: Dict[str, List[int]] = {}
    unapplied = zero
    index = 0

    for repayment in sorted(repayments, key=repayment_order):
        remaining = repayment.amount
        while remaining.is_positive() and index < len(allocations):
            current = allocations[index]
            if current.is_satisfied:
                # Zero-amount installment
                current.satisfied_on = current.satisfied_on or repayment.posted_date
                index += 1
                continue

            interest_due = current.installment.interest_portion - current.interest_paid
            interest = min(remaining, interest_due)
            current.interest_paid = current.interest_paid + interest
            remaining = remaining - interest

            principal_due = current.installment.principal_portion - current.principal_paid
            principal = min(remaining, principal_due)
            current.principal_paid = current.principal_paid + principal
            remaining = remaining - principal

            if current.is_satisfied:
                current.satisfied_on = repayment.posted_date
                completed_by.setdefault(repayment.id, []).append(current.installment.sequence)
                index += 1

        unapplied = unapplied + remaining

    principal_paid = zero
    interest_paid = zero
    for allocation in allocations:
        principal_paid = principal_paid + allocation.principal_paid
        interest_paid = interest_paid + allocation.interest_paid

    return Allocation(
        installments=allocations,
        principal_paid=principal_paid,
        interest_paid=interest_paid,
        unapplied=unapplied,
        completed_by=completed_by
    )


@dataclass
class HealthSnapshot:
    """Derived health of a loan as of one date"""
    loan_id: str
    days_behind: int
    missed_payments: int
    health_status: LoanStatus
    recovery_progress: int
    remaining_balance: Money
    schedule_version: int
    as_of: date
    next_due_date: Optional[date] = None
    oldest_unpaid_sequence: Optional[int] = None
    remaining_installments: int = 0
    amount_overdue: Optional[Money] = None
    unapplied_amount: Optional[Money] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'days_behind': self.days_behind,
            'missed_payments': self.missed_payments,
            'health_status': self.health_status.value,
            'recovery_progress': self.recovery_progress,
            'remaining_balance': self.remaining_balance.to_dict(),
            'schedule_version': self.schedule_version,
            'as_of': self.as_of.isoformat(),
            'next_due_date': self.next_due_date.isoformat() if self.next_due_date else None,
            'oldest_unpaid_sequence': self.oldest_unpaid_sequence,
            'remaining_installments': self.remaining_installments,
            'amount_overdue': self.amount_overdue.to_dict() if self.amount_overdue else None,
            'unapplied_amount': self.unapplied_amount.to_dict() if self.unapplied_amount else None,
        }


class HealthClassifier:
    """Threshold-table delinquency classifier"""

    def __init__(self, policy: Optional[LoanPolicy] = None):
        self.policy = policy or LoanPolicy()

    def status_for_days(self, days_behind: int) -> LoanStatus:
        """Map days behind to a health status"""
        if days_behind <= 0:
            return LoanStatus.ACTIVE
        elif days_behind <= self.policy.late_max_days:
            return LoanStatus.LATE
        elif days_behind <= self.policy.at_risk_max_days:
            return LoanStatus.AT_RISK
        else:
            return LoanStatus.DEFAULTED

    def is_missed(self, allocation: InstallmentAllocation, as_of: date) -> bool:
        """Past due beyond the grace period and not fully covered"""
        due = allocation.installment.due_date
        return (as_of - due).days > self.policy.grace_period_days and not allocation.is_satisfied

    def classify(
        self,
        loan: Loan,
        schedule: ScheduleVersion,
        repayments: Iterable[Repayment],
        as_of: Optional[date] = None
    ) -> HealthSnapshot:
        """
        Classify a loan against one schedule version

        Only repayments recorded for that version and posted on or before
        ``as_of`` are allocated. The returned status is the threshold-table
        status (or ``paid_off``); recovery precedence is applied separately
        by the recovery tracker. ``recovery_progress`` is carried over from
        the loan unchanged.
        """
        as_of = as_of or date.today()
        applicable = [
            r for r in repayments
            if r.schedule_version == schedule.version and r.posted_date <= as_of
        ]
        allocation = allocate(schedule, applicable)

        missed = [a for a in allocation.installments if self.is_missed(a, as_of)]
        days_behind = (as_of - missed[0].installment.due_date).days if missed else 0

        amount_overdue = Money.zero(schedule.principal.currency)
        for item in missed:
            amount_overdue = amount_overdue + item.outstanding

        remaining_balance = schedule.principal - allocation.principal_paid
        unsatisfied = allocation.unsatisfied()

        if remaining_balance.is_zero():
            status = LoanStatus.PAID_OFF
        else:
            status = self.status_for_days(days_behind)

        return HealthSnapshot(
            loan_id=loan.id,
            days_behind=days_behind,
            missed_payments=len(missed),
            health_status=status,
            recovery_progress=loan.recovery_progress,
            remaining_balance=remaining_balance,
            schedule_version=schedule.version,
            as_of=as_of,
            next_due_date=unsatisfied[0].installment.due_date if unsatisfied else None,
            oldest_unpaid_sequence=unsatisfied[0].installment.sequence if unsatisfied else None,
            remaining_installments=len(unsatisfied),
            amount_overdue=amount_overdue,
            unapplied_amount=allocation.unapplied
        )
