"""
Recovery Tracking Module

A delinquent loan that catches up does not return to ``active`` at once: it
moves to ``recovering`` and must make consecutive on-time payments first.

Rules applied here:
    - a qualifying repayment leaves no missed installment behind as of its
      posting date and completes an installment that was not yet due
    - entering ``recovering`` on a qualifying repayment counts as payment 1
    - while recovering, a partial repayment or a missed installment resets
      progress to 0
    - reaching the required count returns the loan to ``active``
"""

from dataclasses import dataclass, field, replace
from typing import Iterable, List, Optional, Tuple

from .config import LoanPolicy
from .health import HealthClassifier, HealthSnapshot, allocate
from .ledger import Repayment
from .loans import DELINQUENT_STATUSES, Loan, LoanStatus, ScheduleVersion


@dataclass(frozen=True)
class RecoveryUpdate:
    """What one repayment means for recovery"""
    repayment_id: str
    qualifying: bool
    partial: bool                # Completed no installment
    cured_missed: bool           # Completed an installment already missed when posted
    completed_sequences: Tuple[int, ...] = field(default_factory=tuple)


class RecoveryTracker:
    """
    Recovery sub-machine layered over the threshold classification
    """

    def __init__(self, policy: Optional[LoanPolicy] = None, classifier: Optional[HealthClassifier] = None):
        self.policy = policy or LoanPolicy()
        self.classifier = classifier or HealthClassifier(self.policy)

    def observe_repayment(
        self,
        loan: Loan,
        schedule: ScheduleVersion,
        prior_repayments: Iterable[Repayment],
        repayment: Repayment
    ) -> RecoveryUpdate:
        """Evaluate one repayment against the schedule as of its posting date"""
        prior: List[Repayment] = [
            r for r in prior_repayments
            if r.id != repayment.id and r.schedule_version == schedule.version
        ]
        posted = repayment.posted_date

        before = allocate(schedule, [r for r in prior if r.posted_date <= posted])
        missed_before = {
            a.installment.sequence for a in before.installments if self.classifier.is_missed(a, posted)
        }

        after = self.classifier.classify(loan, schedule, prior + [repayment], as_of=posted)
        completed = tuple(allocate(schedule, prior + [repayment]).completed_by.get(repayment.id, []))
        due_by_sequence = {i.sequence: i.due_date for i in schedule.installments}

        paid_ahead = any(due_by_sequence[s] >= posted for s in completed)
        qualifying = bool(completed) and after.missed_payments == 0 and paid_ahead

        return RecoveryUpdate(
            repayment_id=repayment.id,
            qualifying=qualifying,
            partial=not completed,
            cured_missed=any(s in missed_before for s in completed),
            completed_sequences=completed
        )

    def resolve(self, loan: Loan, snapshot: HealthSnapshot,
                update: Optional[RecoveryUpdate] = None) -> HealthSnapshot:
        """
        Final status and recovery progress for a loan

        ``snapshot`` carries the threshold-table status; the stored loan
        status decides whether recovery precedence applies.
        """
        required = self.policy.recovery_payments_required
        threshold = snapshot.health_status

        if threshold == LoanStatus.PAID_OFF:
            return replace(snapshot, recovery_progress=0)

        if loan.status == LoanStatus.RECOVERING:
            if snapshot.days_behind > 0:
                return replace(snapshot, recovery_progress=0)
            progress = loan.recovery_progress
            if update is not None:
                if update.partial or update.cured_missed:
                    progress = 0
                if update.qualifying:
                    progress += 1
            if progress >= required:
                return replace(snapshot, health_status=LoanStatus.ACTIVE, recovery_progress=0)
            return replace(snapshot, health_status=LoanStatus.RECOVERING, recovery_progress=progress)

        if loan.status in DELINQUENT_STATUSES:
            if snapshot.days_behind > 0:
                return replace(snapshot, recovery_progress=0)
            # Caught up
            progress = 1 if update is not None and update.qualifying else 0
            if progress >= required:
                return replace(snapshot, health_status=LoanStatus.ACTIVE, recovery_progress=0)
            return replace(snapshot, health_status=LoanStatus.RECOVERING, recovery_progress=progress)

        return replace(snapshot, recovery_progress=0)
