"""
Loan Health Service

Orchestrates the loan lifecycle: intake, repayment processing, periodic
classification and refinance. This is the only component that writes loan
state. Every mutation holds the loan's lock and runs inside one
``storage.atomic()`` block; domain events are stored in the outbox inside that
block and dispatched once it has committed.
"""

from datetime import datetime, timezone, date
from typing import Callable, Dict, List, Optional, Tuple, Union
import uuid

from .amortization import AmortizationCalculator, add_months
from .audit import AuditTrail, AuditEventType
from .config import LoanPolicy
from .currency import Money
from .events import DomainEvent, EventOutbox
from .exceptions import DuplicateLoanError, LoanHealthError, NegativeBalanceError
from .health import HealthClassifier, HealthSnapshot
from .ledger import Repayment, RepaymentLedger
from .locking import LoanLockManager
from .logging_config import get_logger, log_action
from .loans import DELINQUENT_STATUSES, Loan, LoanStatus, LoanStore, RefinanceRecord, ScheduleVersion
from .recovery import RecoveryTracker, RecoveryUpdate
from .refinance import RefinanceEngine, RefinanceQuote
from .storage import StorageInterface
from .wallet import WalletGateway


# Health statuses reported by the at-risk listing
WATCHLIST_STATUSES = (
    LoanStatus.LATE,
    LoanStatus.AT_RISK,
    LoanStatus.DEFAULTED,
    LoanStatus.RECOVERING,
)


class LoanHealthService:
    """
    Loan health orchestration and query API
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: RepaymentLedger,
        wallet: WalletGateway,
        outbox: EventOutbox,
        audit_trail: Optional[AuditTrail] = None,
        policy: Optional[LoanPolicy] = None,
        lock_manager: Optional[LoanLockManager] = None,
        clock: Optional[Callable[[], date]] = None
    ):
        self.storage = storage
        self.ledger = ledger
        self.wallet = wallet
        self.outbox = outbox
        self.audit_trail = audit_trail
        self.policy = policy or LoanPolicy()
        self.locks = lock_manager or LoanLockManager()
        self.clock = clock or date.today

        self.loan_store = LoanStore(storage)
        self.calculator = AmortizationCalculator()
        self.classifier = HealthClassifier(self.policy)
        self.recovery = RecoveryTracker(self.policy, self.classifier)
        self.refinance_engine = RefinanceEngine(
            storage, self.loan_store, ledger, wallet, outbox,
            audit_trail=audit_trail,
            policy=self.policy,
            classifier=self.classifier,
            calculator=self.calculator,
            recovery=self.recovery
        )
        self.logger = get_logger("loan_health.service")

    # Commands

    def register_loan(
        self,
        borrower_id: str,
        principal: Money,
        annual_rate_bps: int,
        term_months: int,
        originated_at: Optional[date] = None,
        first_due_date: Optional[date] = None,
        loan_id: Optional[str] = None
    ) -> Loan:
        """
        Take over an externally originated loan

        Args:
            borrower_id: Borrower the loan belongs to
            principal: Disbursed amount
            annual_rate_bps: Rate fixed by the borrower's credit tier, in basis points
            term_months: Number of monthly installments
            originated_at: Origination date (defaults to today)
            first_due_date: Due date of installment 1 (defaults to one month after origination)
            loan_id: Identifier assigned by the origination system

        Returns:
            The loan, status ``active`` at schedule version 0
        """
        originated_at = originated_at or self.clock()
        first_due_date = first_due_date or add_months(originated_at, 1)
        loan_id = loan_id or str(uuid.uuid4())

        schedule = self.calculator.compute_schedule(principal, annual_rate_bps, term_months, first_due_date)

        with self.locks.hold(loan_id):
            with self.storage.atomic():
                if self.loan_store.get_loan(loan_id) is not None:
                    raise DuplicateLoanError(f"Loan {loan_id} is already registered")

                now = datetime.now(timezone.utc)
                loan = Loan(
                    id=loan_id,
                    created_at=now,
                    updated_at=now,
                    borrower_id=borrower_id,
                    principal=principal,
                    annual_rate_bps=annual_rate_bps,
                    term_months=term_months,
                    monthly_payment=schedule.monthly_payment,
                    originated_at=originated_at,
                    last_classified_at=originated_at
                )
                version = ScheduleVersion.from_schedule(loan_id, 0, schedule, created_at=now)
                self.loan_store.save_schedule(version)
                self.loan_store.save_loan(loan)

                self._audit(AuditEventType.LOAN_REGISTERED, loan_id, {
                    'borrower_id': borrower_id,
                    'principal': principal.to_string(),
                    'annual_rate_bps': annual_rate_bps,
                    'term_months': term_months,
                    'monthly_payment': schedule.monthly_payment.to_string(),
                    'first_due_date': first_due_date.isoformat()
                })
                self._audit(AuditEventType.SCHEDULE_CREATED, loan_id, {
                    'version': 0,
                    'term_months': term_months,
                    'total_interest': str(schedule.total_interest.amount)
                })

        log_action(self.logger, "info", f"Registered loan {loan_id} for borrower {borrower_id}",
                   loan_id=loan_id, action="register_loan",
                   extra={'principal': str(principal.amount), 'term_months': term_months})
        return loan

    def on_repayment_posted(self, loan_id: str, repayment: Repayment) -> HealthSnapshot:
        """
        Handle a repayment posted by the payment processor

        Idempotent by repayment id: a repayment that was already recorded is
        ignored. Otherwise the repayment is appended to the ledger, recovery
        and classification are applied and the loan is updated, all in one
        commit.

        Returns:
            The loan's health after the repayment
        """
        if repayment.loan_id != loan_id:
            raise ValueError(f"Repayment {repayment.id} belongs to loan {repayment.loan_id}, not {loan_id}")

        with self.locks.hold(loan_id):
            with self.storage.atomic():
                loan = self.loan_store.require_loan(loan_id)

                if self.ledger.has(repayment.id):
                    self._audit(AuditEventType.REPAYMENT_DUPLICATE_IGNORED, loan_id, {
                        'repayment_id': repayment.id
                    })
                    log_action(self.logger, "info", f"Ignoring duplicate repayment {repayment.id}",
                               loan_id=loan_id, action="repayment_duplicate")
                    duplicate = True
                else:
                    duplicate = False
                    snapshot = self._apply_repayment(loan, repayment)

            if duplicate:
                snapshot = self.get_snapshot(loan_id)

        self.outbox.flush()
        return snapshot

    def _apply_repayment(self, loan: Loan, repayment: Repayment) -> HealthSnapshot:
        if repayment.amount.currency != loan.currency:
            raise ValueError(
                f"Repayment currency {repayment.amount.currency.code} does not match loan currency {loan.currency.code}"
            )

        stamped = Repayment(
            id=repayment.id,
            loan_id=loan.id,
            amount=repayment.amount,
            posted_at=repayment.posted_at,
            schedule_version=loan.schedule_version,
            recorded_at=repayment.recorded_at
        )
        self.ledger.append(stamped)

        audit_metadata = {
            'repayment_id': stamped.id,
            'amount': stamped.amount.to_string(),
            'posted_at': stamped.posted_at.isoformat(),
            'schedule_version': stamped.schedule_version
        }

        if loan.is_paid_off:
            self._audit(AuditEventType.REPAYMENT_APPLIED, loan.id, dict(audit_metadata, unapplied=True))
            log_action(self.logger, "warning",
                       f"Repayment {stamped.id} posted to paid off loan {loan.id}; recorded as unapplied",
                       loan_id=loan.id, action="repayment_unapplied",
                       extra={'amount': str(stamped.amount.amount)})
            return self._snapshot_for(loan, self._as_of(stamped))

        schedule = self.loan_store.get_schedule(loan.id, loan.schedule_version)
        repayments = self.ledger.list_for_loan(loan.id, loan.schedule_version)
        prior = [r for r in repayments if r.id != stamped.id]

        update = self.recovery.observe_repayment(loan, schedule, prior, stamped)
        snapshot = self.classifier.classify(loan, schedule, repayments, as_of=self._as_of(stamped))
        resolved = self.recovery.resolve(loan, snapshot, update)

        self._audit(AuditEventType.REPAYMENT_APPLIED, loan.id, dict(
            audit_metadata,
            qualifying=update.qualifying,
            completed_installments=list(update.completed_sequences),
            remaining_balance=resolved.remaining_balance.to_string()
        ))
        self.outbox.enqueue(DomainEvent.REPAYMENT_APPLIED, "loan", loan.id, {
            'loan_id': loan.id,
            'repayment_id': stamped.id,
            'amount': stamped.amount.to_dict(),
            'remaining_balance': resolved.remaining_balance.to_dict()
        })
        self._apply_snapshot(loan, resolved, update)
        return resolved

    def run_classification(self, loan_id: str, as_of: Optional[date] = None) -> HealthSnapshot:
        """
        Recompute and store a loan's health as of a date

        Idempotent: a second run with nothing changed writes the same values
        and emits no events. Paid off loans are never reclassified.
        """
        as_of = as_of or self.clock()

        with self.locks.hold(loan_id):
            with self.storage.atomic():
                loan = self.loan_store.require_loan(loan_id)
                snapshot = self._snapshot_for(loan, as_of)
                if not loan.is_paid_off:
                    self._apply_snapshot(loan, snapshot)

        self.outbox.flush()
        return snapshot

    def reclassify_all(self, as_of: Optional[date] = None) -> Dict[str, int]:
        """Classify every loan that is not paid off"""
        results = {"loans_processed": 0, "status_changes": 0, "errors": 0}
        as_of = as_of or self.clock()

        for loan in self.loan_store.find_loans():
            if loan.is_paid_off:
                continue
            try:
                snapshot = self.run_classification(loan.id, as_of)
            except LoanHealthError as e:
                results["errors"] += 1
                log_action(self.logger, "error", f"Classification failed: {e}",
                           loan_id=loan.id, action="reclassify")
                continue

            results["loans_processed"] += 1
            if snapshot.health_status != loan.status:
                results["status_changes"] += 1

        return results

    def get_refinance_options(self, loan_id: str) -> RefinanceQuote:
        """Advisory refinance quote; taken without the loan's lock"""
        return self.refinance_engine.get_options(loan_id, as_of=self.clock())

    def execute_refinance(
        self,
        loan_id: str,
        new_term: int,
        reason: Optional[str] = None,
        quote: Optional[RefinanceQuote] = None
    ) -> RefinanceRecord:
        """Refinance under the loan's lock; events are dispatched after commit"""
        with self.locks.hold(loan_id):
            record = self.refinance_engine.execute(loan_id, new_term, reason=reason, quote=quote,
                                                   as_of=self.clock())
        self.outbox.flush()
        return record

    # Queries

    def get_loan(self, loan_id: str) -> Loan:
        return self.loan_store.require_loan(loan_id)

    def get_snapshot(self, loan_id: str, as_of: Optional[date] = None) -> HealthSnapshot:
        """Health recomputed from the ledger without touching stored state"""
        loan = self.loan_store.require_loan(loan_id)
        return self._snapshot_for(loan, as_of or self.clock())

    def get_schedule(self, loan_id: str, version: Optional[int] = None) -> ScheduleVersion:
        return self.loan_store.get_schedule(loan_id, version)

    def list_schedule_versions(self, loan_id: str) -> List[ScheduleVersion]:
        self.loan_store.require_loan(loan_id)
        return self.loan_store.list_schedule_versions(loan_id)

    def list_loans(self, health_status: Optional[Union[LoanStatus, str]] = None) -> List[Loan]:
        """Stored loans, optionally filtered by health status"""
        if isinstance(health_status, str):
            health_status = LoanStatus(health_status)
        loans = self.loan_store.find_loans(health_status)
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def get_refinance_history(self, loan_id: str) -> List[RefinanceRecord]:
        self.loan_store.require_loan(loan_id)
        return self.loan_store.get_refinance_records(loan_id)

    def get_at_risk_loans(self, as_of: Optional[date] = None) -> List[Tuple[Loan, HealthSnapshot]]:
        """
        Loans whose live health is late, at risk, defaulted or recovering

        Health is recomputed for every open loan, so loans whose stored status
        is stale are still reported. Worst first.
        """
        as_of = as_of or self.clock()
        results = []
        for loan in self.loan_store.find_loans():
            if loan.is_paid_off:
                continue
            snapshot = self._snapshot_for(loan, as_of)
            if snapshot.health_status in WATCHLIST_STATUSES:
                results.append((loan, snapshot))
        results.sort(key=lambda item: (-item[1].days_behind, item[0].id))
        return results

    # Internals

    def _as_of(self, repayment: Repayment) -> date:
        return max(self.clock(), repayment.posted_date)

    def _snapshot_for(self, loan: Loan, as_of: date) -> HealthSnapshot:
        schedule = self.loan_store.get_schedule(loan.id, loan.schedule_version)
        repayments = self.ledger.list_for_loan(loan.id, loan.schedule_version)
        snapshot = self.classifier.classify(loan, schedule, repayments, as_of)
        return self.recovery.resolve(loan, snapshot)

    def _apply_snapshot(self, loan: Loan, snapshot: HealthSnapshot,
                        update: Optional[RecoveryUpdate] = None) -> None:
        """Write a resolved snapshot to the loan and record its consequences"""
        if snapshot.remaining_balance.is_negative():
            raise NegativeBalanceError(
                f"Loan {loan.id} would reach a negative balance of {snapshot.remaining_balance.to_string()}"
            )

        old_status = loan.status
        old_progress = loan.recovery_progress
        new_status = snapshot.health_status

        loan.status = new_status
        loan.days_behind = snapshot.days_behind
        loan.missed_payments = snapshot.missed_payments
        loan.recovery_progress = snapshot.recovery_progress
        loan.remaining_balance = snapshot.remaining_balance
        loan.last_classified_at = snapshot.as_of
        if new_status == LoanStatus.RECOVERING:
            if old_status != LoanStatus.RECOVERING:
                loan.recovery_started_at = datetime.now(timezone.utc)
        else:
            loan.recovery_started_at = None
        self.loan_store.save_loan(loan)

        if old_status == new_status:
            if new_status == LoanStatus.RECOVERING and old_progress != loan.recovery_progress:
                event_type = (AuditEventType.RECOVERY_PROGRESS if loan.recovery_progress > old_progress
                              else AuditEventType.RECOVERY_RESET)
                self._audit(event_type, loan.id, {
                    'previous_progress': old_progress,
                    'recovery_progress': loan.recovery_progress,
                    'repayment_id': update.repayment_id if update else None
                })
            return

        self._audit(AuditEventType.HEALTH_CHANGED, loan.id, {
            'old_status': old_status.value,
            'new_status': new_status.value,
            'days_behind': snapshot.days_behind,
            'missed_payments': snapshot.missed_payments
        })
        self.outbox.enqueue(DomainEvent.HEALTH_CHANGED, "loan", loan.id, {
            'loan_id': loan.id,
            'old_status': old_status.value,
            'new_status': new_status.value,
            'days_behind': snapshot.days_behind
        })
        log_action(self.logger, "info", f"Loan {loan.id} moved from {old_status.value} to {new_status.value}",
                   loan_id=loan.id, action="health_changed",
                   extra={'days_behind': snapshot.days_behind})

        recovering_from = old_status == LoanStatus.RECOVERING or old_status in DELINQUENT_STATUSES
        if new_status == LoanStatus.RECOVERING:
            self._audit(AuditEventType.RECOVERY_STARTED, loan.id, {
                'previous_status': old_status.value,
                'recovery_progress': loan.recovery_progress
            })
            self.outbox.enqueue(DomainEvent.RECOVERY_STARTED, "loan", loan.id, {
                'loan_id': loan.id,
                'borrower_id': loan.borrower_id,
                'previous_status': old_status.value
            })
        elif new_status == LoanStatus.ACTIVE and recovering_from:
            self._audit(AuditEventType.RECOVERY_COMPLETED, loan.id, {
                'previous_status': old_status.value
            })
            self.outbox.enqueue(DomainEvent.RECOVERY_COMPLETED, "loan", loan.id, {
                'loan_id': loan.id,
                'borrower_id': loan.borrower_id
            })
        elif new_status == LoanStatus.PAID_OFF:
            self._audit(AuditEventType.LOAN_PAID_OFF, loan.id, {'previous_status': old_status.value})
            self.outbox.enqueue(DomainEvent.LOAN_PAID_OFF, "loan", loan.id, {
                'loan_id': loan.id,
                'borrower_id': loan.borrower_id
            })

    def _audit(self, event_type: AuditEventType, loan_id: str, metadata: Dict) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(event_type, "loan", loan_id, metadata)
