"""
Refinance Module

Quotes and executes term extensions. A refinance re-amortizes the remaining
balance at the loan's existing rate over a longer term, charges a fee from the
borrower's wallet and replaces the current schedule version with a new one.
Quotes are advisory; everything is re-validated when the refinance commits.
"""

from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import uuid

from .amortization import AmortizationCalculator, add_months
from .audit import AuditTrail, AuditEventType
from .config import LoanPolicy
from .currency import Money
from .events import DomainEvent, EventOutbox
from .exceptions import IneligibleLoanError, InsufficientFundsError, StaleQuoteError
from .health import HealthClassifier, HealthSnapshot
from .ledger import RepaymentLedger
from .loans import CLOSED_BY_REFINANCE, Loan, LoanStatus, LoanStore, RefinanceRecord, ScheduleVersion
from .logging_config import get_logger, log_action
from .recovery import RecoveryTracker
from .storage import StorageInterface
from .wallet import WalletGateway


REFINANCEABLE_STATUSES = (
    LoanStatus.ACTIVE,
    LoanStatus.LATE,
    LoanStatus.AT_RISK,
    LoanStatus.RECOVERING,
)


@dataclass(frozen=True)
class RefinanceOption:
    """One offered term extension"""
    offset_months: int
    new_term: int           # Total loan term after the refinance
    remaining_term: int     # Installments in the new schedule
    new_monthly_payment: Money
    fee: Money
    savings: Money          # Reduction of the monthly payment

    def to_dict(self) -> Dict[str, Any]:
        return {
            'offset_months': self.offset_months,
            'new_term': self.new_term,
            'remaining_term': self.remaining_term,
            'new_monthly_payment': self.new_monthly_payment.to_dict(),
            'fee': self.fee.to_dict(),
            'savings': self.savings.to_dict(),
        }


@dataclass(frozen=True)
class RefinanceQuote:
    """Refinance options for a loan at one point in time"""
    loan_id: str
    eligible: bool
    remaining_balance: Money
    current_term: int
    current_monthly_payment: Money
    fee: Money
    schedule_version: int
    options: List[RefinanceOption] = field(default_factory=list)
    reason: Optional[str] = None  # Why the loan is not eligible
    quoted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def option_for(self, new_term: int) -> Optional[RefinanceOption]:
        for option in self.options:
            if option.new_term == new_term:
                return option
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'eligible': self.eligible,
            'reason': self.reason,
            'remaining_balance': self.remaining_balance.to_dict(),
            'current_term': self.current_term,
            'current_monthly_payment': self.current_monthly_payment.to_dict(),
            'fee': self.fee.to_dict(),
            'schedule_version': self.schedule_version,
            'options': [option.to_dict() for option in self.options],
            'quoted_at': self.quoted_at.isoformat(),
        }


class RefinanceEngine:
    """
    Refinance quoting and execution

    ``execute`` runs inside one ``storage.atomic()`` block: the schedule
    version swap, fee debit, refinance record, loan update, audit entries and
    outbox events are committed together or not at all. The caller holds the
    loan's lock and flushes the outbox after commit.
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_store: LoanStore,
        ledger: RepaymentLedger,
        wallet: WalletGateway,
        outbox: EventOutbox,
        audit_trail: Optional[AuditTrail] = None,
        policy: Optional[LoanPolicy] = None,
        classifier: Optional[HealthClassifier] = None,
        calculator: Optional[AmortizationCalculator] = None,
        recovery: Optional[RecoveryTracker] = None
    ):
        self.storage = storage
        self.loan_store = loan_store
        self.ledger = ledger
        self.wallet = wallet
        self.outbox = outbox
        self.audit_trail = audit_trail
        self.policy = policy or LoanPolicy()
        self.classifier = classifier or HealthClassifier(self.policy)
        self.calculator = calculator or AmortizationCalculator()
        self.recovery = recovery or RecoveryTracker(self.policy, self.classifier)
        self.logger = get_logger("loan_health.refinance")

    def calculate_fee(self, remaining_balance: Money) -> Money:
        """Percentage of the balance, never below the minimum fee"""
        fee = remaining_balance * self.policy.refinance_fee_percent
        minimum = Money(self.policy.refinance_min_fee, remaining_balance.currency)
        return max(fee, minimum)

    def _ineligibility(self, loan: Loan, snapshot: HealthSnapshot) -> Optional[str]:
        # Stored and live status must both allow it
        for status in (loan.status, snapshot.health_status):
            if status not in REFINANCEABLE_STATUSES:
                return f"Loans in status {status.value} cannot be refinanced"
        if not snapshot.remaining_balance.is_positive():
            return "Loan has no remaining balance"
        if snapshot.remaining_balance.amount < self.policy.refinance_min_balance:
            return (f"Remaining balance {snapshot.remaining_balance.to_string()} is below the "
                    f"refinance minimum of {self.policy.refinance_min_balance}")
        return None

    def _current_snapshot(self, loan: Loan, as_of: date) -> HealthSnapshot:
        schedule = self.loan_store.get_schedule(loan.id, loan.schedule_version)
        repayments = self.ledger.list_for_loan(loan.id, loan.schedule_version)
        return self.recovery.resolve(loan, self.classifier.classify(loan, schedule, repayments, as_of))

    def get_options(self, loan_id: str, as_of: Optional[date] = None) -> RefinanceQuote:
        """
        Quote every configured term extension for a loan

        Each candidate schedule spreads the remaining balance over the unpaid
        installments plus the offset, at the existing rate, starting one month
        after ``as_of``. Ineligible loans get a quote with no options and the
        reason filled in.
        """
        as_of = as_of or date.today()
        loan = self.loan_store.require_loan(loan_id)
        snapshot = self._current_snapshot(loan, as_of)
        balance = snapshot.remaining_balance
        fee = self.calculate_fee(balance)
        reason = self._ineligibility(loan, snapshot)

        options = []
        if reason is None:
            for offset in self.policy.refinance_term_offsets:
                installments = snapshot.remaining_installments + offset
                payment = self.calculator.monthly_payment(balance, loan.annual_rate_bps, installments)
                options.append(RefinanceOption(
                    offset_months=offset,
                    new_term=loan.term_months + offset,
                    remaining_term=installments,
                    new_monthly_payment=payment,
                    fee=fee,
                    savings=loan.monthly_payment - payment
                ))

        return RefinanceQuote(
            loan_id=loan.id,
            eligible=reason is None,
            remaining_balance=balance,
            current_term=loan.term_months,
            current_monthly_payment=loan.monthly_payment,
            fee=fee,
            schedule_version=loan.schedule_version,
            options=options,
            reason=reason
        )

    def _check_quote(self, quote: RefinanceQuote, fresh: RefinanceQuote) -> None:
        tolerance = self.policy.refinance_quote_tolerance
        if quote.loan_id != fresh.loan_id:
            raise StaleQuoteError(f"Quote is for loan {quote.loan_id}, not {fresh.loan_id}")
        if quote.schedule_version != fresh.schedule_version:
            raise StaleQuoteError(
                f"Loan {fresh.loan_id} moved from schedule version {quote.schedule_version} "
                f"to {fresh.schedule_version} since the quote"
            )
        if abs(quote.remaining_balance.amount - fresh.remaining_balance.amount) > tolerance:
            raise StaleQuoteError(
                f"Remaining balance changed from {quote.remaining_balance.to_string()} "
                f"to {fresh.remaining_balance.to_string()}"
            )
        if abs(quote.fee.amount - fresh.fee.amount) > tolerance:
            raise StaleQuoteError(f"Refinance fee changed from {quote.fee.to_string()} to {fresh.fee.to_string()}")

    def execute(
        self,
        loan_id: str,
        new_term: int,
        reason: Optional[str] = None,
        quote: Optional[RefinanceQuote] = None,
        as_of: Optional[date] = None
    ) -> RefinanceRecord:
        """
        Refinance a loan to ``new_term`` total months

        Args:
            loan_id: Loan to refinance
            new_term: Total term after the refinance; must be one of the offered options
            reason: Optional borrower-supplied reason
            quote: Quote the borrower accepted, checked against current state
            as_of: Refinance date (defaults to today)

        Returns:
            The RefinanceRecord written

        Raises:
            IneligibleLoanError, StaleQuoteError, InsufficientFundsError
        """
        as_of = as_of or date.today()
        fresh = self.get_options(loan_id, as_of)
        if not fresh.eligible:
            raise IneligibleLoanError(fresh.reason)
        if quote is not None:
            self._check_quote(quote, fresh)

        option = fresh.option_for(new_term)
        if option is None:
            if quote is not None and quote.option_for(new_term) is not None:
                raise StaleQuoteError(f"A {new_term} month term is no longer offered for loan {loan_id}")
            offered = ", ".join(str(o.new_term) for o in fresh.options)
            raise IneligibleLoanError(f"Term {new_term} is not offered for loan {loan_id} (offered: {offered})")

        loan = self.loan_store.require_loan(loan_id)
        fee = self.calculate_fee(fresh.remaining_balance)
        available = self.wallet.get_available_balance(loan.borrower_id, fee.currency)
        if available < fee:
            raise InsufficientFundsError(
                f"Refinance fee {fee.to_string()} exceeds wallet balance {available.to_string()}"
            )

        with self.storage.atomic():
            now = datetime.now(timezone.utc)
            previous_status = loan.status
            previous_version = loan.schedule_version
            new_version = previous_version + 1

            current = self.loan_store.get_schedule(loan_id, previous_version)
            current.closed_at = now
            current.closed_reason = CLOSED_BY_REFINANCE
            self.loan_store.save_schedule(current)

            schedule = self.calculator.compute_schedule(
                fresh.remaining_balance,
                loan.annual_rate_bps,
                option.remaining_term,
                first_due_date=add_months(as_of, 1)
            )
            version = ScheduleVersion.from_schedule(loan_id, new_version, schedule, created_at=now)
            self.loan_store.save_schedule(version)

            self.wallet.debit(loan.borrower_id, fee, reference=f"refinance:{loan_id}:{new_version}")

            record = RefinanceRecord(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                previous_term=loan.term_months,
                new_term=option.new_term,
                previous_monthly_payment=loan.monthly_payment,
                new_monthly_payment=version.monthly_payment,
                fee=fee,
                remaining_balance=fresh.remaining_balance,
                previous_schedule_version=previous_version,
                new_schedule_version=new_version,
                previous_status=previous_status,
                reason=reason
            )
            self.loan_store.save_refinance_record(record)

            loan.term_months = option.new_term
            loan.monthly_payment = version.monthly_payment
            loan.schedule_version = new_version
            loan.remaining_balance = fresh.remaining_balance
            loan.status = LoanStatus.ACTIVE
            loan.days_behind = 0
            loan.missed_payments = 0
            loan.recovery_progress = 0
            loan.recovery_started_at = None
            loan.last_classified_at = as_of
            loan.refinance_count += 1
            self.loan_store.save_loan(loan)

            self._audit(AuditEventType.SCHEDULE_CLOSED, "schedule", current.record_id,
                        {'loan_id': loan_id, 'version': previous_version, 'reason': current.closed_reason})
            self._audit(AuditEventType.SCHEDULE_CREATED, "schedule", version.record_id,
                        {'loan_id': loan_id, 'version': new_version, 'term_months': version.term_months,
                         'monthly_payment': str(version.monthly_payment.amount)})
            self._audit(AuditEventType.REFINANCE_EXECUTED, "loan", loan_id, record.to_dict())

            self.outbox.enqueue(DomainEvent.REFINANCE_COMPLETED, "loan", loan_id, {
                'loan_id': loan_id,
                'record': record.to_dict()
            })
            if previous_status != LoanStatus.ACTIVE:
                self._audit(AuditEventType.HEALTH_CHANGED, "loan", loan_id, {
                    'old_status': previous_status.value,
                    'new_status': LoanStatus.ACTIVE.value,
                    'days_behind': 0,
                    'cause': 'refinance'
                })
                self.outbox.enqueue(DomainEvent.HEALTH_CHANGED, "loan", loan_id, {
                    'loan_id': loan_id,
                    'old_status': previous_status.value,
                    'new_status': LoanStatus.ACTIVE.value,
                    'days_behind': 0
                })

        log_action(self.logger, "info",
                   f"Refinanced loan {loan_id} from {record.previous_term} to {record.new_term} months",
                   loan_id=loan_id, action="refinance",
                   extra={'fee': str(fee.amount), 'new_monthly_payment': str(record.new_monthly_payment.amount)})
        return record

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id: str,
               metadata: Dict[str, Any]) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(event_type, entity_type, entity_id, metadata)
