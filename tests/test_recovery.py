"""
Test suite for recovery tracking

A delinquent loan that catches up must make three consecutive on-time
payments before it is active again.
"""

from datetime import date, datetime, timezone
from dataclasses import replace
from decimal import Decimal
from unittest.mock import Mock

from loan_health.amortization import AmortizationCalculator
from loan_health.audit import AuditTrail, AuditEventType
from loan_health.config import LoanPolicy
from loan_health.currency import Money, Currency
from loan_health.events import DomainEvent, EventDispatcher, EventOutbox
from loan_health.health import HealthClassifier
from loan_health.ledger import Repayment, RepaymentLedger
from loan_health.loans import Loan, LoanStatus, ScheduleVersion
from loan_health.recovery import RecoveryTracker, RecoveryUpdate
from loan_health.service import LoanHealthService
from loan_health.storage import InMemoryStorage
from loan_health.wallet import StorageWallet


def usd(amount: str) -> Money:
    return Money(Decimal(amount), Currency.USD)


def repayment(repayment_id, amount, posted, loan_id="L1"):
    return Repayment(
        id=repayment_id,
        loan_id=loan_id,
        amount=usd(amount),
        posted_at=datetime(posted.year, posted.month, posted.day, 12, tzinfo=timezone.utc)
    )


class Clock:
    """Settable clock for the service"""

    def __init__(self, today: date):
        self.today = today

    def __call__(self) -> date:
        return self.today


class TestObserveRepayment:
    """Test what a single repayment means for recovery"""

    def setup_method(self):
        self.tracker = RecoveryTracker()
        schedule = AmortizationCalculator().compute_schedule(usd('1200.00'), 0, 12, date(2024, 2, 1))
        now = datetime.now(timezone.utc)
        self.loan = Loan(
            id="L1", created_at=now, updated_at=now, borrower_id="B1",
            principal=usd('1200.00'), annual_rate_bps=0, term_months=12,
            monthly_payment=schedule.monthly_payment, originated_at=date(2024, 1, 1),
            status=LoanStatus.LATE
        )
        self.schedule = ScheduleVersion.from_schedule("L1", 0, schedule)

    def test_catch_up_payment_cures_but_does_not_qualify(self):
        """Test paying an already missed installment"""
        update = self.tracker.observe_repayment(
            self.loan, self.schedule, [], repayment("r1", '100.00', date(2024, 2, 10))
        )

        assert update.completed_sequences == (1,)
        assert update.cured_missed
        assert not update.qualifying
        assert not update.partial

    def test_payment_before_due_date_qualifies(self):
        """Test an on-time payment"""
        update = self.tracker.observe_repayment(
            self.loan, self.schedule,
            [repayment("r1", '100.00', date(2024, 2, 10))],
            repayment("r2", '100.00', date(2024, 2, 25))
        )

        assert update.completed_sequences == (2,)
        assert update.qualifying
        assert not update.cured_missed

    def test_partial_payment(self):
        """Test a payment that completes no installment"""
        update = self.tracker.observe_repayment(
            self.loan, self.schedule, [], repayment("r1", '50.00', date(2024, 1, 25))
        )

        assert update.partial
        assert not update.qualifying
        assert update.completed_sequences == ()

    def test_payment_covering_arrears_and_next_installment(self):
        """Test one payment that cures missed installments and pays ahead"""
        update = self.tracker.observe_repayment(
            self.loan, self.schedule, [], repayment("r1", '300.00', date(2024, 3, 10))
        )

        assert update.completed_sequences == (1, 2, 3)
        assert update.cured_missed
        assert update.qualifying


class TestResolve:
    """Test recovery precedence over the threshold status"""

    def setup_method(self):
        self.tracker = RecoveryTracker()
        self.classifier = HealthClassifier()
        schedule = AmortizationCalculator().compute_schedule(usd('1200.00'), 0, 12, date(2024, 2, 1))
        now = datetime.now(timezone.utc)
        self.loan = Loan(
            id="L1", created_at=now, updated_at=now, borrower_id="B1",
            principal=usd('1200.00'), annual_rate_bps=0, term_months=12,
            monthly_payment=schedule.monthly_payment, originated_at=date(2024, 1, 1)
        )
        self.schedule = ScheduleVersion.from_schedule("L1", 0, schedule)
        self.current = self.classifier.classify(self.loan, self.schedule, [], as_of=date(2024, 1, 15))
        self.behind = self.classifier.classify(self.loan, self.schedule, [], as_of=date(2024, 2, 10))

    def _update(self, qualifying=False, partial=False, cured_missed=False):
        return RecoveryUpdate(repayment_id="r", qualifying=qualifying, partial=partial,
                              cured_missed=cured_missed)

    def test_active_loan_follows_threshold(self):
        """Test that recovery does not apply to a loan in good standing"""
        assert self.tracker.resolve(self.loan, self.current).health_status == LoanStatus.ACTIVE
        assert self.tracker.resolve(self.loan, self.behind).health_status == LoanStatus.LATE

    def test_delinquent_loan_catching_up_enters_recovery(self):
        """Test entering recovering, counting a qualifying payment as the first"""
        self.loan.status = LoanStatus.AT_RISK

        cured = self.tracker.resolve(self.loan, self.current, self._update(cured_missed=True))
        assert cured.health_status == LoanStatus.RECOVERING
        assert cured.recovery_progress == 0

        qualified = self.tracker.resolve(self.loan, self.current, self._update(qualifying=True))
        assert qualified.health_status == LoanStatus.RECOVERING
        assert qualified.recovery_progress == 1

    def test_delinquent_loan_still_behind(self):
        """Test that a loan still behind keeps its threshold status"""
        self.loan.status = LoanStatus.DEFAULTED
        resolved = self.tracker.resolve(self.loan, self.behind, self._update(qualifying=True))
        assert resolved.health_status == LoanStatus.LATE
        assert resolved.recovery_progress == 0

    def test_third_qualifying_payment_completes_recovery(self):
        """Test returning to active"""
        self.loan.status = LoanStatus.RECOVERING
        self.loan.recovery_progress = 2

        resolved = self.tracker.resolve(self.loan, self.current, self._update(qualifying=True))
        assert resolved.health_status == LoanStatus.ACTIVE
        assert resolved.recovery_progress == 0

    def test_partial_or_cured_payment_resets_progress(self):
        """Test that progress restarts from zero"""
        self.loan.status = LoanStatus.RECOVERING
        self.loan.recovery_progress = 2

        partial = self.tracker.resolve(self.loan, self.current, self._update(partial=True))
        assert partial.health_status == LoanStatus.RECOVERING
        assert partial.recovery_progress == 0

        cured_and_ahead = self.tracker.resolve(
            self.loan, self.current, self._update(qualifying=True, cured_missed=True)
        )
        assert cured_and_ahead.recovery_progress == 1

    def test_falling_behind_while_recovering(self):
        """Test that a missed installment ends recovery"""
        self.loan.status = LoanStatus.RECOVERING
        self.loan.recovery_progress = 2

        resolved = self.tracker.resolve(self.loan, self.behind)
        assert resolved.health_status == LoanStatus.LATE
        assert resolved.recovery_progress == 0

    def test_classification_without_repayment_keeps_progress(self):
        """Test that a periodic run leaves progress alone"""
        self.loan.status = LoanStatus.RECOVERING
        self.loan.recovery_progress = 2

        resolved = self.tracker.resolve(self.loan, self.current)
        assert resolved.health_status == LoanStatus.RECOVERING
        assert resolved.recovery_progress == 2

    def test_paid_off_wins(self):
        """Test that a zero balance overrides recovery"""
        self.loan.status = LoanStatus.RECOVERING
        self.loan.recovery_progress = 1
        paid = replace(self.current, health_status=LoanStatus.PAID_OFF, remaining_balance=usd('0'))

        resolved = self.tracker.resolve(self.loan, paid, self._update(qualifying=True))
        assert resolved.health_status == LoanStatus.PAID_OFF
        assert resolved.recovery_progress == 0

    def test_configurable_payment_count(self):
        """Test a policy needing a single on-time payment"""
        tracker = RecoveryTracker(LoanPolicy(recovery_payments_required=1))
        self.loan.status = LoanStatus.LATE

        resolved = tracker.resolve(self.loan, self.current, self._update(qualifying=True))
        assert resolved.health_status == LoanStatus.ACTIVE


class TestRecoveryLifecycle:
    """Test recovery end to end through the service"""

    def setup_method(self):
        self.clock = Clock(date(2024, 1, 1))
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.dispatcher = EventDispatcher()
        self.ledger = RepaymentLedger(self.storage)
        self.service = LoanHealthService(
            self.storage,
            self.ledger,
            StorageWallet(self.storage, self.audit_trail),
            EventOutbox(self.storage, self.dispatcher),
            audit_trail=self.audit_trail,
            clock=self.clock
        )
        self.service.register_loan("B1", usd('1200.00'), 0, 12, loan_id="L1")

        self.clock.today = date(2024, 2, 5)
        assert self.service.run_classification("L1").health_status == LoanStatus.LATE

    def _pay(self, repayment_id, amount, posted):
        self.clock.today = posted
        return self.service.on_repayment_posted("L1", repayment(repayment_id, amount, posted))

    def test_late_loan_recovers_after_three_on_time_payments(self):
        """Test late -> recovering -> active"""
        started = Mock()
        completed = Mock()
        self.dispatcher.subscribe(DomainEvent.RECOVERY_STARTED, started)
        self.dispatcher.subscribe(DomainEvent.RECOVERY_COMPLETED, completed)

        snapshot = self._pay("r1", '100.00', date(2024, 2, 10))
        assert snapshot.health_status == LoanStatus.RECOVERING
        assert snapshot.recovery_progress == 0
        loan = self.service.get_loan("L1")
        assert loan.status == LoanStatus.RECOVERING
        assert loan.recovery_started_at is not None
        started.assert_called_once()

        assert self._pay("r2", '100.00', date(2024, 2, 25)).recovery_progress == 1
        assert self._pay("r3", '100.00', date(2024, 3, 25)).recovery_progress == 2

        snapshot = self._pay("r4", '100.00', date(2024, 4, 25))
        assert snapshot.health_status == LoanStatus.ACTIVE
        assert snapshot.recovery_progress == 0

        loan = self.service.get_loan("L1")
        assert loan.status == LoanStatus.ACTIVE
        assert loan.recovery_started_at is None
        completed.assert_called_once()
        assert completed.call_args[0][0].data == {"loan_id": "L1", "borrower_id": "B1"}

        progress_events = self.audit_trail.get_events_by_type(AuditEventType.RECOVERY_PROGRESS)
        assert [e.metadata['recovery_progress'] for e in progress_events] == [1, 2]

    def test_missed_installment_ends_recovery(self):
        """Test recovering -> late when the next installment is missed"""
        self._pay("r1", '100.00', date(2024, 2, 10))
        self._pay("r2", '100.00', date(2024, 2, 25))
        self._pay("r3", '100.00', date(2024, 3, 25))
        assert self.service.get_loan("L1").recovery_progress == 2

        self.clock.today = date(2024, 5, 5)
        snapshot = self.service.run_classification("L1")

        assert snapshot.health_status == LoanStatus.LATE
        assert snapshot.days_behind == 4
        assert snapshot.recovery_progress == 0
        loan = self.service.get_loan("L1")
        assert loan.status == LoanStatus.LATE
        assert loan.recovery_progress == 0

    def test_partial_payment_resets_progress(self):
        """Test that a partial payment while recovering starts the count again"""
        self._pay("r1", '100.00', date(2024, 2, 10))
        self._pay("r2", '100.00', date(2024, 2, 25))

        snapshot = self._pay("r3", '50.00', date(2024, 3, 20))
        assert snapshot.health_status == LoanStatus.RECOVERING
        assert snapshot.recovery_progress == 0
        assert len(self.audit_trail.get_events_by_type(AuditEventType.RECOVERY_RESET)) == 1
