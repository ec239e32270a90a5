"""
Test suite for the loan data model, its store and per-loan locks
"""

import threading
import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from loan_health.amortization import AmortizationCalculator
from loan_health.currency import Money, Currency
from loan_health.exceptions import LoanNotFoundError, LockReentryError, NegativeBalanceError
from loan_health.loans import Loan, LoanStatus, LoanStore, RefinanceRecord, ScheduleVersion
from loan_health.locking import LoanLockManager
from loan_health.storage import InMemoryStorage


def usd(amount: str) -> Money:
    return Money(Decimal(amount), Currency.USD)


def make_loan(loan_id="L1", **kwargs):
    now = datetime.now(timezone.utc)
    fields = dict(
        id=loan_id,
        created_at=now,
        updated_at=now,
        borrower_id="B1",
        principal=usd('1000.00'),
        annual_rate_bps=1200,
        term_months=12,
        monthly_payment=usd('88.85'),
        originated_at=date(2024, 1, 1)
    )
    fields.update(kwargs)
    return Loan(**fields)


class TestLoan:
    """Test Loan model behaviour"""

    def test_defaults(self):
        """Test that a new loan owes its full principal"""
        loan = make_loan()
        assert loan.status == LoanStatus.ACTIVE
        assert loan.remaining_balance == usd('1000.00')
        assert loan.currency == Currency.USD
        assert not loan.is_delinquent
        assert not loan.is_paid_off

    def test_negative_balance_is_refused(self):
        """Test that a loan can never owe a negative amount"""
        with pytest.raises(NegativeBalanceError):
            make_loan(remaining_balance=usd('-0.01'))

    def test_delinquent_statuses(self):
        """Test which statuses count as delinquent"""
        for status in (LoanStatus.LATE, LoanStatus.AT_RISK, LoanStatus.DEFAULTED):
            assert make_loan(status=status).is_delinquent
        assert not make_loan(status=LoanStatus.RECOVERING).is_delinquent

    def test_dict_round_trip(self):
        """Test storage serialization"""
        loan = make_loan(
            status=LoanStatus.RECOVERING,
            remaining_balance=usd('640.10'),
            recovery_progress=2,
            recovery_started_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
            last_classified_at=date(2024, 3, 5)
        )
        data = loan.to_dict()
        assert data['status'] == "recovering"
        assert data['remaining_balance_amount'] == "640.10"

        restored = Loan.from_dict(data)
        assert restored == loan


class TestScheduleVersion:
    """Test schedule versions"""

    def test_round_trip_keeps_installments(self):
        """Test that a stored schedule version is restored exactly"""
        schedule = AmortizationCalculator().compute_schedule(usd('1000.00'), 1200, 12, date(2024, 2, 1))
        version = ScheduleVersion.from_schedule("L1", 0, schedule)

        assert version.record_id == "L1:0"
        assert version.is_open
        assert all(i.loan_id == "L1" for i in version.installments)

        restored = ScheduleVersion.from_dict(version.to_dict())
        assert restored == version


class TestLoanStore:
    """Test loan persistence"""

    def setup_method(self):
        self.store = LoanStore(InMemoryStorage())

    def test_save_and_find(self):
        """Test saving, loading and filtering loans"""
        self.store.save_loan(make_loan("L1"))
        self.store.save_loan(make_loan("L2", status=LoanStatus.LATE))

        assert self.store.get_loan("L1").id == "L1"
        assert self.store.get_loan("missing") is None
        assert [l.id for l in self.store.find_loans(LoanStatus.LATE)] == ["L2"]
        assert len(self.store.find_loans()) == 2
        with pytest.raises(LoanNotFoundError):
            self.store.require_loan("missing")

    def test_schedule_versions(self):
        """Test that the loan's current version is the default"""
        calculator = AmortizationCalculator()
        self.store.save_loan(make_loan("L1", schedule_version=1))
        for version, term in ((0, 12), (1, 18)):
            schedule = calculator.compute_schedule(usd('1000.00'), 1200, term, date(2024, 2, 1))
            self.store.save_schedule(ScheduleVersion.from_schedule("L1", version, schedule))

        assert self.store.get_schedule("L1").term_months == 18
        assert self.store.get_schedule("L1", 0).term_months == 12
        assert [v.version for v in self.store.list_schedule_versions("L1")] == [0, 1]

    def test_refinance_records(self):
        """Test refinance history ordering"""
        now = datetime.now(timezone.utc)
        for version in (2, 1):
            self.store.save_refinance_record(RefinanceRecord(
                id=f"rf{version}", created_at=now, updated_at=now, loan_id="L1",
                previous_term=12, new_term=18, previous_monthly_payment=usd('88.85'),
                new_monthly_payment=usd('60.98'), fee=usd('10.00'), remaining_balance=usd('1000.00'),
                previous_schedule_version=version - 1, new_schedule_version=version,
                previous_status=LoanStatus.LATE
            ))

        records = self.store.get_refinance_records("L1")
        assert [r.new_schedule_version for r in records] == [1, 2]
        assert records[0].previous_status == LoanStatus.LATE


class TestLoanLockManager:
    """Test keyed per-loan locks"""

    def setup_method(self):
        self.locks = LoanLockManager()

    def test_reentry_raises(self):
        """Test that the holder cannot take its own lock again"""
        with self.locks.hold("L1"):
            with pytest.raises(LockReentryError):
                with self.locks.hold("L1"):
                    pass
            with self.locks.hold("L2"):
                assert self.locks.is_held("L1") and self.locks.is_held("L2")
        assert not self.locks.is_held("L1")

    def test_lock_released_on_error(self):
        """Test that an exception inside the block frees the lock"""
        with pytest.raises(RuntimeError):
            with self.locks.hold("L1"):
                raise RuntimeError("boom")
        with self.locks.hold("L1"):
            pass

    def test_serializes_writers(self):
        """Test that a second thread waits for the holder"""
        order = []

        def second():
            with self.locks.hold("L1"):
                order.append("second")

        with self.locks.hold("L1"):
            thread = threading.Thread(target=second)
            thread.start()
            thread.join(timeout=0.2)
            order.append("first")
        thread.join(timeout=5)

        assert order == ["first", "second"]
