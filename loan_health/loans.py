"""
Loan Module

Loan data model (loan, schedule versions, refinance records) and its
persistence. Schedules are never edited in place: a refinance closes the
current version and adds a new one, and every version is kept for audit.
"""

from datetime import datetime, timezone, date
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum

from .amortization import AmortizationSchedule, Installment
from .currency import Money, Currency
from .exceptions import LoanNotFoundError, NegativeBalanceError
from .storage import StorageInterface, StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"              # Current on all installments
    LATE = "late"                  # 1-30 days behind
    AT_RISK = "at_risk"            # 31-90 days behind
    DEFAULTED = "defaulted"        # More than 90 days behind
    RECOVERING = "recovering"      # Caught up, proving three on-time payments
    REFINANCED = "refinanced"      # Not a resting state: marks schedule versions closed by a refinance
    PAID_OFF = "paid_off"          # Terminal


DELINQUENT_STATUSES = (LoanStatus.LATE, LoanStatus.AT_RISK, LoanStatus.DEFAULTED)

# Closing reason of superseded schedule versions; the loan itself returns to ACTIVE
CLOSED_BY_REFINANCE = LoanStatus.REFINANCED.value


def _money(data: Dict[str, Any], prefix: str) -> Money:
    return Money(Decimal(data[f'{prefix}_amount']), Currency[data[f'{prefix}_currency']])


def _put_money(result: Dict[str, Any], prefix: str, money: Money) -> None:
    result[f'{prefix}_amount'] = str(money.amount)
    result[f'{prefix}_currency'] = money.currency.code


def _date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Loan(StorageRecord):
    """Microloan with its cached health state"""
    borrower_id: str
    principal: Money
    annual_rate_bps: int               # Fixed at origination from the borrower's credit tier
    term_months: int
    monthly_payment: Money
    originated_at: date
    status: LoanStatus = LoanStatus.ACTIVE
    schedule_version: int = 0
    remaining_balance: Optional[Money] = None
    days_behind: int = 0
    missed_payments: int = 0
    recovery_progress: int = 0
    recovery_started_at: Optional[datetime] = None
    last_classified_at: Optional[date] = None
    refinance_count: int = 0

    def __post_init__(self):
        if self.remaining_balance is None:
            self.remaining_balance = self.principal
        if self.remaining_balance.is_negative():
            raise NegativeBalanceError(
                f"Loan {self.id} remaining balance {self.remaining_balance.to_string()} is negative"
            )

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def is_paid_off(self) -> bool:
        return self.status == LoanStatus.PAID_OFF

    @property
    def is_delinquent(self) -> bool:
        return self.status in DELINQUENT_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'borrower_id': self.borrower_id,
            'annual_rate_bps': self.annual_rate_bps,
            'term_months': self.term_months,
            'originated_at': self.originated_at.isoformat(),
            'status': self.status.value,
            'schedule_version': self.schedule_version,
            'days_behind': self.days_behind,
            'missed_payments': self.missed_payments,
            'recovery_progress': self.recovery_progress,
            'recovery_started_at': self.recovery_started_at.isoformat() if self.recovery_started_at else None,
            'last_classified_at': self.last_classified_at.isoformat() if self.last_classified_at else None,
            'refinance_count': self.refinance_count,
        }
        for prefix in ('principal', 'monthly_payment', 'remaining_balance'):
            _put_money(result, prefix, getattr(self, prefix))
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            borrower_id=data['borrower_id'],
            principal=_money(data, 'principal'),
            annual_rate_bps=data['annual_rate_bps'],
            term_months=data['term_months'],
            monthly_payment=_money(data, 'monthly_payment'),
            originated_at=date.fromisoformat(data['originated_at']),
            status=LoanStatus(data['status']),
            schedule_version=data['schedule_version'],
            remaining_balance=_money(data, 'remaining_balance'),
            days_behind=data.get('days_behind', 0),
            missed_payments=data.get('missed_payments', 0),
            recovery_progress=data.get('recovery_progress', 0),
            recovery_started_at=_datetime(data.get('recovery_started_at')),
            last_classified_at=_date(data.get('last_classified_at')),
            refinance_count=data.get('refinance_count', 0)
        )


@dataclass
class ScheduleVersion:
    """One immutable expected-payment schedule of a loan"""
    loan_id: str
    version: int
    principal: Money
    annual_rate_bps: int
    term_months: int
    monthly_payment: Money
    installments: Tuple[Installment, ...]
    created_at: datetime
    closed_at: Optional[datetime] = None
    closed_reason: Optional[str] = None

    @classmethod
    def from_schedule(cls, loan_id: str, version: int, schedule: AmortizationSchedule,
                      created_at: Optional[datetime] = None) -> 'ScheduleVersion':
        bound = schedule.bind(loan_id, version)
        return cls(
            loan_id=loan_id,
            version=version,
            principal=bound.principal,
            annual_rate_bps=bound.annual_rate_bps,
            term_months=bound.term_months,
            monthly_payment=bound.monthly_payment,
            installments=bound.installments,
            created_at=created_at or datetime.now(timezone.utc)
        )

    @property
    def record_id(self) -> str:
        return f"{self.loan_id}:{self.version}"

    @property
    def is_open(self) -> bool:
        return self.closed_at is None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'id': self.record_id,
            'loan_id': self.loan_id,
            'version': self.version,
            'annual_rate_bps': self.annual_rate_bps,
            'term_months': self.term_months,
            'created_at': self.created_at.isoformat(),
            'closed_at': self.closed_at.isoformat() if self.closed_at else None,
            'closed_reason': self.closed_reason,
            'installments': []
        }
        _put_money(result, 'principal', self.principal)
        _put_money(result, 'monthly_payment', self.monthly_payment)
        for installment in self.installments:
            entry = {
                'sequence': installment.sequence,
                'due_date': installment.due_date.isoformat(),
            }
            for prefix in ('principal_portion', 'interest_portion', 'amount_due', 'remaining_balance'):
                _put_money(entry, prefix, getattr(installment, prefix))
            result['installments'].append(entry)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduleVersion':
        installments = tuple(
            Installment(
                sequence=entry['sequence'],
                due_date=date.fromisoformat(entry['due_date']),
                principal_portion=_money(entry, 'principal_portion'),
                interest_portion=_money(entry, 'interest_portion'),
                amount_due=_money(entry, 'amount_due'),
                remaining_balance=_money(entry, 'remaining_balance'),
                loan_id=data['loan_id'],
                schedule_version=data['version']
            )
            for entry in sorted(data['installments'], key=lambda e: e['sequence'])
        )
        return cls(
            loan_id=data['loan_id'],
            version=data['version'],
            principal=_money(data, 'principal'),
            annual_rate_bps=data['annual_rate_bps'],
            term_months=data['term_months'],
            monthly_payment=_money(data, 'monthly_payment'),
            installments=installments,
            created_at=datetime.fromisoformat(data['created_at']),
            closed_at=_datetime(data.get('closed_at')),
            closed_reason=data.get('closed_reason')
        )


@dataclass
class RefinanceRecord(StorageRecord):
    """Outcome of one successful refinance"""
    loan_id: str
    previous_term: int
    new_term: int
    previous_monthly_payment: Money
    new_monthly_payment: Money
    fee: Money
    remaining_balance: Money
    previous_schedule_version: int
    new_schedule_version: int
    previous_status: LoanStatus
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'previous_term': self.previous_term,
            'new_term': self.new_term,
            'previous_schedule_version': self.previous_schedule_version,
            'new_schedule_version': self.new_schedule_version,
            'previous_status': self.previous_status.value,
            'reason': self.reason,
        }
        for prefix in ('previous_monthly_payment', 'new_monthly_payment', 'fee', 'remaining_balance'):
            _put_money(result, prefix, getattr(self, prefix))
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RefinanceRecord':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            previous_term=data['previous_term'],
            new_term=data['new_term'],
            previous_monthly_payment=_money(data, 'previous_monthly_payment'),
            new_monthly_payment=_money(data, 'new_monthly_payment'),
            fee=_money(data, 'fee'),
            remaining_balance=_money(data, 'remaining_balance'),
            previous_schedule_version=data['previous_schedule_version'],
            new_schedule_version=data['new_schedule_version'],
            previous_status=LoanStatus(data['previous_status']),
            reason=data.get('reason')
        )


class LoanStore:
    """
    Persistence for loans, schedule versions and refinance records
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage

        self.loans_table = "loans"
        self.schedules_table = "schedule_versions"
        self.refinances_table = "refinance_records"

    def save_loan(self, loan: Loan) -> None:
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise LoanNotFoundError(loan_id)
        return loan

    def find_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        """All loans, optionally filtered by status"""
        if status is None:
            records = self.storage.load_all(self.loans_table)
        else:
            records = self.storage.find(self.loans_table, {'status': status.value})
        return [Loan.from_dict(data) for data in records]

    def save_schedule(self, schedule: ScheduleVersion) -> None:
        self.storage.save(self.schedules_table, schedule.record_id, schedule.to_dict())

    def get_schedule(self, loan_id: str, version: Optional[int] = None) -> ScheduleVersion:
        """Get one schedule version (the loan's current one by default)"""
        if version is None:
            version = self.require_loan(loan_id).schedule_version
        data = self.storage.load(self.schedules_table, f"{loan_id}:{version}")
        if data is None:
            raise LoanNotFoundError(f"{loan_id} (schedule version {version})")
        return ScheduleVersion.from_dict(data)

    def list_schedule_versions(self, loan_id: str) -> List[ScheduleVersion]:
        records = self.storage.find(self.schedules_table, {'loan_id': loan_id})
        versions = [ScheduleVersion.from_dict(data) for data in records]
        versions.sort(key=lambda s: s.version)
        return versions

    def save_refinance_record(self, record: RefinanceRecord) -> None:
        self.storage.save(self.refinances_table, record.id, record.to_dict())

    def get_refinance_records(self, loan_id: str) -> List[RefinanceRecord]:
        records = [
            RefinanceRecord.from_dict(data)
            for data in self.storage.find(self.refinances_table, {'loan_id': loan_id})
        ]
        records.sort(key=lambda r: r.new_schedule_version)
        return records
