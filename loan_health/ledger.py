"""
Repayment Ledger Module

Append-only record of repayments posted by the payment processor. The core
reads repayments to allocate them against the schedule but never edits or
removes one once appended.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .currency import Money, Currency
from .storage import StorageInterface


@dataclass(frozen=True)
class Repayment:
    """A single posted repayment"""
    id: str
    loan_id: str
    amount: Money
    posted_at: datetime
    schedule_version: int = 0  # Schedule version current when the repayment was posted
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.posted_at.tzinfo is None:
            # Naive timestamps from the processor are UTC
            object.__setattr__(self, 'posted_at', self.posted_at.replace(tzinfo=timezone.utc))
        if not self.amount.is_positive():
            raise ValueError(f"Repayment amount must be positive, got {self.amount.to_string()}")

    @property
    def posted_date(self):
        return self.posted_at.date()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'amount_amount': str(self.amount.amount),
            'amount_currency': self.amount.currency.code,
            'posted_at': self.posted_at.isoformat(),
            'schedule_version': self.schedule_version,
            'recorded_at': self.recorded_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Repayment':
        return cls(
            id=data['id'],
            loan_id=data['loan_id'],
            amount=Money(Decimal(data['amount_amount']), Currency[data['amount_currency']]),
            posted_at=datetime.fromisoformat(data['posted_at']),
            schedule_version=data['schedule_version'],
            recorded_at=datetime.fromisoformat(data['recorded_at'])
        )


def repayment_order(repayment: Repayment):
    """Sort key for FIFO allocation: posting time, then id"""
    return (repayment.posted_at, repayment.id)


class RepaymentLedger:
    """
    Storage-backed append-only repayment ledger
    """

    def __init__(self, storage: StorageInterface, table_name: str = "repayments"):
        self.storage = storage
        self.table_name = table_name

    def has(self, repayment_id: str) -> bool:
        return self.storage.exists(self.table_name, repayment_id)

    def append(self, repayment: Repayment) -> bool:
        """
        Append a repayment

        Returns:
            False when a repayment with the same id was already recorded
            (the ledger is left untouched), True otherwise
        """
        if self.has(repayment.id):
            return False
        self.storage.save(self.table_name, repayment.id, repayment.to_dict())
        return True

    def get(self, repayment_id: str) -> Optional[Repayment]:
        data = self.storage.load(self.table_name, repayment_id)
        if data:
            return Repayment.from_dict(data)
        return None

    def list_for_loan(self, loan_id: str, schedule_version: Optional[int] = None) -> List[Repayment]:
        """Repayments of a loan in allocation order, optionally for one schedule version"""
        filters: Dict[str, Any] = {'loan_id': loan_id}
        if schedule_version is not None:
            filters['schedule_version'] = schedule_version
        repayments = [Repayment.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        repayments.sort(key=repayment_order)
        return repayments
