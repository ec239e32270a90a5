"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal, InvalidOperation
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..currency import Money, Currency
from ..health import HealthSnapshot
from ..loans import Loan, RefinanceRecord, ScheduleVersion


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (USD, EUR, etc.)")

    def to_money(self) -> Money:
        try:
            amount = Decimal(self.amount)
        except InvalidOperation:
            raise ValueError(f"Invalid amount: {self.amount}")
        return Money(amount, Currency[self.currency])

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


class RegisterLoanRequest(BaseModel):
    borrower_id: str
    principal: MoneyModel
    annual_rate_bps: int = Field(..., description="Annual rate in basis points (1250 = 12.5%)")
    term_months: int
    originated_at: Optional[date] = None
    first_due_date: Optional[date] = None
    loan_id: Optional[str] = None


class RepaymentPostedRequest(BaseModel):
    loan_id: str
    repayment_id: str
    amount: MoneyModel
    posted_at: datetime


class RefinanceRequest(BaseModel):
    new_term: int = Field(..., description="Total term in months after the refinance")
    reason: Optional[str] = None
    # Values from the quote the borrower accepted; omitted when refinancing without a quote
    quoted_balance: Optional[MoneyModel] = None
    quoted_fee: Optional[MoneyModel] = None
    quoted_schedule_version: Optional[int] = None


class ClassifyRequest(BaseModel):
    as_of: Optional[date] = None


def money_dict(money: Optional[Money]) -> Optional[Dict[str, str]]:
    if money is None:
        return None
    return MoneyModel.from_money(money).model_dump()


def loan_response(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "borrower_id": loan.borrower_id,
        "status": loan.status.value,
        "principal": money_dict(loan.principal),
        "annual_rate_bps": loan.annual_rate_bps,
        "term_months": loan.term_months,
        "monthly_payment": money_dict(loan.monthly_payment),
        "remaining_balance": money_dict(loan.remaining_balance),
        "schedule_version": loan.schedule_version,
        "days_behind": loan.days_behind,
        "missed_payments": loan.missed_payments,
        "recovery_progress": loan.recovery_progress,
        "recovery_started_at": loan.recovery_started_at.isoformat() if loan.recovery_started_at else None,
        "refinance_count": loan.refinance_count,
        "originated_at": loan.originated_at.isoformat(),
        "last_classified_at": loan.last_classified_at.isoformat() if loan.last_classified_at else None,
    }


def snapshot_response(snapshot: HealthSnapshot) -> Dict[str, Any]:
    return {
        "loan_id": snapshot.loan_id,
        "health_status": snapshot.health_status.value,
        "days_behind": snapshot.days_behind,
        "missed_payments": snapshot.missed_payments,
        "recovery_progress": snapshot.recovery_progress,
        "remaining_balance": money_dict(snapshot.remaining_balance),
        "amount_overdue": money_dict(snapshot.amount_overdue),
        "schedule_version": snapshot.schedule_version,
        "next_due_date": snapshot.next_due_date.isoformat() if snapshot.next_due_date else None,
        "as_of": snapshot.as_of.isoformat(),
    }


def schedule_response(schedule: ScheduleVersion) -> Dict[str, Any]:
    return {
        "loan_id": schedule.loan_id,
        "version": schedule.version,
        "principal": money_dict(schedule.principal),
        "annual_rate_bps": schedule.annual_rate_bps,
        "term_months": schedule.term_months,
        "monthly_payment": money_dict(schedule.monthly_payment),
        "created_at": schedule.created_at.isoformat(),
        "closed_at": schedule.closed_at.isoformat() if schedule.closed_at else None,
        "closed_reason": schedule.closed_reason,
        "installments": [
            {
                "sequence": installment.sequence,
                "due_date": installment.due_date.isoformat(),
                "principal_portion": money_dict(installment.principal_portion),
                "interest_portion": money_dict(installment.interest_portion),
                "amount_due": money_dict(installment.amount_due),
                "remaining_balance": money_dict(installment.remaining_balance),
            }
            for installment in schedule.installments
        ],
    }


def refinance_response(record: RefinanceRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "loan_id": record.loan_id,
        "previous_term": record.previous_term,
        "new_term": record.new_term,
        "previous_monthly_payment": money_dict(record.previous_monthly_payment),
        "new_monthly_payment": money_dict(record.new_monthly_payment),
        "fee": money_dict(record.fee),
        "remaining_balance": money_dict(record.remaining_balance),
        "previous_schedule_version": record.previous_schedule_version,
        "new_schedule_version": record.new_schedule_version,
        "previous_status": record.previous_status.value,
        "reason": record.reason,
        "created_at": record.created_at.isoformat(),
    }


def status_summary(snapshots: List[HealthSnapshot]) -> Dict[str, int]:
    summary = {"total": len(snapshots), "late": 0, "at_risk": 0, "defaulted": 0, "recovering": 0}
    for snapshot in snapshots:
        summary[snapshot.health_status.value] += 1
    return summary
