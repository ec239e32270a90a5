"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based
configuration, and the typed loan policy derived from it.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Tuple

from pydantic_settings import BaseSettings

from .currency import Currency


class LoanHealthConfig(BaseSettings):
    """Loan health core configuration"""

    # Database configuration
    database_url: str = "memory://"  # or sqlite:///loan_health.db

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Loan currency
    currency: str = "USD"

    # Delinquency policy
    grace_period_days: int = 0
    late_max_days: int = 30        # 1-30 days behind = late
    at_risk_max_days: int = 90     # 31-90 days behind = at risk, beyond = defaulted

    # Recovery policy
    recovery_payments_required: int = 3

    # Refinance policy
    refinance_term_offsets: str = "6,12,18"  # Months added to the remaining term
    refinance_fee_percent: str = "0.01"      # Of remaining balance
    refinance_min_fee: str = "10.00"
    refinance_min_balance: str = "0.00"
    refinance_quote_tolerance: str = "0.00"

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LOAN_HEALTH_"
        env_file = ".env"
        case_sensitive = False


@dataclass(frozen=True)
class LoanPolicy:
    """Typed policy constants consumed by the classifier, tracker and refinance engine"""
    currency: Currency = Currency.USD
    grace_period_days: int = 0
    late_max_days: int = 30
    at_risk_max_days: int = 90
    recovery_payments_required: int = 3
    refinance_term_offsets: Tuple[int, ...] = (6, 12, 18)
    refinance_fee_percent: Decimal = Decimal('0.01')
    refinance_min_fee: Decimal = Decimal('10.00')
    refinance_min_balance: Decimal = Decimal('0.00')
    refinance_quote_tolerance: Decimal = Decimal('0.00')

    def __post_init__(self):
        if self.grace_period_days < 0:
            raise ValueError("Grace period cannot be negative")
        if not 0 < self.late_max_days < self.at_risk_max_days:
            raise ValueError("Delinquency thresholds must satisfy 0 < late_max_days < at_risk_max_days")
        if self.recovery_payments_required < 1:
            raise ValueError("Recovery requires at least one payment")
        if any(offset <= 0 for offset in self.refinance_term_offsets):
            raise ValueError("Refinance term offsets must be positive")
        if self.refinance_fee_percent < 0 or self.refinance_min_fee < 0:
            raise ValueError("Refinance fee settings cannot be negative")

    @classmethod
    def from_config(cls, settings: Optional[LoanHealthConfig] = None) -> 'LoanPolicy':
        """Build policy from settings (defaults to the global configuration)"""
        settings = settings or get_config()
        offsets = tuple(
            int(part) for part in settings.refinance_term_offsets.split(",") if part.strip()
        )
        return cls(
            currency=Currency[settings.currency.upper()],
            grace_period_days=settings.grace_period_days,
            late_max_days=settings.late_max_days,
            at_risk_max_days=settings.at_risk_max_days,
            recovery_payments_required=settings.recovery_payments_required,
            refinance_term_offsets=tuple(sorted(set(offsets))),
            refinance_fee_percent=Decimal(settings.refinance_fee_percent),
            refinance_min_fee=Decimal(settings.refinance_min_fee),
            refinance_min_balance=Decimal(settings.refinance_min_balance),
            refinance_quote_tolerance=Decimal(settings.refinance_quote_tolerance),
        )


# Global configuration instance
config = LoanHealthConfig()


def get_config() -> LoanHealthConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanHealthConfig:
    """Reload configuration from environment"""
    global config
    config = LoanHealthConfig()
    return config
