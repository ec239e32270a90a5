"""
Loan Health Core

Microloan lifecycle management: repayment health classification, recovery
tracking and refinance via amortization recalculation. All money math uses
Decimal precision and every loan mutation is audited.
"""

__version__ = "1.0.0"
