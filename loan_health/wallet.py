"""
Borrower Wallet Module

The wallet is owned by the funding collaborator; the core only needs to read
the available balance and debit refinance fees. ``StorageWallet`` keeps
balances in the same store as the loans so a fee debit commits or rolls back
together with the refinance that charged it.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from .audit import AuditTrail, AuditEventType
from .currency import Money, Currency
from .exceptions import InsufficientFundsError
from .storage import StorageInterface


class WalletGateway(ABC):
    """Borrower wallet as seen by the loan health core"""

    @abstractmethod
    def get_available_balance(self, borrower_id: str, currency: Currency) -> Money:
        pass

    @abstractmethod
    def debit(self, borrower_id: str, amount: Money, reference: str) -> Money:
        """Debit the wallet; returns the new balance or raises InsufficientFundsError"""
        pass


class StorageWallet(WalletGateway):
    """Wallet balances persisted in a storage table"""

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None,
                 table_name: str = "wallets"):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = table_name

    def _record_id(self, borrower_id: str, currency: Currency) -> str:
        return f"{borrower_id}:{currency.code}"

    def get_available_balance(self, borrower_id: str, currency: Currency) -> Money:
        data = self.storage.load(self.table_name, self._record_id(borrower_id, currency))
        if data is None:
            return Money.zero(currency)
        return Money(Decimal(data['balance']), currency)

    def _store(self, borrower_id: str, balance: Money) -> None:
        self.storage.save(self.table_name, self._record_id(borrower_id, balance.currency), {
            'borrower_id': borrower_id,
            'currency': balance.currency.code,
            'balance': str(balance.amount),
            'updated_at': datetime.now(timezone.utc).isoformat()
        })

    def credit(self, borrower_id: str, amount: Money, reference: str = "deposit") -> Money:
        """Add funds to a borrower wallet"""
        if not amount.is_positive():
            raise ValueError("Credit amount must be positive")
        with self.storage.atomic():
            balance = self.get_available_balance(borrower_id, amount.currency) + amount
            self._store(borrower_id, balance)
            self._audit(AuditEventType.WALLET_CREDITED, borrower_id, amount, reference, balance)
        return balance

    def debit(self, borrower_id: str, amount: Money, reference: str) -> Money:
        """Take funds from a borrower wallet; the balance check and the write are one transaction"""
        if amount.is_negative():
            raise ValueError("Debit amount cannot be negative")
        with self.storage.atomic():
            available = self.get_available_balance(borrower_id, amount.currency)
            if available < amount:
                raise InsufficientFundsError(
                    f"Wallet of borrower {borrower_id} holds {available.to_string()}, "
                    f"{amount.to_string()} required"
                )
            balance = available - amount
            self._store(borrower_id, balance)
            self._audit(AuditEventType.WALLET_DEBITED, borrower_id, amount, reference, balance)
        return balance

    def _audit(self, event_type: AuditEventType, borrower_id: str, amount: Money,
               reference: str, balance: Money) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="wallet",
                entity_id=borrower_id,
                metadata={'amount': str(amount.amount), 'currency': amount.currency.code,
                          'reference': reference, 'balance': str(balance.amount)}
            )
