"""
System wiring and FastAPI dependencies
"""

from datetime import date
from typing import Callable, Optional

from ..audit import AuditTrail
from ..config import LoanHealthConfig, LoanPolicy, get_config
from ..events import EventDispatcher, EventOutbox, get_global_dispatcher
from ..ledger import RepaymentLedger
from ..locking import LoanLockManager
from ..service import LoanHealthService
from ..storage import InMemoryStorage, SQLiteStorage, StorageInterface
from ..wallet import StorageWallet


def create_storage(database_url: str) -> StorageInterface:
    """Storage backend for a database URL (memory:// or sqlite:///path)"""
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):])
    if database_url in ("memory://", ""):
        return InMemoryStorage()
    raise ValueError(f"Unsupported database URL: {database_url}")


class LoanHealthSystem:
    """Loan health core with all components initialized"""

    def __init__(
        self,
        settings: Optional[LoanHealthConfig] = None,
        storage: Optional[StorageInterface] = None,
        dispatcher: Optional[EventDispatcher] = None,
        clock: Optional[Callable[[], date]] = None
    ):
        self.settings = settings or get_config()
        self.policy = LoanPolicy.from_config(self.settings)

        # Initialize storage
        self.storage = storage or create_storage(self.settings.database_url)

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage) if self.settings.enable_audit_logging else None
        self.dispatcher = dispatcher or get_global_dispatcher()
        self.outbox = EventOutbox(self.storage, self.dispatcher)
        self.ledger = RepaymentLedger(self.storage)
        self.wallet = StorageWallet(self.storage, self.audit_trail)
        self.lock_manager = LoanLockManager()
        self.service = LoanHealthService(
            self.storage, self.ledger, self.wallet, self.outbox,
            audit_trail=self.audit_trail,
            policy=self.policy,
            lock_manager=self.lock_manager,
            clock=clock
        )

    def close(self) -> None:
        self.storage.close()


# Global system instance, created on first use
_system: Optional[LoanHealthSystem] = None


def get_system() -> LoanHealthSystem:
    """Dependency returning the loan health system"""
    global _system
    if _system is None:
        _system = LoanHealthSystem()
    return _system


def set_system(system: Optional[LoanHealthSystem]) -> None:
    """Replace the global system (None resets it)"""
    global _system
    _system = system
