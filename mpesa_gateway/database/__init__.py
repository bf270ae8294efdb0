"""Database package for the M-PESA gateway."""
from .connection import close_db, get_session_factory, init_db
from .models import (
    OPEN_STATUSES,
    STK_PUSH,
    Base,
    Transaction,
    TransactionStatus,
)
from .repository import PersistenceError, TransactionStore

__all__ = [
    "Base",
    "Transaction",
    "TransactionStatus",
    "OPEN_STATUSES",
    "STK_PUSH",
    "TransactionStore",
    "PersistenceError",
    "get_session_factory",
    "init_db",
    "close_db",
]
