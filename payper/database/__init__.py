"""Database package for the transaction ledger."""
from .connection import close_db, get_session_factory, init_db
from .models import Base, Profile, TransactionRecord

__all__ = [
    "Base",
    "Profile",
    "TransactionRecord",
    "close_db",
    "get_session_factory",
    "init_db",
]
