"""
Database package for Payflow.

Exports engine construction, models, and session management.
"""
from .init_db import create_engine, create_session_factory, initialize_database
from .models import (
    Base,
    TransactionModel,
    TransactionEventModel,
    RevokedTokenModel
)

__all__ = [
    "create_engine",
    "create_session_factory",
    "initialize_database",
    "Base",
    "TransactionModel",
    "TransactionEventModel",
    "RevokedTokenModel",
]
