"""
Database package for PES Arena Payments.

Exports database initialization, models, and session factory helpers.
"""
from .init_db import (
    initialize_database,
    create_engine,
    create_session_factory,
    create_tables,
    engine,
    AsyncSessionLocal,
)
from .models import (
    Base,
    PaymentModel,
    RegistrationModel,
    PayoutModel,
    utcnow,
)

__all__ = [
    "initialize_database",
    "create_engine",
    "create_session_factory",
    "create_tables",
    "engine",
    "AsyncSessionLocal",
    "Base",
    "PaymentModel",
    "RegistrationModel",
    "PayoutModel",
    "utcnow",
]
