from .connection import get_db, get_engine, get_session_factory, init_db, Base

# Import reconciliation models to ensure they are registered with Base
from .reconciliation_models import (
    BankGoalTransactionDB, FundTransactionDB, INSTRUMENT_COLUMNS
)

__all__ = [
    'get_db', 'get_engine', 'get_session_factory', 'init_db', 'Base',
    # Reconciliation models
    'BankGoalTransactionDB', 'FundTransactionDB', 'INSTRUMENT_COLUMNS',
]
