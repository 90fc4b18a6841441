"""
Reconciliation Repositories
"""

from .base import ReconciliationRepository
from .memory import InMemoryReconciliationRepository
from .sql import SqlReconciliationRepository

__all__ = [
    "ReconciliationRepository",
    "InMemoryReconciliationRepository",
    "SqlReconciliationRepository",
]
