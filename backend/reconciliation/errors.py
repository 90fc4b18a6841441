"""
Reconciliation Errors

Exception hierarchy raised by the reconciliation engine and its services.

- ValidationError: a single input record is malformed (skipped, reported)
- ConsistencyError: a requested operation would break an invariant
- NotFoundError: a referenced record or group does not exist
- PersistenceError: the repository failed to read or write
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base class for all reconciliation errors."""
    pass


class ValidationError(ReconciliationError):
    """A record failed validation and cannot take part in a run."""

    def __init__(self, message: str, field: Optional[str] = None, record_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.record_id = record_id


class ConsistencyError(ReconciliationError):
    """Operation rejected before any state was changed."""
    pass


class NotFoundError(ReconciliationError):
    """Referenced bank record, ledger posting or group does not exist."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} {identifier} not found")
        self.resource = resource
        self.identifier = identifier


class PersistenceError(ReconciliationError):
    """Repository read/write failure."""
    pass
