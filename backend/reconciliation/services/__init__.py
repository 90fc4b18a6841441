"""
Reconciliation Services
"""

from .audit import ReconciliationAuditEvent, log_reconciliation_event
from .reconciliation_service import (
    ReconciliationService,
    MatchGoalResult,
    BatchMatchingResult,
    GoalLockRegistry,
    goal_locks,
)
from .manual_match_service import ManualMatchService
from .reversal_service import ReversalService
from .resolution_service import VarianceResolutionService, SweepResult
from .summary_service import ReconciliationSummaryService

__all__ = [
    "ReconciliationAuditEvent",
    "log_reconciliation_event",
    "ReconciliationService",
    "MatchGoalResult",
    "BatchMatchingResult",
    "GoalLockRegistry",
    "goal_locks",
    "ManualMatchService",
    "ReversalService",
    "VarianceResolutionService",
    "SweepResult",
    "ReconciliationSummaryService",
]
