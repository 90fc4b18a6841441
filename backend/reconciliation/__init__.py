"""
Goal Reconciliation Engine

Matches bank records against ledger postings per client goal:
- Goal transaction groups built from grouping keys
- Multi-pass matching (manual, exact, amount within a date window, splits)
- Variance classification with severity and auto-approval
- Manual overrides and reversal pairing
- Resolution sweep for reviewed variances
- Audit trail for all operations
"""

from reconciliation.errors import (
    ReconciliationError,
    ValidationError,
    ConsistencyError,
    NotFoundError,
    PersistenceError,
)
from reconciliation.tolerance import ToleranceConfig, TolerancePolicy, get_tolerance_policy
from reconciliation.matching_rules.goal_rules import GoalMatchingRules, find_combination_sum
from reconciliation.matching_rules.variance_rules import VarianceClassifier, StatusResolver
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.services.manual_match_service import ManualMatchService
from reconciliation.services.reversal_service import ReversalService
from reconciliation.services.resolution_service import VarianceResolutionService
from reconciliation.services.summary_service import ReconciliationSummaryService
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router

__all__ = [
    # Errors
    'ReconciliationError',
    'ValidationError',
    'ConsistencyError',
    'NotFoundError',
    'PersistenceError',
    # Tolerance
    'ToleranceConfig',
    'TolerancePolicy',
    'get_tolerance_policy',
    # Matching Rules
    'GoalMatchingRules',
    'find_combination_sum',
    'VarianceClassifier',
    'StatusResolver',
    # Services
    'ReconciliationService',
    'ManualMatchService',
    'ReversalService',
    'VarianceResolutionService',
    'ReconciliationSummaryService',
    # Router
    'reconciliation_router'
]
