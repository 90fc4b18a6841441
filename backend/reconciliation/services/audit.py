"""
Reconciliation audit trail.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    RUN_STARTED = "reconciliation.run_started"
    RUN_COMPLETED = "reconciliation.run_completed"
    BATCH_COMPLETED = "reconciliation.batch_completed"
    MATCH_PERSISTED = "reconciliation.match_persisted"
    MANUAL_MATCH_CREATED = "reconciliation.manual_match_created"
    MANUAL_MATCH_REMOVED = "reconciliation.manual_match_removed"
    REVERSAL_LINKED = "reconciliation.reversal_linked"
    REVERSAL_UNLINKED = "reconciliation.reversal_unlinked"
    REVIEW_APPLIED = "reconciliation.review_applied"
    VARIANCE_RESOLVED = "reconciliation.variance_resolved"
    SWEEP_COMPLETED = "reconciliation.sweep_completed"


def log_reconciliation_event(
    event_type: str,
    goal_id: Optional[str],
    details: Dict[str, Any],
    actor: str = "system"
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "goal_id": goal_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)
