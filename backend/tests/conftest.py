"""
Shared fixtures for reconciliation tests.
"""

import pytest

from reconciliation.repositories.memory import InMemoryReconciliationRepository
from reconciliation.tolerance import ToleranceConfig, TolerancePolicy


@pytest.fixture
def policy():
    """Default tolerance policy."""
    return TolerancePolicy(ToleranceConfig())


@pytest.fixture
def repository():
    """Empty in-memory repository."""
    return InMemoryReconciliationRepository()
