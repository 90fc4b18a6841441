"""
Matching Rules Module
"""

from .goal_rules import GoalMatchingRules, MatchOutcome, find_combination_sum, reference_for
from .variance_rules import VarianceClassifier, StatusResolver, StatusDecision

__all__ = [
    "GoalMatchingRules",
    "MatchOutcome",
    "find_combination_sum",
    "reference_for",
    "VarianceClassifier",
    "StatusResolver",
    "StatusDecision",
]
