"""
Tolerance Policy

Decides when two amounts are "the same", how severe a difference is,
and how much a set of variances costs a match.

Defaults (overridable through settings, fixed for the life of a process):
- Amount tolerance: 1% of the reference amount, never below 1,000
- Date window: 30 days
- Instrument distribution tolerance: 1%
- Severity thresholds: LOW < 1,000 <= MEDIUM < 10,000 <= HIGH < 50,000 <= CRITICAL
"""

from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import Iterable, Tuple

from reconciliation.models import DetectedVariance, VarianceSeverity


# Points deducted from a perfect score per variance
SEVERITY_PENALTIES = {
    VarianceSeverity.LOW: 5,
    VarianceSeverity.MEDIUM: 15,
    VarianceSeverity.HIGH: 30,
    VarianceSeverity.CRITICAL: 50,
}


@dataclass(frozen=True)
class ToleranceConfig:
    """Immutable tolerance settings for one reconciliation run."""
    amount_percentage: Decimal = Decimal("0.01")
    amount_fixed_floor: Decimal = Decimal("1000")
    date_window_days: int = 30
    instrument_distribution_percentage: Decimal = Decimal("0.01")
    severity_low: Decimal = Decimal("1000")
    severity_medium: Decimal = Decimal("10000")
    severity_high: Decimal = Decimal("50000")

    # Resolution sweep
    sweep_window_days: int = 30
    timing_window_days: int = 3

    # Split matching: subsets are enumerated over at most this many items
    split_search_limit: int = 10

    # Manual overrides and reversal pairs
    manual_match_percentage: Decimal = Decimal("0.01")
    manual_match_floor: Decimal = Decimal("1")
    reversal_net_tolerance: Decimal = Decimal("0.01")

    excluded_channels: Tuple[str, ...] = ("Transfer_Reversal",)

    def __post_init__(self):
        if self.amount_percentage < 0 or self.amount_fixed_floor < 0:
            raise ValueError("Amount tolerances must be non-negative")
        if self.date_window_days < 0:
            raise ValueError("date_window_days must be non-negative")
        if not (self.severity_low <= self.severity_medium <= self.severity_high):
            raise ValueError("Severity thresholds must be ascending")
        if self.split_search_limit < 2:
            raise ValueError("split_search_limit must be at least 2")

    @classmethod
    def from_settings(cls, settings) -> "ToleranceConfig":
        """Build the config from application settings."""
        channels = tuple(
            c.strip() for c in settings.RECON_EXCLUDED_CHANNELS.split(",") if c.strip()
        )
        return cls(
            amount_percentage=Decimal(str(settings.RECON_AMOUNT_TOLERANCE_PERCENT)),
            amount_fixed_floor=Decimal(str(settings.RECON_AMOUNT_TOLERANCE_MIN)),
            date_window_days=settings.RECON_DATE_WINDOW_DAYS,
            instrument_distribution_percentage=Decimal(str(settings.RECON_INSTRUMENT_TOLERANCE_PERCENT)),
            severity_low=Decimal(str(settings.RECON_SEVERITY_LOW)),
            severity_medium=Decimal(str(settings.RECON_SEVERITY_MEDIUM)),
            severity_high=Decimal(str(settings.RECON_SEVERITY_HIGH)),
            sweep_window_days=settings.RECON_SWEEP_WINDOW_DAYS,
            timing_window_days=settings.RECON_TIMING_WINDOW_DAYS,
            split_search_limit=settings.RECON_SPLIT_SEARCH_LIMIT,
            excluded_channels=channels,
        )


class TolerancePolicy:
    """
    Amount comparison, severity and scoring rules.

    amounts_match is asymmetric: the tolerance is scaled to the second
    (reference) amount.
    """

    def __init__(self, config: ToleranceConfig = None):
        self.config = config or ToleranceConfig()

    def tolerance_for(self, amount: Decimal) -> Decimal:
        """Allowed absolute difference around a reference amount."""
        return max(abs(amount) * self.config.amount_percentage, self.config.amount_fixed_floor)

    def amounts_match(self, amount: Decimal, reference: Decimal) -> bool:
        """True when |amount - reference| is within the tolerance of reference."""
        return abs(amount - reference) <= self.tolerance_for(reference)

    def severity_of(self, difference: Decimal) -> VarianceSeverity:
        diff = abs(difference)
        if diff < self.config.severity_low:
            return VarianceSeverity.LOW
        if diff < self.config.severity_medium:
            return VarianceSeverity.MEDIUM
        if diff < self.config.severity_high:
            return VarianceSeverity.HIGH
        return VarianceSeverity.CRITICAL

    def match_score(self, variances: Iterable[DetectedVariance]) -> int:
        """100 minus a per-severity penalty for each variance, floored at 0."""
        score = 100
        for variance in variances:
            score -= SEVERITY_PENALTIES[variance.severity]
        return max(0, score)


@lru_cache()
def get_tolerance_config() -> ToleranceConfig:
    """Tolerance config loaded once per process from settings."""
    from config import get_settings
    return ToleranceConfig.from_settings(get_settings())


def get_tolerance_policy() -> TolerancePolicy:
    return TolerancePolicy(get_tolerance_config())
