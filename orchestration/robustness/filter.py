"""
Robustness Filter
=================
Removes suspicious updates before aggregation, using the reported local
loss as the signal.

Two rules run in order:
1. Outlier rule: drop updates whose loss lies more than ``k`` population
   standard deviations from the mean loss. ``k = 0`` keeps only the
   median loss.
2. Byzantine trimming: sort the survivors by loss and drop
   ``floor(n * byzantine_fraction)`` from each tail (``trim_tails="both"``)
   or from the high-loss tail only (``trim_tails="upper"``).
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Set

import numpy as np
import structlog

from core.models import ClientUpdate, RobustnessConfig

logger = structlog.get_logger(__name__)

# Absolute slack when comparing a loss deviation against k * sigma
_TOLERANCE = 1e-12


@dataclass
class FilterResult:
    """Updates kept for aggregation and the clients removed."""

    kept: List[ClientUpdate]
    excluded: Set[str] = field(default_factory=set)
    outliers: Set[str] = field(default_factory=set)
    trimmed: Set[str] = field(default_factory=set)
    loss_mean: Optional[float] = None
    loss_std: Optional[float] = None


class RobustnessFilter:
    """
    Loss-based outlier detection and Byzantine trimming.

    Example:
        >>> f = RobustnessFilter(RobustnessConfig(outlier_k=2.0, byzantine_fraction=0.2))
        >>> result = f.filter(updates)
        >>> result.excluded
        {'client_7'}
    """

    def __init__(self, config: Optional[RobustnessConfig] = None):
        self.config = config or RobustnessConfig()

    def detect_outliers(self, updates: Sequence[ClientUpdate]) -> Set[str]:
        """
        Client ids whose loss deviates more than k sigma from the mean.

        With ``k == 0`` only the update(s) closest to the median loss are
        kept; for an even count that is both middle losses. Returns an
        empty set when the rule is disabled or there is no input.
        """
        k = self.config.outlier_k
        if k is None or not updates:
            return set()

        losses = np.array([u.local_loss for u in updates], dtype=np.float64)
        if k == 0:
            median = float(np.median(losses))
            deviation = np.abs(losses - median)
            flagged = deviation > deviation.min() + _TOLERANCE * max(1.0, abs(median))
            return {u.client_id for u, bad in zip(updates, flagged) if bad}

        mu = float(losses.mean())
        sigma = float(losses.std(ddof=0))
        deviation = np.abs(losses - mu)

        flagged = deviation > k * sigma + _TOLERANCE * max(1.0, abs(mu))
        return {u.client_id for u, bad in zip(updates, flagged) if bad}

    def trim(self, updates: Sequence[ClientUpdate]) -> Set[str]:
        """Client ids removed by loss-ordered trimming."""
        n = len(updates)
        n_trim = int(np.floor(n * self.config.byzantine_fraction))
        if n_trim == 0:
            return set()

        ordered = sorted(updates, key=lambda u: (u.local_loss, u.client_id))
        removed = ordered[n - n_trim:]
        if self.config.trim_tails == "both":
            removed = removed + ordered[:n_trim]
        return {u.client_id for u in removed}

    def filter(
        self,
        updates: Sequence[ClientUpdate],
        round_id: Optional[int] = None,
    ) -> FilterResult:
        """
        Apply the outlier rule then trimming.

        Args:
            updates: All updates received for the round.
            round_id: Round being filtered (for logging).

        Returns:
            FilterResult; ``kept`` may be empty.
        """
        updates = list(updates)
        if not updates:
            return FilterResult(kept=[])

        losses = np.array([u.local_loss for u in updates], dtype=np.float64)
        outliers = self.detect_outliers(updates)
        survivors = [u for u in updates if u.client_id not in outliers]

        trimmed = self.trim(survivors)
        kept = [u for u in survivors if u.client_id not in trimmed]
        excluded = outliers | trimmed

        if excluded:
            logger.info(
                "Updates excluded by robustness filter",
                round_id=round_id,
                outliers=sorted(outliers),
                trimmed=sorted(trimmed),
                kept=len(kept),
            )

        return FilterResult(
            kept=kept,
            excluded=excluded,
            outliers=outliers,
            trimmed=trimmed,
            loss_mean=float(losses.mean()),
            loss_std=float(losses.std(ddof=0)),
        )
