"""
Trimmed Mean Aggregator
=======================
Coordinate-wise trimmed mean, robust to a bounded fraction of Byzantine
clients per coordinate.

Reference:
    Yin et al., "Byzantine-Robust Distributed Learning: Towards Optimal
    Statistical Rates", ICML 2018
"""

from typing import Sequence

import numpy as np
from scipy import stats
import structlog

from .base import BaseAggregator
from core.models import ClientUpdate

logger = structlog.get_logger(__name__)


class TrimmedMeanAggregator(BaseAggregator):
    """
    Coordinate-wise trimmed mean.

    For every coordinate the largest and smallest ``trim_ratio`` fraction
    of client values are discarded and the rest averaged. Sample counts
    are ignored for the vector; reported metrics are unweighted too.
    """

    def __init__(self, trim_ratio: float = 0.2):
        """
        Args:
            trim_ratio: Fraction cut from each tail, in [0, 0.5).
        """
        if not 0.0 <= trim_ratio < 0.5:
            raise ValueError(f"trim_ratio must be in [0, 0.5), got {trim_ratio}")
        super().__init__(weighted=False)
        self.trim_ratio = trim_ratio

    def get_algorithm_name(self) -> str:
        """Return algorithm name."""
        return "TrimmedMean"

    def _combine(
        self,
        stacked: np.ndarray,
        updates: Sequence[ClientUpdate],
        global_weights: np.ndarray,
    ) -> np.ndarray:
        n_trim = int(len(updates) * self.trim_ratio)
        logger.debug("Trimming per coordinate", clients=len(updates), trimmed_each_side=n_trim)
        return stats.trim_mean(stacked, self.trim_ratio, axis=0)
