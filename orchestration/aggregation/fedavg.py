"""
FedAvg Aggregator
=================
Federated Averaging (FedAvg) algorithm implementation.

Reference:
    McMahan et al., "Communication-Efficient Learning of Deep Networks
    from Decentralized Data", AISTATS 2017
"""

from typing import Sequence

import numpy as np
import structlog

from .base import BaseAggregator
from core.models import ClientUpdate

logger = structlog.get_logger(__name__)


class FedAvgAggregator(BaseAggregator):
    """
    Federated Averaging (FedAvg) aggregation algorithm.

    Computes the weighted average of client weight vectors, with weights
    proportional to local dataset sizes:

        w_new = sum_i (n_i / sum_j n_j) * w_i
    """

    def get_algorithm_name(self) -> str:
        """Return algorithm name."""
        return "FedAvg"

    def _combine(
        self,
        stacked: np.ndarray,
        updates: Sequence[ClientUpdate],
        global_weights: np.ndarray,
    ) -> np.ndarray:
        weighting = "samples" if self.weighted else "uniform"
        weights = self.compute_weights(updates, weighting)
        return self._weighted_average(stacked, weights)

    @staticmethod
    def _weighted_average(stacked: np.ndarray, weights: np.ndarray) -> np.ndarray:
        """Row-weighted average of the stacked client vectors."""
        return weights @ stacked
