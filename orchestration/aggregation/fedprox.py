"""
FedProx Aggregator
==================
Federated Proximal (FedProx) algorithm implementation for heterogeneous
(non-IID) client populations.

Reference:
    Li et al., "Federated Optimization in Heterogeneous Networks",
    MLSys 2020
"""

from typing import List, Optional, Sequence

import numpy as np
import structlog

from .fedavg import FedAvgAggregator
from core.models import ClientUpdate

logger = structlog.get_logger(__name__)


class FedProxAggregator(FedAvgAggregator):
    """
    Federated Proximal (FedProx) aggregation algorithm.

    The server rule is the FedAvg weighted mean; the proximal term
    (mu/2) * ||w - w_global||^2 is applied client-side during training.
    The server tracks how far client vectors drift from the global model.
    """

    def __init__(
        self,
        mu: float = 0.01,
        weighted: bool = True,
    ):
        """
        Initialize FedProx aggregator.

        Args:
            mu: Proximal term coefficient (larger = more regularization).
            weighted: Use sample-weighted averaging (vs uniform).
        """
        super().__init__(weighted=weighted)
        self.mu = mu

        self._drift_history: List[float] = []

    def get_algorithm_name(self) -> str:
        """Return algorithm name."""
        return "FedProx"

    def _combine(
        self,
        stacked: np.ndarray,
        updates: Sequence[ClientUpdate],
        global_weights: np.ndarray,
    ) -> np.ndarray:
        avg_drift = self._compute_average_drift(stacked, global_weights)
        self._drift_history.append(avg_drift)

        logger.debug("Client drift computed", avg_drift=avg_drift, mu=self.mu)
        return super()._combine(stacked, updates, global_weights)

    @staticmethod
    def _compute_average_drift(stacked: np.ndarray, global_weights: np.ndarray) -> float:
        """Average L2 distance of client vectors from the global vector."""
        drifts = np.linalg.norm(stacked - global_weights, axis=1)
        return float(np.mean(drifts)) if drifts.size else 0.0

    def get_drift_history(self) -> List[float]:
        """Get history of drift values across rounds."""
        return self._drift_history.copy()

    def compute_client_proximal_loss(
        self,
        local_weights: np.ndarray,
        global_weights: np.ndarray,
        mu: Optional[float] = None,
    ) -> float:
        """
        Compute the proximal loss term for a client.

        This is the term a client adds to its local loss:
        (mu/2) * ||w - w_global||^2

        Args:
            local_weights: Client's current vector.
            global_weights: Global model vector.
            mu: Override for the coefficient (defaults to self.mu).

        Returns:
            Proximal loss term value.
        """
        mu = self.mu if mu is None else mu
        diff = np.asarray(local_weights, dtype=np.float64) - np.asarray(
            global_weights, dtype=np.float64
        )
        return float((mu / 2) * np.dot(diff, diff))

    def compute_proximal_gradient(
        self, local_weights: np.ndarray, global_weights: np.ndarray
    ) -> np.ndarray:
        """Gradient of the proximal term, mu * (w - w_global)."""
        return self.mu * (
            np.asarray(local_weights, dtype=np.float64)
            - np.asarray(global_weights, dtype=np.float64)
        )

    def reset(self) -> None:
        """Clear the drift history."""
        self._drift_history.clear()
