"""
FedNova Aggregator
==================
Normalized averaging for clients that run different numbers of local
steps.

Reference:
    Wang et al., "Tackling the Objective Inconsistency Problem in
    Heterogeneous Federated Optimization", NeurIPS 2020
"""

from typing import Sequence

import numpy as np
import structlog

from .fedavg import FedAvgAggregator
from core.models import ClientUpdate

logger = structlog.get_logger(__name__)


class FedNovaAggregator(FedAvgAggregator):
    """
    FedNova aggregation.

    Each client's displacement from the global model is divided by its
    local step count tau_i before averaging, then rescaled by the
    sample-weighted mean step count:

        tau_eff = sum_i p_i * tau_i
        w_new   = w_global + tau_eff * sum_i p_i * (w_i - w_global) / tau_i

    with p_i = n_i / sum_j n_j. When any update lacks ``local_steps`` the
    rule degenerates to FedAvg.
    """

    def get_algorithm_name(self) -> str:
        """Return algorithm name."""
        return "FedNova"

    def _combine(
        self,
        stacked: np.ndarray,
        updates: Sequence[ClientUpdate],
        global_weights: np.ndarray,
    ) -> np.ndarray:
        if any(u.local_steps is None for u in updates):
            logger.warning(
                "Missing local step counts, falling back to FedAvg",
                clients_without_steps=[u.client_id for u in updates if u.local_steps is None],
            )
            return super()._combine(stacked, updates, global_weights)

        p = self.compute_weights(updates, "samples")
        tau = np.array([u.local_steps for u in updates], dtype=np.float64)
        tau_eff = float(np.dot(p, tau))

        normalized = (stacked - global_weights) / tau[:, None]
        direction = p @ normalized

        logger.debug("FedNova normalization", tau_eff=tau_eff, tau_min=tau.min(), tau_max=tau.max())
        return global_weights + tau_eff * direction
