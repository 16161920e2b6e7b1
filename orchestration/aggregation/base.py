"""
Base Aggregator
===============
Abstract base class for aggregation strategies.
"""

from abc import ABC, abstractmethod
from typing import Iterable, Optional, Sequence

import numpy as np
import structlog

from core.exceptions import AggregationError, NoSurvivingUpdatesError
from core.models import AggregationResult, ClientUpdate
from core.utils import weighted_mean

logger = structlog.get_logger(__name__)


class BaseAggregator(ABC):
    """
    Abstract base class for aggregation strategies.

    Subclasses implement ``_combine`` on the stacked ``(n_clients, N)``
    weight matrix; ``combine`` handles validation, metric averaging and
    result packaging so that every strategy returns the same shape of
    AggregationResult.
    """

    def __init__(self, weighted: bool = True):
        """
        Initialize aggregator.

        Args:
            weighted: Use sample-weighted averaging (vs uniform).
        """
        self.weighted = weighted

    @abstractmethod
    def _combine(
        self,
        stacked: np.ndarray,
        updates: Sequence[ClientUpdate],
        global_weights: np.ndarray,
    ) -> np.ndarray:
        """
        Combine stacked client vectors into the new global vector.

        Args:
            stacked: Matrix of shape (n_clients, N).
            updates: The updates in the same order as ``stacked`` rows.
            global_weights: Current global vector of length N.

        Returns:
            New global vector of length N.
        """

    @abstractmethod
    def get_algorithm_name(self) -> str:
        """Return the name of the aggregation strategy."""

    def combine(
        self,
        updates: Sequence[ClientUpdate],
        global_weights: np.ndarray,
        round_id: Optional[int] = None,
        excluded_clients: Optional[Iterable[str]] = None,
    ) -> AggregationResult:
        """
        Aggregate client updates into a new global model vector.

        Args:
            updates: Surviving client updates (order does not matter).
            global_weights: Current global vector.
            round_id: Round being aggregated (for logging and errors).
            excluded_clients: Clients removed by robustness filtering.

        Returns:
            AggregationResult with the new vector and averaged metrics.

        Raises:
            NoSurvivingUpdatesError: If ``updates`` is empty.
            AggregationError: If the update vectors disagree in length.
        """
        excluded = set(excluded_clients or ())
        if not updates:
            raise NoSurvivingUpdatesError(round_id=round_id, excluded=list(excluded))

        global_weights = np.asarray(global_weights, dtype=np.float64)
        n = global_weights.shape[0]
        for update in updates:
            if update.weights.shape[0] != n:
                raise AggregationError(
                    f"Update from {update.client_id} has length "
                    f"{update.weights.shape[0]}, expected {n}",
                    round_id=round_id,
                    participating_clients=len(updates),
                )

        # Rows ordered by client id, not arrival
        ordered = sorted(updates, key=lambda u: u.client_id)
        stacked = np.vstack([u.weights for u in ordered])
        new_weights = np.asarray(
            self._combine(stacked, ordered, global_weights), dtype=np.float64
        )

        samples = np.array([u.num_samples for u in ordered], dtype=np.float64)
        metric_weights = samples if self.weighted else np.ones_like(samples)
        avg_loss = weighted_mean([u.local_loss for u in ordered], metric_weights)
        avg_accuracy = weighted_mean([u.local_accuracy for u in ordered], metric_weights)

        logger.info(
            "Aggregation complete",
            strategy=self.get_algorithm_name(),
            round_id=round_id,
            clients=len(ordered),
            excluded=len(excluded),
            total_samples=int(samples.sum()),
            avg_loss=avg_loss,
        )

        return AggregationResult(
            new_weights=new_weights,
            participant_count=len(ordered),
            excluded_clients=excluded,
            avg_loss=avg_loss,
            avg_accuracy=avg_accuracy,
            total_samples=int(samples.sum()),
            strategy=self.get_algorithm_name(),
        )

    def compute_weights(
        self,
        updates: Sequence[ClientUpdate],
        weighting: str = "samples",
    ) -> np.ndarray:
        """
        Compute aggregation weights for each update.

        Args:
            updates: Client updates.
            weighting: 'samples' or 'uniform'.

        Returns:
            Array of weights summing to 1.0.
        """
        if weighting == "uniform":
            return np.full(len(updates), 1.0 / len(updates))

        elif weighting == "samples":
            samples = np.array([u.num_samples for u in updates], dtype=np.float64)
            return samples / samples.sum()

        else:
            raise ValueError(f"Unknown weighting strategy: {weighting}")

    def reset(self) -> None:
        """Reset any per-session state (stateless by default)."""
