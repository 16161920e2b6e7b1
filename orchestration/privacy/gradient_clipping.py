"""
Weight Clipping Module
======================
Bounds the L2 norm of a weight vector, which fixes the sensitivity of a
single client's contribution for the Gaussian mechanism.
"""

from typing import Dict, List, Tuple

import numpy as np
import structlog

from core.utils import l2_norm

logger = structlog.get_logger(__name__)


class GradientClipper:
    """
    L2 norm clipping for flat weight vectors.

    Vectors already within ``max_norm`` are returned unchanged; longer
    ones are scaled down onto the ball of radius ``max_norm``.
    """

    def __init__(self, max_norm: float = 1.0):
        if max_norm <= 0:
            raise ValueError(f"max_norm must be positive, got {max_norm}")
        self.max_norm = max_norm

        self._clip_count = 0
        self._norm_history: List[float] = []

    def clip(
        self,
        weights: np.ndarray,
        record_stats: bool = True,
    ) -> Tuple[np.ndarray, bool]:
        """
        Clip a vector to bounded L2 norm.

        Args:
            weights: Weight vector.
            record_stats: Whether to record clipping statistics.

        Returns:
            Tuple of (clipped_weights, was_clipped).
        """
        vector = np.asarray(weights, dtype=np.float64)
        norm = l2_norm(vector)

        if record_stats:
            self._norm_history.append(norm)

        if norm <= self.max_norm:
            return vector.copy(), False

        clip_factor = self.max_norm / (norm + 1e-10)
        if record_stats:
            self._clip_count += 1

        logger.debug(
            "Weights clipped",
            original_norm=norm,
            max_norm=self.max_norm,
            clip_factor=clip_factor,
        )
        return vector * clip_factor, True

    def get_statistics(self) -> Dict[str, float]:
        """Summary of observed norms and how often clipping was applied."""
        if not self._norm_history:
            return {"total_calls": 0, "clip_count": 0, "clip_rate": 0.0}

        norms = np.array(self._norm_history)
        return {
            "total_calls": len(norms),
            "clip_count": self._clip_count,
            "clip_rate": self._clip_count / len(norms),
            "mean_norm": float(norms.mean()),
            "max_norm_observed": float(norms.max()),
        }

    def reset_statistics(self) -> None:
        """Reset clipping statistics."""
        self._clip_count = 0
        self._norm_history.clear()
