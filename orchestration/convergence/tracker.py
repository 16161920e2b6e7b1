"""
Convergence Tracker
===================
Early stopping, learning-rate hints and round quality tracking.

Converged means the aggregated loss stayed below ``min_delta`` for
``patience`` consecutive rounds. The learning-rate hint is halved when
the loss is high, grown by 10% when it is low, optionally decayed every
``decay_steps`` rounds, and always clamped to ``[lr_min, lr_max]``.
"""

from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

import numpy as np
import structlog

from core.models import AggregationResult, ConvergenceConfig

logger = structlog.get_logger(__name__)


@dataclass
class ConvergenceStatus:
    """Outcome of evaluating one round."""

    round_id: int
    converged: bool
    learning_rate: float
    quality_score: float
    rounds_below_threshold: int
    best_round: Optional[int] = None
    best_loss: Optional[float] = None


@dataclass
class RoundMetrics:
    """Per-round entry of the rolling history."""

    round_id: int
    avg_loss: float
    avg_accuracy: float
    quality_score: float
    learning_rate: float
    model_version: Optional[int] = None


class ConvergenceTracker:
    """Tracks aggregated metrics across rounds and decides when to stop."""

    def __init__(self, config: Optional[ConvergenceConfig] = None, history_size: int = 100):
        self.config = config or ConvergenceConfig()
        self.learning_rate = self.config.initial_learning_rate

        self._history: Deque[RoundMetrics] = deque(maxlen=history_size)
        self._rounds_evaluated = 0
        self._rounds_below_threshold = 0
        self._converged = False

        self._best_loss = float("inf")
        self._best_round: Optional[int] = None
        self._best_version: Optional[int] = None

    @property
    def converged(self) -> bool:
        return self._converged

    @staticmethod
    def quality_score(avg_loss: float) -> float:
        """Round quality in [0, 1]: 1 - loss, clamped."""
        return float(np.clip(1.0 - avg_loss, 0.0, 1.0))

    def evaluate(
        self,
        round_id: int,
        result: AggregationResult,
        model_version: Optional[int] = None,
    ) -> ConvergenceStatus:
        """
        Record a completed round and update the stopping state.

        Args:
            round_id: Round that just completed.
            result: Its aggregation result.
            model_version: Version of the global model the round produced.

        Returns:
            ConvergenceStatus for this round.
        """
        loss = float(result.avg_loss)
        self._rounds_evaluated += 1

        if loss < self.config.min_delta:
            self._rounds_below_threshold += 1
        else:
            self._rounds_below_threshold = 0

        if not self._converged and self._rounds_below_threshold >= self.config.patience:
            self._converged = True
            logger.info(
                "Convergence reached",
                round_id=round_id,
                avg_loss=loss,
                patience=self.config.patience,
            )

        if loss < self._best_loss:
            self._best_loss = loss
            self._best_round = round_id
            self._best_version = model_version

        self.learning_rate = self._next_learning_rate(loss)
        quality = self.quality_score(loss)

        self._history.append(
            RoundMetrics(
                round_id=round_id,
                avg_loss=loss,
                avg_accuracy=float(result.avg_accuracy),
                quality_score=quality,
                learning_rate=self.learning_rate,
                model_version=model_version,
            )
        )

        logger.debug(
            "Round evaluated",
            round_id=round_id,
            avg_loss=loss,
            learning_rate=self.learning_rate,
            quality=quality,
            below_threshold=self._rounds_below_threshold,
        )

        return ConvergenceStatus(
            round_id=round_id,
            converged=self._converged,
            learning_rate=self.learning_rate,
            quality_score=quality,
            rounds_below_threshold=self._rounds_below_threshold,
            best_round=self._best_round,
            best_loss=self._best_loss,
        )

    def _next_learning_rate(self, loss: float) -> float:
        cfg = self.config
        lr = self.learning_rate

        if loss > cfg.high_threshold:
            lr *= 0.5
        elif loss < cfg.low_threshold:
            lr *= 1.1

        if cfg.decay_rate < 1.0 and self._rounds_evaluated % cfg.decay_steps == 0:
            lr *= cfg.decay_rate

        return float(np.clip(lr, cfg.lr_min, cfg.lr_max))

    def get_history(self) -> List[RoundMetrics]:
        """Rolling history, oldest first."""
        return list(self._history)

    def best_checkpoint(self) -> Dict[str, Optional[float]]:
        """Round and model version with the lowest loss so far."""
        return {
            "round_id": self._best_round,
            "model_version": self._best_version,
            "avg_loss": self._best_loss if self._best_round is not None else None,
        }

    def reset(self) -> None:
        """Reset tracker state."""
        self.learning_rate = self.config.initial_learning_rate
        self._history.clear()
        self._rounds_evaluated = 0
        self._rounds_below_threshold = 0
        self._converged = False
        self._best_loss = float("inf")
        self._best_round = None
        self._best_version = None
