"""
Privacy Engine
==============
Client-side clipping and noising helpers plus the server-side budget
check applied to every arriving update.
"""

from typing import Dict, Optional, Set

import numpy as np
import structlog

from core.exceptions import PrivacyBudgetExceededError
from core.models import ClientUpdate, PrivacyConfig

from .differential_privacy import DifferentialPrivacy, PrivacyAccountant
from .gradient_clipping import GradientClipper

logger = structlog.get_logger(__name__)


class PrivacyEngine:
    """
    Differential privacy for federated rounds.

    ``clip``/``add_noise``/``privatize`` are what a client runs before
    sending. ``validate`` is what the coordinator runs on arrival: it
    charges the per-update epsilon to the client's accountant and blocks
    the client once its session budget is exhausted.

    Example:
        >>> engine = PrivacyEngine(PrivacyConfig(epsilon=1.0, total_epsilon=3.0))
        >>> noised = engine.privatize(np.ones(10))
        >>> engine.validate(update)  # raises PrivacyBudgetExceededError on overrun
    """

    def __init__(self, config: Optional[PrivacyConfig] = None, seed: Optional[int] = None):
        self.config = config or PrivacyConfig()
        self._clipper = GradientClipper(max_norm=self.config.clip_norm)
        self._mechanism = DifferentialPrivacy(
            epsilon=self.config.epsilon,
            delta=self.config.delta,
            clip_norm=self.config.clip_norm,
            seed=seed,
        )
        self._accountants: Dict[str, PrivacyAccountant] = {}
        self._blocked: Set[str] = set()

    @property
    def tracking_enabled(self) -> bool:
        return self.config.total_epsilon is not None

    # -------------------------------------------------------------------------
    # Client-side helpers
    # -------------------------------------------------------------------------

    def clip(self, weights: np.ndarray, clip_norm: Optional[float] = None) -> np.ndarray:
        """Scale ``weights`` so its L2 norm is at most ``clip_norm``."""
        if clip_norm is None or clip_norm == self._clipper.max_norm:
            clipped, _ = self._clipper.clip(weights)
            return clipped
        clipped, _ = GradientClipper(max_norm=clip_norm).clip(weights, record_stats=False)
        return clipped

    def add_noise(
        self,
        weights: np.ndarray,
        epsilon: Optional[float] = None,
        delta: Optional[float] = None,
        clip_norm: Optional[float] = None,
    ) -> np.ndarray:
        """
        Add Gaussian noise with sigma = clip_norm / epsilon per coordinate.

        ``delta`` is accepted for interface symmetry; the noise scale does
        not depend on it.
        """
        return self._mechanism.add_noise(weights, epsilon=epsilon, clip_norm=clip_norm)

    def privatize(self, weights: np.ndarray) -> np.ndarray:
        """Clip then noise with the session parameters."""
        return self.add_noise(self.clip(weights))

    # -------------------------------------------------------------------------
    # Server-side accounting
    # -------------------------------------------------------------------------

    def accountant_for(self, client_id: str) -> Optional[PrivacyAccountant]:
        """The client's accountant, created on first use (None when untracked)."""
        if not self.tracking_enabled:
            return None
        accountant = self._accountants.get(client_id)
        if accountant is None:
            accountant = PrivacyAccountant(
                total_epsilon=self.config.total_epsilon,
                total_delta=self.config.delta,
                accountant_type=self.config.accountant,
                client_id=client_id,
            )
            self._accountants[client_id] = accountant
        return accountant

    def validate(self, update: ClientUpdate) -> None:
        """
        Charge one update against its client's session budget.

        Raises:
            PrivacyBudgetExceededError: If the budget is (or already was)
                exhausted. The client stays blocked for the session.
        """
        accountant = self.accountant_for(update.client_id)
        if accountant is None:
            return

        if update.client_id in self._blocked:
            spent, _ = accountant.get_spent_budget()
            raise PrivacyBudgetExceededError(
                current_epsilon=spent,
                max_epsilon=accountant.total_epsilon,
                client_id=update.client_id,
                round_id=update.round_id,
            )

        try:
            accountant.spend(
                epsilon=self.config.epsilon,
                delta=self.config.delta,
                round_id=update.round_id,
                noise_multiplier=self._mechanism.get_noise_multiplier(),
            )
        except PrivacyBudgetExceededError:
            self._blocked.add(update.client_id)
            logger.warning(
                "Client privacy budget exhausted",
                client_id=update.client_id,
                round_id=update.round_id,
                total_epsilon=accountant.total_epsilon,
            )
            raise

    def is_blocked(self, client_id: str) -> bool:
        return client_id in self._blocked

    def remaining_budget(self, client_id: str) -> Optional[float]:
        """Remaining epsilon for ``client_id`` (None when untracked)."""
        accountant = self.accountant_for(client_id)
        return accountant.remaining() if accountant is not None else None

    def clipping_statistics(self) -> Dict[str, float]:
        return self._clipper.get_statistics()

    def reset(self) -> None:
        """Forget all budgets and blocks (new session)."""
        self._accountants.clear()
        self._blocked.clear()
