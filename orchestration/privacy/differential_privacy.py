"""
Differential Privacy Module
===========================
Gaussian mechanism for client updates and per-client privacy budget
accounting.

References:
    - Dwork & Roth, "The Algorithmic Foundations of Differential Privacy", 2014
    - Mironov, "Rényi Differential Privacy", CSF 2017
    - Balle et al., "Hypothesis Testing Interpretations and Rényi DP", AISTATS 2020
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import structlog

from core.exceptions import PrivacyBudgetExceededError

logger = structlog.get_logger(__name__)

# Default RDP orders for accounting
DEFAULT_RDP_ORDERS = [1.5, 1.75, 2, 2.5, 3, 4, 5, 6, 8, 16, 32, 64, 256, 512, 1024]


def compute_rdp_gaussian(noise_multiplier: float, alpha: float) -> float:
    """
    RDP of the Gaussian mechanism at order alpha: alpha / (2 z^2).

    Args:
        noise_multiplier: z = sigma / sensitivity.
        alpha: RDP order (> 1).
    """
    if alpha <= 1:
        raise ValueError("RDP order α must be > 1")
    if noise_multiplier <= 0:
        raise ValueError("Noise multiplier must be positive")

    return alpha / (2 * noise_multiplier ** 2)


def rdp_to_eps_delta(
    rdp_values: List[float], orders: List[float], delta: float
) -> Tuple[float, float]:
    """
    Convert RDP guarantees to (ε, δ)-DP, minimising over orders.

    Args:
        rdp_values: RDP values at each order.
        orders: Corresponding RDP orders.
        delta: Target δ.

    Returns:
        Tuple of (optimal_epsilon, optimal_order).
    """
    if len(rdp_values) != len(orders):
        raise ValueError("Length mismatch between RDP values and orders")
    if delta <= 0:
        raise ValueError("Delta must be positive")

    best_epsilon = float("inf")
    best_order = orders[0]
    log_inv_delta = np.log(1 / delta)

    for rdp, alpha in zip(rdp_values, orders):
        if alpha <= 1:
            continue
        classic = rdp + log_inv_delta / (alpha - 1)
        improved = (
            rdp
            + (log_inv_delta + np.log(alpha)) / (alpha - 1)
            - np.log(alpha / (alpha - 1))
        )
        eps = min(classic, improved)
        if eps < best_epsilon:
            best_epsilon = float(eps)
            best_order = alpha

    return best_epsilon, best_order


@dataclass
class PrivacySpent:
    """Record of one charge against a client's budget."""

    epsilon: float
    delta: float
    round_id: int
    noise_multiplier: Optional[float] = None
    rdp_values: Optional[List[float]] = field(default=None, repr=False)


class PrivacyAccountant:
    """
    Tracks privacy budget consumption for one client across rounds.

    Supported accounting methods:
    - ``simple``: ε_total = Σε_i
    - ``rdp``: Rényi composition of the Gaussian mechanism, converted to
      (ε, δ)-DP at the configured δ
    """

    def __init__(
        self,
        total_epsilon: float,
        total_delta: float,
        accountant_type: str = "simple",
        client_id: Optional[str] = None,
        rdp_orders: Optional[List[float]] = None,
    ):
        """
        Initialize privacy accountant.

        Args:
            total_epsilon: Total privacy budget (ε).
            total_delta: Failure probability (δ).
            accountant_type: Accounting method ('simple', 'rdp').
            client_id: Client whose budget this tracks (for errors and logs).
            rdp_orders: Orders α for RDP accounting.
        """
        if accountant_type not in ("simple", "rdp"):
            raise ValueError(f"Unknown accountant type: {accountant_type}")

        self.total_epsilon = total_epsilon
        self.total_delta = total_delta
        self.accountant_type = accountant_type
        self.client_id = client_id
        self.rdp_orders = list(rdp_orders) if rdp_orders is not None else DEFAULT_RDP_ORDERS

        self._spent_history: List[PrivacySpent] = []
        self._current_epsilon = 0.0
        self._current_delta = 0.0
        self._cumulative_rdp: List[float] = [0.0] * len(self.rdp_orders)

    def _rdp_for(self, noise_multiplier: Optional[float]) -> Optional[List[float]]:
        if self.accountant_type != "rdp" or noise_multiplier is None:
            return None
        return [compute_rdp_gaussian(noise_multiplier, a) for a in self.rdp_orders]

    def _compose(
        self,
        epsilon: float,
        delta: float,
        rdp_values: Optional[List[float]] = None,
    ) -> Tuple[float, float]:
        """Preview the composed (ε, δ) after one more charge."""
        if self.accountant_type == "rdp" and rdp_values is not None:
            composed_rdp = [c + r for c, r in zip(self._cumulative_rdp, rdp_values)]
            composed_epsilon, _ = rdp_to_eps_delta(
                composed_rdp, self.rdp_orders, self.total_delta
            )
            return composed_epsilon, self.total_delta

        return self._current_epsilon + epsilon, self._current_delta + delta

    def can_spend(
        self,
        epsilon: float,
        delta: float,
        noise_multiplier: Optional[float] = None,
    ) -> bool:
        """Check if expenditure is within budget."""
        new_epsilon, _ = self._compose(epsilon, delta, self._rdp_for(noise_multiplier))
        return new_epsilon <= self.total_epsilon

    def spend(
        self,
        epsilon: float,
        delta: float,
        round_id: int,
        noise_multiplier: Optional[float] = None,
    ) -> float:
        """
        Record privacy expenditure.

        Args:
            epsilon: Per-update epsilon.
            delta: Per-update delta.
            round_id: Round the update belongs to.
            noise_multiplier: sigma / sensitivity (required for RDP).

        Returns:
            Cumulative epsilon after the charge.

        Raises:
            PrivacyBudgetExceededError: If the charge would exceed the budget.
                Nothing is recorded in that case.
        """
        rdp_values = self._rdp_for(noise_multiplier)
        new_epsilon, new_delta = self._compose(epsilon, delta, rdp_values)

        if new_epsilon > self.total_epsilon:
            raise PrivacyBudgetExceededError(
                current_epsilon=new_epsilon,
                max_epsilon=self.total_epsilon,
                client_id=self.client_id,
                round_id=round_id,
            )

        if rdp_values is not None:
            self._cumulative_rdp = [
                c + r for c, r in zip(self._cumulative_rdp, rdp_values)
            ]

        self._spent_history.append(
            PrivacySpent(
                epsilon=epsilon,
                delta=delta,
                round_id=round_id,
                noise_multiplier=noise_multiplier,
                rdp_values=rdp_values,
            )
        )
        self._current_epsilon = new_epsilon
        self._current_delta = new_delta

        logger.debug(
            "Privacy budget spent",
            client_id=self.client_id,
            round_id=round_id,
            spent_epsilon=epsilon,
            total_epsilon=self._current_epsilon,
            remaining=self.total_epsilon - self._current_epsilon,
            accountant_type=self.accountant_type,
        )
        return self._current_epsilon

    def remaining(self) -> float:
        """Remaining epsilon budget."""
        return max(0.0, self.total_epsilon - self._current_epsilon)

    def get_spent_budget(self) -> Tuple[float, float]:
        """Get total spent privacy budget."""
        return self._current_epsilon, self._current_delta

    def get_rdp_budget(self) -> Optional[Dict[str, Any]]:
        """Detailed RDP state, or None for simple composition."""
        if self.accountant_type != "rdp":
            return None
        return {
            "cumulative_rdp": dict(zip(self.rdp_orders, self._cumulative_rdp)),
            "current_epsilon": self._current_epsilon,
            "remaining_epsilon": self.remaining(),
            "num_compositions": len(self._spent_history),
        }

    def get_history(self) -> List[PrivacySpent]:
        """Get history of privacy expenditures."""
        return self._spent_history.copy()

    def reset(self) -> None:
        """Reset accountant state."""
        self._spent_history.clear()
        self._current_epsilon = 0.0
        self._current_delta = 0.0
        self._cumulative_rdp = [0.0] * len(self.rdp_orders)


class DifferentialPrivacy:
    """
    Gaussian mechanism for weight vectors.

    Noise is drawn i.i.d. per coordinate with standard deviation
    ``sigma = clip_norm / epsilon`` from a seeded numpy Generator.
    """

    def __init__(
        self,
        epsilon: float = 1.0,
        delta: float = 1e-5,
        clip_norm: float = 1.0,
        seed: Optional[int] = None,
    ):
        """
        Args:
            epsilon: Privacy parameter per update.
            delta: Failure probability.
            clip_norm: L2 sensitivity bound.
            seed: Seed for the noise generator.
        """
        if epsilon <= 0:
            raise ValueError("epsilon must be positive")
        if clip_norm <= 0:
            raise ValueError("clip_norm must be positive")

        self.epsilon = epsilon
        self.delta = delta
        self.clip_norm = clip_norm
        self._rng = np.random.default_rng(seed)

    @staticmethod
    def noise_scale(epsilon: float, clip_norm: float) -> float:
        """Standard deviation of the Gaussian noise per coordinate."""
        return clip_norm / epsilon

    def get_noise_scale(self) -> float:
        return self.noise_scale(self.epsilon, self.clip_norm)

    def get_noise_multiplier(self) -> float:
        """Noise multiplier z = sigma / sensitivity for RDP accounting."""
        return self.get_noise_scale() / self.clip_norm

    def add_noise(
        self,
        weights: np.ndarray,
        epsilon: Optional[float] = None,
        clip_norm: Optional[float] = None,
    ) -> np.ndarray:
        """
        Add calibrated Gaussian noise to a vector.

        Args:
            weights: Weight vector.
            epsilon: Override for the per-update epsilon.
            clip_norm: Override for the sensitivity bound.

        Returns:
            New noised vector (input is not modified).
        """
        epsilon = self.epsilon if epsilon is None else epsilon
        clip_norm = self.clip_norm if clip_norm is None else clip_norm
        sigma = self.noise_scale(epsilon, clip_norm)

        vector = np.asarray(weights, dtype=np.float64)
        noised = vector + self._rng.normal(0.0, sigma, size=vector.shape)

        logger.debug("DP noise added", noise_scale=sigma, num_params=vector.size)
        return noised

    def compute_privacy_spent(self, num_rounds: int, use_rdp: bool = True) -> Tuple[float, float]:
        """
        Total (ε, δ) after ``num_rounds`` noised updates.

        Args:
            num_rounds: Number of updates from one client.
            use_rdp: Use RDP composition instead of simple summation.
        """
        if use_rdp:
            z = self.get_noise_multiplier()
            total_rdp = [compute_rdp_gaussian(z, a) * num_rounds for a in DEFAULT_RDP_ORDERS]
            total_epsilon, _ = rdp_to_eps_delta(total_rdp, DEFAULT_RDP_ORDERS, self.delta)
            return total_epsilon, self.delta

        return self.epsilon * num_rounds, min(1.0, self.delta * num_rounds)
