"""
Convergence Module
==================
Early stopping and learning-rate hints.
"""

from .tracker import ConvergenceStatus, ConvergenceTracker, RoundMetrics

__all__ = [
    "ConvergenceStatus",
    "ConvergenceTracker",
    "RoundMetrics",
]
