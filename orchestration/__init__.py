"""
fedround Orchestration Layer
============================
Round coordination, compression, privacy, robustness filtering,
aggregation and convergence tracking.
"""

from .aggregation import (
    BaseAggregator,
    FedAvgAggregator,
    FedNovaAggregator,
    FedProxAggregator,
    TrimmedMeanAggregator,
    create_aggregator,
)
from .compression import CompressionCodec, EncodedWeights
from .convergence import ConvergenceTracker
from .coordinator import ClientRegistry, RoundCoordinator, TrainingSession
from .privacy import (
    DifferentialPrivacy,
    GradientClipper,
    PrivacyAccountant,
    PrivacyEngine,
)
from .robustness import RobustnessFilter

__all__ = [
    # Aggregation
    "BaseAggregator",
    "FedAvgAggregator",
    "FedNovaAggregator",
    "FedProxAggregator",
    "TrimmedMeanAggregator",
    "create_aggregator",
    # Compression
    "CompressionCodec",
    "EncodedWeights",
    # Convergence
    "ConvergenceTracker",
    # Coordination
    "ClientRegistry",
    "RoundCoordinator",
    "TrainingSession",
    # Privacy
    "DifferentialPrivacy",
    "GradientClipper",
    "PrivacyAccountant",
    "PrivacyEngine",
    # Robustness
    "RobustnessFilter",
]
