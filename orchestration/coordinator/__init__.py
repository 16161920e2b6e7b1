"""
Coordinator Module
==================
Client registry, round state machine and multi-round session driver.
"""

from .coordinator import FederatedRound, RoundCoordinator
from .registry import ClientRegistry
from .session import SessionResult, TrainingSession

__all__ = [
    "ClientRegistry",
    "FederatedRound",
    "RoundCoordinator",
    "SessionResult",
    "TrainingSession",
]
