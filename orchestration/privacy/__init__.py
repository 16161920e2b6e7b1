"""
Privacy Module
==============
Clipping, Gaussian noise and per-client budget accounting.
"""

from .differential_privacy import (
    DifferentialPrivacy,
    PrivacyAccountant,
    compute_rdp_gaussian,
    rdp_to_eps_delta,
)
from .engine import PrivacyEngine
from .gradient_clipping import GradientClipper

__all__ = [
    "DifferentialPrivacy",
    "PrivacyAccountant",
    "PrivacyEngine",
    "GradientClipper",
    "compute_rdp_gaussian",
    "rdp_to_eps_delta",
]
