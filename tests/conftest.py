"""Shared fixtures for the fedround test suite."""

import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure project root is on sys.path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.models import (
    ClientUpdate,
    CompressionConfig,
    PrivacyConfig,
    RobustnessConfig,
    SessionConfig,
)


def build_update(
    client_id,
    weights,
    num_samples=100,
    local_loss=0.5,
    local_accuracy=0.0,
    round_id=1,
    local_steps=None,
):
    return ClientUpdate(
        client_id=client_id,
        round_id=round_id,
        weights=np.asarray(weights, dtype=np.float64),
        num_samples=num_samples,
        local_loss=local_loss,
        local_accuracy=local_accuracy,
        local_steps=local_steps,
    )


def build_config(**overrides):
    """Small, permissive session config for coordinator tests."""
    params = dict(
        model_size=4,
        client_selection_fraction=1.0,
        min_clients=2,
        max_clients=50,
        round_timeout=1.0,
        privacy=PrivacyConfig(total_epsilon=None),
        compression=CompressionConfig(top_k_ratio=1.0, quant_bits=0),
        robustness=RobustnessConfig(outlier_k=None, byzantine_fraction=0.0),
        seed=1,
    )
    params.update(overrides)
    return SessionConfig(**params)


@pytest.fixture
def make_update():
    return build_update


@pytest.fixture
def make_config():
    return build_config
