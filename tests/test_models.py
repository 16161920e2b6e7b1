"""
Tests for Data Models and Exceptions
====================================
"""

import numpy as np
import pytest
from pydantic import ValidationError

from core.exceptions import (
    CompressionError,
    InsufficientClientsError,
    PrivacyBudgetExceededError,
    SessionStalledError,
)
from core.models import (
    ClientUpdate,
    GlobalModel,
    RejectionReason,
    RobustnessConfig,
    SessionConfig,
)
from core.utils import round_half_up, weighted_mean


class TestSessionConfig:
    """Tests for session parameter validation."""

    def test_defaults(self):
        config = SessionConfig(model_size=10)

        assert config.min_clients == 3
        assert config.max_consecutive_failures == 5
        assert config.robustness.trim_tails == "upper"
        assert config.privacy.total_epsilon is None

    @pytest.mark.parametrize(
        "overrides",
        [
            {"model_size": 0},
            {"model_size": 10, "client_selection_fraction": 0.0},
            {"model_size": 10, "client_selection_fraction": 1.5},
            {"model_size": 10, "min_clients": 5, "max_clients": 4},
            {"model_size": 10, "round_timeout": 0},
        ],
    )
    def test_invalid(self, overrides):
        with pytest.raises(ValidationError):
            SessionConfig(**overrides)

    def test_byzantine_fraction_below_half(self):
        with pytest.raises(ValidationError):
            RobustnessConfig(byzantine_fraction=0.5)


class TestGlobalModel:
    """Tests for the immutable model snapshot."""

    def test_initial_zeros(self):
        model = GlobalModel.initial(5)

        assert model.version == 0
        assert model.size == 5
        np.testing.assert_array_equal(model.weights, np.zeros(5))

    def test_initial_wrong_length(self):
        with pytest.raises(ValueError):
            GlobalModel.initial(5, weights=[1.0, 2.0])

    def test_weights_copied_and_read_only(self):
        source = np.ones(3)
        model = GlobalModel(version=1, weights=source)
        source[0] = 7.0

        assert model.weights[0] == 1.0
        assert not model.weights.flags.writeable

    def test_frozen(self):
        model = GlobalModel.initial(2)

        with pytest.raises(ValidationError):
            model.version = 3


class TestClientUpdate:
    """Tests for update validation."""

    def test_rejects_non_finite_weights(self):
        with pytest.raises(ValidationError):
            ClientUpdate(client_id="a", round_id=1, weights=[1.0, np.nan], num_samples=1, local_loss=0.1)

    def test_rejects_non_finite_loss(self):
        with pytest.raises(ValidationError):
            ClientUpdate(client_id="a", round_id=1, weights=[1.0], num_samples=1, local_loss=np.inf)

    def test_rejects_zero_samples(self):
        with pytest.raises(ValidationError):
            ClientUpdate(client_id="a", round_id=1, weights=[1.0], num_samples=0, local_loss=0.1)

    def test_rejects_matrix(self):
        with pytest.raises(ValidationError):
            ClientUpdate(client_id="a", round_id=1, weights=[[1.0]], num_samples=1, local_loss=0.1)


class TestExceptions:
    """Tests for error codes and serialisation."""

    def test_rejection_codes_map_to_reasons(self):
        errors = [
            CompressionError("bad"),
            PrivacyBudgetExceededError(2.0, 1.0, client_id="a", round_id=3),
        ]

        reasons = [RejectionReason(e.error_code.lower()) for e in errors]

        assert reasons == [RejectionReason.VALIDATION_ERROR, RejectionReason.PRIVACY_BUDGET_EXCEEDED]

    def test_to_dict(self):
        error = InsufficientClientsError(required=3, available=1, round_id=2)

        payload = error.to_dict()

        assert payload["error_code"] == "INSUFFICIENT_CLIENTS"
        assert payload["error_type"] == "InsufficientClientsError"
        assert payload["details"]["required"] == 3
        assert payload["details"]["round_id"] == 2

    def test_stalled_carries_last_error(self):
        last = InsufficientClientsError(required=3, available=1, round_id=9)

        error = SessionStalledError(5, last_error=last)

        assert error.details["last_error"]["details"]["round_id"] == 9


class TestNumericHelpers:
    """Tests for rounding and weighted means."""

    @pytest.mark.parametrize("value,expected", [(2.5, 3), (2.4999, 2), (0.5, 1), (0.49, 0), (3.0, 3)])
    def test_round_half_up(self, value, expected):
        assert round_half_up(value) == expected

    def test_weighted_mean(self):
        assert weighted_mean([1.0, 3.0], [1.0, 3.0]) == pytest.approx(2.5)
        assert weighted_mean([1.0, 3.0], [0.0, 0.0]) == pytest.approx(2.0)
