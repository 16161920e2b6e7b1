"""
Tests for Aggregation Strategies
================================
"""

import numpy as np
import pytest

from core.exceptions import AggregationError, NoSurvivingUpdatesError
from core.models import AggregationStrategyType
from orchestration.aggregation import (
    FedAvgAggregator,
    FedNovaAggregator,
    FedProxAggregator,
    TrimmedMeanAggregator,
    create_aggregator,
)


class TestFedAvgAggregator:
    """Tests for FedAvg aggregation."""

    def test_weighted_average(self, make_update):
        aggregator = FedAvgAggregator()
        updates = [
            make_update("client-1", [1.0, 2.0, 3.0], num_samples=100, local_loss=0.5),
            make_update("client-2", [4.0, 5.0, 6.0], num_samples=200, local_loss=0.2),
        ]

        result = aggregator.combine(updates, np.zeros(3))

        # (100*[1,2,3] + 200*[4,5,6]) / 300 = [3, 4, 5]
        np.testing.assert_allclose(result.new_weights, [3.0, 4.0, 5.0])
        assert result.participant_count == 2
        assert result.total_samples == 300
        assert result.avg_loss == pytest.approx((100 * 0.5 + 200 * 0.2) / 300)
        assert result.strategy == "FedAvg"

    def test_unweighted_average(self, make_update):
        aggregator = FedAvgAggregator(weighted=False)
        updates = [
            make_update("client-1", [1.0, 2.0], num_samples=100),
            make_update("client-2", [3.0, 4.0], num_samples=300),
        ]

        result = aggregator.combine(updates, np.zeros(2))

        np.testing.assert_allclose(result.new_weights, [2.0, 3.0])

    def test_matches_exact_weighted_mean_randomised(self, make_update):
        rng = np.random.default_rng(1234)
        aggregator = FedAvgAggregator()

        for _ in range(25):
            n_clients = int(rng.integers(1, 12))
            size = int(rng.integers(1, 50))
            vectors = rng.normal(0, 10, (n_clients, size))
            samples = rng.integers(1, 1000, n_clients)
            updates = [
                make_update(f"c{i}", vectors[i], num_samples=int(samples[i]))
                for i in range(n_clients)
            ]

            result = aggregator.combine(updates, np.zeros(size))

            expected = (samples[:, None] * vectors).sum(axis=0) / samples.sum()
            np.testing.assert_allclose(result.new_weights, expected, rtol=0, atol=1e-9)

    def test_order_independent(self, make_update):
        rng = np.random.default_rng(7)
        updates = [
            make_update(f"c{i}", rng.normal(size=8), num_samples=int(rng.integers(1, 50)))
            for i in range(6)
        ]
        aggregator = FedAvgAggregator()

        forward = aggregator.combine(updates, np.zeros(8)).new_weights
        backward = aggregator.combine(list(reversed(updates)), np.zeros(8)).new_weights

        np.testing.assert_array_equal(forward, backward)

    def test_empty_updates(self):
        with pytest.raises(NoSurvivingUpdatesError) as exc_info:
            FedAvgAggregator().combine([], np.zeros(3), round_id=4, excluded_clients={"a"})

        assert exc_info.value.round_id == 4
        assert exc_info.value.excluded == ["a"]

    def test_length_mismatch(self, make_update):
        updates = [make_update("client-1", [1.0, 2.0])]

        with pytest.raises(AggregationError):
            FedAvgAggregator().combine(updates, np.zeros(3))

    def test_excluded_clients_reported(self, make_update):
        result = FedAvgAggregator().combine(
            [make_update("a", [1.0])], np.zeros(1), excluded_clients=["b", "c"]
        )
        assert result.excluded_clients == {"b", "c"}

    @pytest.mark.parametrize("weighting,expected", [("samples", [0.25, 0.75]), ("uniform", [0.5, 0.5])])
    def test_compute_weights(self, make_update, weighting, expected):
        updates = [make_update("a", [1.0], num_samples=1), make_update("b", [1.0], num_samples=3)]

        np.testing.assert_allclose(FedAvgAggregator().compute_weights(updates, weighting), expected)

    def test_compute_weights_only_sample_or_uniform(self, make_update):
        with pytest.raises(ValueError):
            FedAvgAggregator().compute_weights([make_update("a", [1.0])], "loss")


class TestFedProxAggregator:
    """Tests for FedProx aggregation."""

    def test_server_rule_equals_fedavg(self, make_update):
        updates = [
            make_update("a", [1.0, 0.0], num_samples=10),
            make_update("b", [0.0, 1.0], num_samples=30),
        ]
        global_w = np.zeros(2)

        prox = FedProxAggregator(mu=0.1).combine(updates, global_w)
        avg = FedAvgAggregator().combine(updates, global_w)

        np.testing.assert_allclose(prox.new_weights, avg.new_weights)
        assert prox.strategy == "FedProx"

    def test_drift_tracking(self, make_update):
        aggregator = FedProxAggregator(mu=0.1)
        updates = [
            make_update("a", [3.0, 4.0]),
            make_update("b", [0.0, 0.0]),
        ]

        aggregator.combine(updates, np.zeros(2))

        # mean of ||[3,4]|| = 5 and 0
        assert aggregator.get_drift_history() == [pytest.approx(2.5)]

    def test_proximal_loss(self):
        aggregator = FedProxAggregator(mu=0.1)

        loss = aggregator.compute_client_proximal_loss(np.array([1.0, 2.0]), np.zeros(2))

        assert loss == pytest.approx(0.05 * 5.0)

    def test_proximal_gradient(self):
        aggregator = FedProxAggregator(mu=0.5)

        grad = aggregator.compute_proximal_gradient(np.array([2.0, -2.0]), np.array([1.0, 1.0]))

        np.testing.assert_allclose(grad, [0.5, -1.5])

    def test_mu_constant_across_rounds(self, make_update):
        aggregator = FedProxAggregator(mu=0.1)

        for scale in (1.0, 10.0, 100.0, 0.1):
            aggregator.combine([make_update("a", [scale, 0.0])], np.zeros(2))

        assert aggregator.mu == 0.1

    def test_reset(self, make_update):
        aggregator = FedProxAggregator(mu=0.1)
        for scale in (1.0, 10.0, 100.0):
            aggregator.combine([make_update("a", [scale, 0.0])], np.zeros(2))
        assert len(aggregator.get_drift_history()) == 3

        aggregator.reset()

        assert aggregator.mu == 0.1
        assert aggregator.get_drift_history() == []


class TestFedNovaAggregator:
    """Tests for FedNova normalized averaging."""

    def test_normalizes_by_local_steps(self, make_update):
        updates = [
            make_update("a", [1.0, 1.0], num_samples=100, local_steps=1),
            make_update("b", [4.0, 4.0], num_samples=100, local_steps=2),
        ]

        result = FedNovaAggregator().combine(updates, np.zeros(2))

        # tau_eff = 1.5, direction = 0.5*1/1 + 0.5*4/2 = 1.5
        np.testing.assert_allclose(result.new_weights, [2.25, 2.25])
        assert result.strategy == "FedNova"

    def test_equal_steps_reduces_to_fedavg(self, make_update):
        rng = np.random.default_rng(3)
        global_w = rng.normal(size=5)
        updates = [
            make_update(f"c{i}", rng.normal(size=5), num_samples=int(rng.integers(1, 100)), local_steps=3)
            for i in range(4)
        ]

        nova = FedNovaAggregator().combine(updates, global_w)
        avg = FedAvgAggregator().combine(updates, global_w)

        np.testing.assert_allclose(nova.new_weights, avg.new_weights, atol=1e-12)

    def test_missing_steps_falls_back_to_fedavg(self, make_update):
        updates = [
            make_update("a", [1.0, 1.0], num_samples=100, local_steps=1),
            make_update("b", [4.0, 4.0], num_samples=100),
        ]

        result = FedNovaAggregator().combine(updates, np.zeros(2))

        np.testing.assert_allclose(result.new_weights, [2.5, 2.5])

    def test_relative_to_global(self, make_update):
        updates = [make_update("a", [3.0], local_steps=4)]

        result = FedNovaAggregator().combine(updates, np.array([1.0]))

        # single client: w_g + tau * (w - w_g) / tau = w
        np.testing.assert_allclose(result.new_weights, [3.0])


class TestTrimmedMeanAggregator:
    """Tests for coordinate-wise trimmed mean."""

    def test_trims_each_coordinate(self, make_update):
        values = [1.0, 2.0, 3.0, 4.0, 100.0]
        updates = [
            make_update(f"c{i}", [v, -v], num_samples=1 + 1000 * i)
            for i, v in enumerate(values)
        ]

        result = TrimmedMeanAggregator(trim_ratio=0.2).combine(updates, np.zeros(2))

        np.testing.assert_allclose(result.new_weights, [3.0, -3.0])
        assert result.strategy == "TrimmedMean"

    def test_zero_trim_is_plain_mean(self, make_update):
        updates = [make_update("a", [1.0]), make_update("b", [5.0], num_samples=999)]

        result = TrimmedMeanAggregator(trim_ratio=0.0).combine(updates, np.zeros(1))

        np.testing.assert_allclose(result.new_weights, [3.0])

    def test_invalid_ratio(self):
        with pytest.raises(ValueError):
            TrimmedMeanAggregator(trim_ratio=0.5)


class TestCreateAggregator:
    """Tests for the strategy factory."""

    @pytest.mark.parametrize(
        "name,cls",
        [
            ("fedavg", FedAvgAggregator),
            ("fedprox", FedProxAggregator),
            ("fednova", FedNovaAggregator),
            ("trimmed_mean", TrimmedMeanAggregator),
            (AggregationStrategyType.FEDNOVA, FedNovaAggregator),
        ],
    )
    def test_known_strategies(self, name, cls):
        assert isinstance(create_aggregator(name), cls)

    def test_kwargs_forwarded(self):
        aggregator = create_aggregator("fedprox", mu=0.3)
        assert aggregator.mu == 0.3

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            create_aggregator("krum")
