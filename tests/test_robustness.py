"""
Tests for the Robustness Filter
===============================
"""

import numpy as np
import pytest

from core.models import RobustnessConfig
from orchestration.aggregation import FedAvgAggregator
from orchestration.robustness import RobustnessFilter


def _filter(outlier_k=2.0, byzantine_fraction=0.0, trim_tails="both"):
    return RobustnessFilter(
        RobustnessConfig(
            outlier_k=outlier_k,
            byzantine_fraction=byzantine_fraction,
            trim_tails=trim_tails,
        )
    )


class TestOutlierRule:
    """Tests for the k-sigma loss outlier rule."""

    def test_high_loss_excluded(self, make_update):
        updates = [make_update(f"c{i}", [0.0], local_loss=0.5) for i in range(9)]
        updates.append(make_update("bad", [0.0], local_loss=10.0))

        result = _filter().filter(updates)

        # mean 1.45, sigma 2.85: only the 10.0 loss is beyond 2 sigma
        assert result.excluded == {"bad"}
        assert result.outliers == {"bad"}
        assert len(result.kept) == 9
        assert result.loss_mean == pytest.approx(1.45)
        assert result.loss_std == pytest.approx(2.85)

    def test_zero_k_keeps_only_median(self, make_update):
        updates = [
            make_update(f"c{i}", [0.0], local_loss=float(loss))
            for i, loss in enumerate([1, 2, 3, 4, 5])
        ]

        result = _filter(outlier_k=0.0).filter(updates)

        assert [u.client_id for u in result.kept] == ["c2"]
        assert result.excluded == {"c0", "c1", "c3", "c4"}

    def test_zero_k_skewed_losses_keep_median(self, make_update):
        updates = [
            make_update(f"c{i}", [0.0], local_loss=loss)
            for i, loss in enumerate([1.0, 2.0, 10.0])
        ]

        result = _filter(outlier_k=0.0).filter(updates)

        # mean 4.33 matches no loss; the median 2.0 does
        assert [u.client_id for u in result.kept] == ["c1"]
        assert result.outliers == {"c0", "c2"}

    def test_zero_k_even_count_keeps_middle_pair(self, make_update):
        updates = [
            make_update(f"c{i}", [0.0], local_loss=loss)
            for i, loss in enumerate([1.0, 2.0, 3.0, 10.0])
        ]

        result = _filter(outlier_k=0.0).filter(updates)

        assert sorted(u.client_id for u in result.kept) == ["c1", "c2"]

    def test_disabled_rule(self, make_update):
        updates = [make_update(f"c{i}", [0.0], local_loss=0.5) for i in range(9)]
        updates.append(make_update("bad", [0.0], local_loss=1e6))

        result = _filter(outlier_k=None).filter(updates)

        assert result.excluded == set()
        assert len(result.kept) == 10

    def test_identical_losses_kept(self, make_update):
        updates = [make_update(f"c{i}", [0.0], local_loss=0.3) for i in range(5)]

        assert _filter(outlier_k=0.0).detect_outliers(updates) == set()

    def test_empty_input(self):
        result = _filter().filter([])

        assert result.kept == []
        assert result.excluded == set()


class TestTrimming:
    """Tests for loss-ordered Byzantine trimming."""

    def test_trim_both_tails(self, make_update):
        updates = [make_update(f"c{i}", [0.0], local_loss=float(i)) for i in range(10)]

        result = _filter(outlier_k=None, byzantine_fraction=0.2).filter(updates)

        assert result.trimmed == {"c0", "c1", "c8", "c9"}
        assert sorted(u.client_id for u in result.kept) == [f"c{i}" for i in range(2, 8)]

    def test_trim_upper_tail(self, make_update):
        updates = [make_update(f"c{i}", [0.0], local_loss=float(i)) for i in range(10)]

        result = _filter(outlier_k=None, byzantine_fraction=0.2, trim_tails="upper").filter(updates)

        assert result.trimmed == {"c8", "c9"}
        assert len(result.kept) == 8

    def test_trim_count_floors(self, make_update):
        updates = [make_update(f"c{i}", [0.0], local_loss=float(i)) for i in range(4)]

        # floor(4 * 0.2) = 0
        assert _filter(outlier_k=None, byzantine_fraction=0.2).trim(updates) == set()

    def test_ties_broken_by_client_id(self, make_update):
        updates = [make_update(cid, [0.0], local_loss=1.0) for cid in ["d", "a", "c", "b"]]

        trimmed = _filter(outlier_k=None, byzantine_fraction=0.25, trim_tails="upper").trim(updates)

        assert trimmed == {"d"}

    def test_trimming_applies_to_outlier_survivors(self, make_update):
        updates = [make_update(f"c{i}", [0.0], local_loss=0.5 + 0.01 * i) for i in range(9)]
        updates.append(make_update("bad", [0.0], local_loss=50.0))

        result = _filter(outlier_k=2.0, byzantine_fraction=0.25, trim_tails="upper").filter(updates)

        # 9 survivors, floor(9 * 0.25) = 2 trimmed from the top
        assert result.outliers == {"bad"}
        assert result.trimmed == {"c7", "c8"}
        assert result.excluded == {"bad", "c7", "c8"}


class TestFilterThenAverage:
    """Filtering followed by FedAvg on a small poisoned round."""

    @pytest.fixture
    def poisoned_updates(self, make_update):
        return [
            make_update("c1", [1.0, 1.0], num_samples=10, local_loss=0.1),
            make_update("c2", [3.0, 3.0], num_samples=10, local_loss=0.2),
            make_update("c3", [1.0, 1.0], num_samples=10, local_loss=0.15),
            make_update("c4", [100.0, 100.0], num_samples=10, local_loss=5.0),
        ]

    def test_outlier_rule_cannot_fire_on_four(self, poisoned_updates):
        # with n=4 the largest possible z-score is sqrt(3) < 2
        assert _filter(outlier_k=2.0).detect_outliers(poisoned_updates) == set()

    def test_both_tails(self, poisoned_updates):
        result = _filter(byzantine_fraction=0.25, trim_tails="both").filter(poisoned_updates)
        combined = FedAvgAggregator().combine(result.kept, np.zeros(2), excluded_clients=result.excluded)

        assert result.excluded == {"c1", "c4"}
        np.testing.assert_allclose(combined.new_weights, [2.0, 2.0])

    def test_upper_tail(self, poisoned_updates):
        result = _filter(byzantine_fraction=0.25, trim_tails="upper").filter(poisoned_updates)
        combined = FedAvgAggregator().combine(result.kept, np.zeros(2), excluded_clients=result.excluded)

        assert result.excluded == {"c4"}
        np.testing.assert_allclose(combined.new_weights, [5.0 / 3.0, 5.0 / 3.0])

    def test_default_config(self, poisoned_updates):
        result = RobustnessFilter(RobustnessConfig(byzantine_fraction=0.25)).filter(poisoned_updates)
        combined = FedAvgAggregator().combine(result.kept, np.zeros(2), excluded_clients=result.excluded)

        assert result.excluded == {"c4"}
        np.testing.assert_allclose(combined.new_weights, [1.67, 1.67], atol=0.01)
