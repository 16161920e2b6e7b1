"""
Aggregation Module
==================
Strategies that combine client weight vectors into a new global model.
"""

from typing import Dict, Type, Union

from core.models import AggregationStrategyType, SessionConfig

from .base import BaseAggregator
from .fedavg import FedAvgAggregator
from .fednova import FedNovaAggregator
from .fedprox import FedProxAggregator
from .trimmed_mean import TrimmedMeanAggregator

AGGREGATORS: Dict[str, Type[BaseAggregator]] = {
    AggregationStrategyType.FEDAVG.value: FedAvgAggregator,
    AggregationStrategyType.FEDPROX.value: FedProxAggregator,
    AggregationStrategyType.FEDNOVA.value: FedNovaAggregator,
    AggregationStrategyType.TRIMMED_MEAN.value: TrimmedMeanAggregator,
}


def create_aggregator(
    strategy: Union[str, AggregationStrategyType], **kwargs
) -> BaseAggregator:
    """Factory function to create an aggregation strategy by name."""
    name = strategy.value if isinstance(strategy, AggregationStrategyType) else str(strategy).lower()
    if name not in AGGREGATORS:
        raise ValueError(f"Unknown strategy: {strategy}. Available: {list(AGGREGATORS.keys())}")
    return AGGREGATORS[name](**kwargs)


def aggregator_from_config(config: SessionConfig) -> BaseAggregator:
    """Build the strategy named in a session configuration."""
    if config.strategy == AggregationStrategyType.FEDPROX:
        return create_aggregator(config.strategy, mu=config.fedprox_mu)
    if config.strategy == AggregationStrategyType.TRIMMED_MEAN:
        return create_aggregator(
            config.strategy, trim_ratio=config.robustness.byzantine_fraction
        )
    return create_aggregator(config.strategy)


__all__ = [
    "AGGREGATORS",
    "BaseAggregator",
    "FedAvgAggregator",
    "FedNovaAggregator",
    "FedProxAggregator",
    "TrimmedMeanAggregator",
    "aggregator_from_config",
    "create_aggregator",
]
