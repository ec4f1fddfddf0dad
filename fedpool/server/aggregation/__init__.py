"""
Server aggregation package.

This package contains aggregation algorithms that combine a round's
contributions into the next global ParameterSet.

Modules:
    base_aggregator: Base classes and interfaces for aggregation algorithms
    mean_aggregator: Element-wise arithmetic mean with a wide accumulator

Available aggregation implementations:
- MeanAggregator: Unweighted element-wise mean over a round batch
"""

from .base_aggregator import AggregationMetrics, BaseAggregator
from .mean_aggregator import MeanAggregator

__all__ = [
    BaseAggregator.__name__,
    AggregationMetrics.__name__,
    MeanAggregator.__name__,
]

__version__ = '1.0.0'
