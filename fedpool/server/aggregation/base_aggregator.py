"""
Base aggregator for federated parameter averaging.

This module provides the abstract base class and common utilities for
aggregation strategies. It defines the interface the coordinator calls once a
round batch is complete, plus shared metrics collection.

Key Components:
    - BaseAggregator: Abstract base class for aggregation strategies
    - AggregationMetrics: Data structure for tracking aggregation statistics
    - Shared utilities for batch compatibility checks and model diversity

Aggregators are pure: they never touch coordinator state and are called
without any lock held, so the coordinator can keep accepting contributions
for the next round while a batch is being averaged.
"""

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from fedpool.common.errors import EmptyAggregationInputError, ShapeMismatchError
from fedpool.common.tensor import ParameterSet, format_signature


@dataclass
class AggregationMetrics:
    """
    Metrics and metadata collected during aggregation.

    Attributes:
        aggregation_time: Time taken to perform aggregation (seconds)
        participant_count: Number of contributions averaged
        total_parameters: Number of scalar parameters per contribution
        model_diversity: Mean absolute pairwise parameter distance (optional)
        aggregation_round: Round number being produced
        timestamp: When aggregation was performed
        additional_metrics: Dictionary for custom metrics
    """
    aggregation_time: float = 0.0
    participant_count: int = 0
    total_parameters: int = 0
    model_diversity: Optional[float] = None
    aggregation_round: int = 0
    timestamp: float = field(default_factory=time.time)
    additional_metrics: Dict[str, Any] = field(default_factory=dict)


class BaseAggregator(ABC):
    """
    Abstract base class for aggregation strategies.

    The aggregation process follows these steps:
    1. Reject empty input (an invariant violation, never a recoverable case)
    2. Check that every contribution in the batch shares one signature
    3. Combine the contributions with the strategy's algorithm
    4. Collect metrics and return the new ParameterSet

    Subclasses implement ``aggregate``; the base class provides validation,
    diversity and statistics helpers.
    """

    def __init__(self, collect_metrics: bool = True):
        """
        Initialize the base aggregator.

        Args:
            collect_metrics: Whether to compute model diversity per round
        """
        log = logger.bind(context="BaseAggregator.__init__")
        log.info(f"Initializing {self.__class__.__name__}")

        self.collect_metrics = collect_metrics

        # Aggregation statistics, updated from whichever thread ran the round
        self._stats_lock = threading.Lock()
        self.total_aggregations = 0
        self.total_aggregation_time = 0.0
        self.total_models_aggregated = 0
        self.creation_time = time.time()

    @abstractmethod
    def aggregate(
        self,
        parameter_sets: Sequence[ParameterSet],
        round_num: int = 0,
    ) -> Tuple[ParameterSet, AggregationMetrics]:
        """
        Combine a batch of contributions into one ParameterSet.

        Args:
            parameter_sets: Contributions of the round batch (non-empty)
            round_num: Round number being produced

        Returns:
            A tuple containing:
                - The aggregated ParameterSet
                - An AggregationMetrics instance with details about the aggregation

        Raises:
            EmptyAggregationInputError: If the batch is empty
            ShapeMismatchError: If the contributions disagree in signature
        """
        pass

    def check_batch_compatibility(self, parameter_sets: Sequence[ParameterSet]) -> bool:
        """
        Check that a batch is non-empty and structurally uniform.

        Args:
            parameter_sets: Contributions to check

        Returns:
            True if the batch can be averaged

        Raises:
            EmptyAggregationInputError: If the batch is empty
            ShapeMismatchError: If any contribution's signature differs from the first
        """
        log = logger.bind(context="BaseAggregator.check_batch_compatibility")

        if not parameter_sets:
            log.critical("Aggregation invoked with zero contributions")
            raise EmptyAggregationInputError("Aggregation invoked with zero contributions")

        reference = parameter_sets[0].signature
        for index, parameters in enumerate(parameter_sets[1:], start=1):
            if parameters.signature != reference:
                log.error(
                    f"Contribution {index} has signature {format_signature(parameters.signature)}, "
                    f"expected {format_signature(reference)}"
                )
                raise ShapeMismatchError(
                    f"Contribution {index} does not match the batch signature"
                )

        log.debug(f"All {len(parameter_sets)} contributions are compatible")
        return True

    def calculate_model_diversity(self, parameter_sets: Sequence[ParameterSet]) -> float:
        """
        Calculate diversity between contributions.

        Diversity is the mean over all pairs of the mean absolute parameter
        difference. Higher values mean participants drifted further apart.

        Args:
            parameter_sets: Structurally compatible contributions

        Returns:
            Diversity metric (0.0 for fewer than two contributions)
        """
        log = logger.bind(context="BaseAggregator.calculate_model_diversity")

        if len(parameter_sets) < 2:
            log.debug("Not enough contributions to calculate diversity")
            return 0.0

        total_distance = 0.0
        pair_count = 0
        for i in range(len(parameter_sets)):
            for j in range(i + 1, len(parameter_sets)):
                total_distance += self._calculate_parameter_distance(parameter_sets[i], parameter_sets[j])
                pair_count += 1

        diversity = total_distance / pair_count
        log.debug(f"Calculated model diversity: {diversity:.6f}")
        return diversity

    def _calculate_parameter_distance(self, first: ParameterSet, second: ParameterSet) -> float:
        total_distance = 0.0
        total_params = 0
        for layer_a, layer_b in zip(first, second):
            total_distance += float(np.abs(layer_a.data - layer_b.data).sum())
            total_params += layer_a.size
        return total_distance / total_params if total_params > 0 else 0.0

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get aggregator statistics.

        Returns:
            Dictionary containing performance and usage statistics
        """
        with self._stats_lock:
            total_aggregations = self.total_aggregations
            total_time = self.total_aggregation_time
            total_models = self.total_models_aggregated

        return {
            "aggregator": self.__class__.__name__,
            "total_aggregations": total_aggregations,
            "total_models_aggregated": total_models,
            "total_aggregation_time": total_time,
            "average_aggregation_time": total_time / total_aggregations if total_aggregations else 0.0,
            "uptime_seconds": time.time() - self.creation_time,
        }

    def _update_statistics(self, participant_count: int, aggregation_time: float):
        """
        Update internal statistics after aggregation.

        Args:
            participant_count: Number of contributions in this aggregation
            aggregation_time: Time taken for aggregation
        """
        with self._stats_lock:
            self.total_aggregations += 1
            self.total_models_aggregated += participant_count
            self.total_aggregation_time += aggregation_time
            total = self.total_aggregations

        log = logger.bind(context="BaseAggregator._update_statistics")
        log.debug(f"Updated stats: {total} aggregations, {aggregation_time:.3f}s last aggregation")
