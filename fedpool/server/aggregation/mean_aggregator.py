"""
Element-wise arithmetic mean aggregation (Federated Averaging with uniform weights).

Every contribution counts equally. For each leaf position the aggregated
value is the sum of that leaf across all contributions divided by the number
of contributions. Sums are accumulated in ``numpy.longdouble`` and the
division happens once at the end, so the result does not depend on the order
in which contributions arrived beyond floating point rounding of the
extended-precision sum.
"""

import time
from typing import Sequence, Tuple

import numpy as np
from loguru import logger

from fedpool.common.tensor import ParameterSet, Tensor

from .base_aggregator import AggregationMetrics, BaseAggregator


class MeanAggregator(BaseAggregator):
    """
    Aggregator computing the uniform element-wise mean of a round batch.

    Example:
        >>> aggregator = MeanAggregator()
        >>> a = ParameterSet.from_nested([[1.0, 3.0]])
        >>> b = ParameterSet.from_nested([[3.0, 5.0]])
        >>> mean, metrics = aggregator.aggregate([a, b], round_num=1)
        >>> mean.to_nested()
        [[2.0, 4.0]]
    """

    def aggregate(
        self,
        parameter_sets: Sequence[ParameterSet],
        round_num: int = 0,
    ) -> Tuple[ParameterSet, AggregationMetrics]:
        """
        Average a round batch element-wise.

        Args:
            parameter_sets: Contributions of the round batch
            round_num: Round number being produced

        Returns:
            Tuple of (averaged ParameterSet, AggregationMetrics)

        Raises:
            EmptyAggregationInputError: If the batch is empty
            ShapeMismatchError: If the contributions disagree in signature
        """
        log = logger.bind(context="MeanAggregator.aggregate")
        start_time = time.time()

        self.check_batch_compatibility(parameter_sets)
        count = len(parameter_sets)
        log.info(f"Averaging {count} contributions for round {round_num}")

        averaged_layers = []
        for layer_index in range(len(parameter_sets[0])):
            accumulator = np.zeros(parameter_sets[0][layer_index].shape, dtype=np.longdouble)
            for parameters in parameter_sets:
                accumulator += parameters[layer_index].data
            averaged_layers.append(Tensor(accumulator / count))

        aggregated = ParameterSet(averaged_layers)
        aggregation_time = time.time() - start_time

        metrics = AggregationMetrics(
            aggregation_time=aggregation_time,
            participant_count=count,
            total_parameters=aggregated.num_parameters,
            model_diversity=self.calculate_model_diversity(parameter_sets) if self.collect_metrics else None,
            aggregation_round=round_num,
        )
        self._update_statistics(count, aggregation_time)

        log.info(
            f"Round {round_num} averaged in {aggregation_time:.3f}s "
            f"({aggregated.num_parameters:,} parameters)"
        )
        return aggregated, metrics
