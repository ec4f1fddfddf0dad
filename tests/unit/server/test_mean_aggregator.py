"""
Unit tests for MeanAggregator.
"""

import itertools

import numpy as np
import pytest

from fedpool.common.errors import EmptyAggregationInputError, ShapeMismatchError
from fedpool.common.tensor import ParameterSet
from fedpool.server.aggregation.mean_aggregator import MeanAggregator

from tests.fixtures.test_utils import generate_contributions, make_parameter_set

MIXED_RANK_SIGNATURES = [(4, 3), (3,), (3, 2, 2), (1,)]


@pytest.fixture
def aggregator():
    return MeanAggregator()


def test_mean_of_two_vectors(aggregator):
    a = ParameterSet.from_nested([[1.0, 3.0]])
    b = ParameterSet.from_nested([[3.0, 5.0]])

    mean, metrics = aggregator.aggregate([a, b], round_num=1)

    assert mean.to_nested() == [[2.0, 4.0]]
    assert metrics.participant_count == 2
    assert metrics.aggregation_round == 1


def test_mean_of_rank_two_layers(aggregator):
    a = ParameterSet.from_nested([[[2, 4], [6, 8]]])
    b = ParameterSet.from_nested([[[4, 6], [8, 10]]])

    mean, _ = aggregator.aggregate([a, b])

    assert mean.to_nested() == [[[3.0, 5.0], [7.0, 9.0]]]


def test_mean_invariant_to_input_order(aggregator):
    contributions = generate_contributions(MIXED_RANK_SIGNATURES, 3, seed=10)

    results = [aggregator.aggregate(list(order))[0] for order in itertools.permutations(contributions)]

    assert len(results) == 6
    for result in results[1:]:
        assert result.allclose(results[0])


def test_shape_preserved_across_ranks(aggregator):
    contributions = generate_contributions(MIXED_RANK_SIGNATURES, 4, seed=20)

    mean, metrics = aggregator.aggregate(contributions)

    assert mean.signature == tuple(MIXED_RANK_SIGNATURES)
    assert metrics.total_parameters == contributions[0].num_parameters


def test_mean_matches_numpy_reference(aggregator):
    contributions = generate_contributions(MIXED_RANK_SIGNATURES, 7, seed=30)

    mean, _ = aggregator.aggregate(contributions)

    for layer_index, layer in enumerate(mean):
        expected = np.mean([c[layer_index].data for c in contributions], axis=0)
        np.testing.assert_allclose(layer.data, expected, rtol=1e-12, atol=1e-15)


def test_single_contribution_is_returned_unchanged(aggregator):
    only = generate_contributions(MIXED_RANK_SIGNATURES, 1, seed=40)[0]

    mean, _ = aggregator.aggregate([only])

    assert mean == only


def test_inputs_are_not_modified(aggregator):
    contributions = generate_contributions(MIXED_RANK_SIGNATURES, 3, seed=50)
    before = [c.to_nested() for c in contributions]

    aggregator.aggregate(contributions)

    assert [c.to_nested() for c in contributions] == before


def test_wide_accumulator_keeps_small_terms(aggregator):
    if np.finfo(np.longdouble).eps >= np.finfo(np.float64).eps:
        pytest.skip("longdouble is no wider than float64 on this platform")

    values = [1e16, 1.0, -1e16, 1.0]
    contributions = [ParameterSet.from_nested([[v]]) for v in values]

    mean, _ = aggregator.aggregate(contributions)

    # A float64 sum drops the first 1.0 next to 1e16 and yields 0.25
    assert mean[0].data[0] == 0.5


def test_empty_batch_is_fatal(aggregator):
    with pytest.raises(EmptyAggregationInputError):
        aggregator.aggregate([])


def test_mixed_signatures_rejected(aggregator):
    a = make_parameter_set([(2,)])
    b = make_parameter_set([(3,)])

    with pytest.raises(ShapeMismatchError):
        aggregator.aggregate([a, b])


def test_diversity_metric(aggregator):
    a = ParameterSet.from_nested([[0.0, 0.0]])
    b = ParameterSet.from_nested([[1.0, 1.0]])

    _, metrics = aggregator.aggregate([a, b])
    _, identical = aggregator.aggregate([a, a])

    assert metrics.model_diversity > 0
    assert identical.model_diversity == 0.0


def test_statistics_accumulate(aggregator):
    contributions = generate_contributions([(3,)], 2)

    aggregator.aggregate(contributions, round_num=1)
    aggregator.aggregate(contributions, round_num=2)
    stats = aggregator.get_statistics()

    assert stats["total_aggregations"] == 2
    assert stats["total_models_aggregated"] == 4
