"""
Unit tests for AggregationCoordinator.

Covers quorum exactness, rejection isolation, concurrent submissions,
snapshot semantics while a round is being averaged, and round ordering.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from fedpool.common.errors import EmptyAggregationInputError, NonFiniteValueError, ShapeMismatchError
from fedpool.common.tensor import ParameterSet, Tensor
from fedpool.server.aggregation.mean_aggregator import MeanAggregator
from fedpool.server.coordinator import AggregationCoordinator, CoordinatorState

from tests.fixtures.test_utils import (
    FailingBroadcaster,
    RecordingBroadcaster,
    make_parameter_set,
    random_parameter_set,
)


class GatedAggregator(MeanAggregator):
    """MeanAggregator that blocks selected rounds until released."""

    def __init__(self, gated_rounds):
        super().__init__()
        self.gated_rounds = set(gated_rounds)
        self.entered = {r: threading.Event() for r in self.gated_rounds}
        self.release = {r: threading.Event() for r in self.gated_rounds}

    def aggregate(self, parameter_sets, round_num=0):
        if round_num in self.gated_rounds:
            self.entered[round_num].set()
            assert self.release[round_num].wait(timeout=10)
        return super().aggregate(parameter_sets, round_num)


class FirstRoundEmptyAggregator(MeanAggregator):
    """Simulates the invariant violation on the first round only."""

    def aggregate(self, parameter_sets, round_num=0):
        if round_num == 1:
            return super().aggregate([], round_num)
        return super().aggregate(parameter_sets, round_num)


def build_coordinator(signatures, quorum, broadcaster=None, aggregator=None):
    return AggregationCoordinator(
        expected_signatures=signatures,
        quorum=quorum,
        initial_parameters=ParameterSet.zeros(signatures),
        aggregator=aggregator,
        broadcaster=broadcaster or RecordingBroadcaster(),
    )


class TestQuorum:

    def test_q_minus_one_submissions_never_publish(self, signatures):
        broadcaster = RecordingBroadcaster()
        coordinator = build_coordinator(signatures, quorum=3, broadcaster=broadcaster)

        first = coordinator.submit("p1", make_parameter_set(signatures, 1.0))
        second = coordinator.submit("p2", make_parameter_set(signatures, 2.0))

        assert broadcaster.count == 0
        assert (first.pool_size, second.pool_size) == (1, 2)
        assert first.triggered_round is None and second.triggered_round is None
        assert coordinator.pool_size == 2
        assert coordinator.state == CoordinatorState.COLLECTING
        assert coordinator.current_round == 0

    def test_qth_submission_publishes_exactly_once(self, signatures):
        broadcaster = RecordingBroadcaster()
        coordinator = build_coordinator(signatures, quorum=3, broadcaster=broadcaster)

        for i in range(2):
            coordinator.submit(f"p{i}", make_parameter_set(signatures, float(i)))
        receipt = coordinator.submit("p2", make_parameter_set(signatures, 2.0))

        assert receipt.accepted
        assert receipt.pool_size == 3
        assert receipt.triggered_round == 1
        assert broadcaster.rounds == [1]
        assert coordinator.pool_size == 0
        assert coordinator.state == CoordinatorState.IDLE

    def test_published_model_is_the_mean(self):
        broadcaster = RecordingBroadcaster()
        coordinator = build_coordinator([(2,)], quorum=2, broadcaster=broadcaster)

        coordinator.submit("p1", ParameterSet.from_nested([[1.0, 3.0]]))
        coordinator.submit("p2", ParameterSet.from_nested([[3.0, 5.0]]))

        published = broadcaster.published[0]
        assert published.round_num == 1
        assert published.parameters.to_nested() == [[2.0, 4.0]]
        assert coordinator.global_parameters.parameters == published.parameters

    def test_quorum_of_one_publishes_every_submission(self, signatures):
        broadcaster = RecordingBroadcaster()
        coordinator = build_coordinator(signatures, quorum=1, broadcaster=broadcaster)

        for i in range(3):
            coordinator.submit("p1", make_parameter_set(signatures, float(i)))

        assert broadcaster.rounds == [1, 2, 3]
        assert coordinator.global_parameters.parameters == make_parameter_set(signatures, 2.0)

    def test_metrics_history_records_each_round(self, coordinator, signatures):
        for i in range(4):
            coordinator.submit(f"p{i}", make_parameter_set(signatures, float(i)))

        history = coordinator.metrics_history
        assert [m.aggregation_round for m in history] == [1, 2]
        assert all(m.participant_count == 2 for m in history)

    def test_metrics_history_keeps_only_recent_rounds(self, signatures):
        coordinator = AggregationCoordinator(
            expected_signatures=signatures,
            quorum=1,
            initial_parameters=ParameterSet.zeros(signatures),
            history_size=3,
        )

        for i in range(10):
            coordinator.submit(f"p{i}", make_parameter_set(signatures, float(i)))

        assert [m.aggregation_round for m in coordinator.metrics_history] == [8, 9, 10]
        assert coordinator.get_statistics()["rounds_completed"] == 10

    def test_history_size_must_be_positive(self, signatures):
        with pytest.raises(ValueError):
            AggregationCoordinator(
                expected_signatures=signatures,
                quorum=1,
                initial_parameters=ParameterSet.zeros(signatures),
                history_size=0,
            )


class TestRejection:

    def test_wrong_shape_leaves_pool_untouched(self, coordinator, signatures, recording_broadcaster):
        coordinator.submit("p1", make_parameter_set(signatures, 1.0))

        with pytest.raises(ShapeMismatchError):
            coordinator.submit("p2", make_parameter_set([(3, 2), (3,)], 1.0))

        assert coordinator.pool_size == 1
        assert recording_broadcaster.count == 0

        receipt = coordinator.submit("p3", make_parameter_set(signatures, 3.0))
        assert receipt.triggered_round == 1
        assert coordinator.global_parameters.parameters == make_parameter_set(signatures, 2.0)

    def test_non_finite_values_rejected(self, coordinator, signatures):
        weights = np.ones((2, 3))
        weights[0, 0] = np.nan
        poisoned = ParameterSet([Tensor(weights), Tensor.zeros((3,))])

        with pytest.raises(NonFiniteValueError):
            coordinator.submit("p1", poisoned)

        assert coordinator.pool_size == 0
        assert coordinator.state == CoordinatorState.IDLE

    def test_rejections_counted_by_reason(self, coordinator, signatures):
        with pytest.raises(ShapeMismatchError):
            coordinator.submit("p1", make_parameter_set([(1,)]))
        with pytest.raises(NonFiniteValueError):
            coordinator.submit("p1", make_parameter_set(signatures, float("inf")))

        stats = coordinator.get_statistics()
        assert stats["rejections"] == {"SHAPE_MISMATCH": 1, "NON_FINITE_VALUE": 1}
        assert stats["submissions_received"] == 2
        assert stats["contributions_accepted"] == 0

    def test_initial_parameters_must_match(self, signatures):
        with pytest.raises(ShapeMismatchError):
            AggregationCoordinator(signatures, quorum=2, initial_parameters=ParameterSet.zeros([(2,)]))

    def test_invalid_quorum(self, signatures):
        with pytest.raises(ValueError):
            AggregationCoordinator(signatures, quorum=0, initial_parameters=ParameterSet.zeros(signatures))


class TestConcurrency:

    @pytest.mark.parametrize("quorum", [1, 3, 4])
    def test_concurrent_submissions_publish_n_over_q_rounds(self, signatures, quorum):
        total = quorum * 15
        broadcaster = RecordingBroadcaster()
        coordinator = build_coordinator(signatures, quorum=quorum, broadcaster=broadcaster)
        contributions = [random_parameter_set(signatures, seed=i) for i in range(total)]
        start = threading.Barrier(12)

        def submit(index):
            if index < 12:
                start.wait()
            return coordinator.submit(f"p{index}", contributions[index])

        with ThreadPoolExecutor(max_workers=12) as executor:
            receipts = list(executor.map(submit, range(total)))

        triggered = sorted(r.triggered_round for r in receipts if r.triggered_round is not None)
        assert triggered == list(range(1, total // quorum + 1))
        assert broadcaster.rounds == list(range(1, total // quorum + 1))
        assert coordinator.current_round == total // quorum
        assert coordinator.pool_size == 0

        stats = coordinator.get_statistics()
        assert stats["contributions_accepted"] == total
        assert stats["rounds_completed"] == total // quorum
        assert stats["state"] == CoordinatorState.IDLE.value

    def test_submission_during_aggregation_goes_to_next_round(self, signatures):
        aggregator = GatedAggregator(gated_rounds=[1])
        broadcaster = RecordingBroadcaster()
        coordinator = build_coordinator(signatures, quorum=2, broadcaster=broadcaster, aggregator=aggregator)

        coordinator.submit("p1", make_parameter_set(signatures, 1.0))
        with ThreadPoolExecutor(max_workers=1) as executor:
            trigger = executor.submit(coordinator.submit, "p2", make_parameter_set(signatures, 3.0))
            assert aggregator.entered[1].wait(timeout=5)

            late = coordinator.submit("p3", make_parameter_set(signatures, 100.0))
            assert late.triggered_round is None
            assert late.pool_size == 1
            assert coordinator.state == CoordinatorState.AGGREGATING
            assert coordinator.current_round == 0

            aggregator.release[1].set()
            assert trigger.result(timeout=5).triggered_round == 1

        assert coordinator.global_parameters.parameters == make_parameter_set(signatures, 2.0)
        assert coordinator.state == CoordinatorState.COLLECTING

        coordinator.submit("p4", make_parameter_set(signatures, 200.0))
        assert broadcaster.rounds == [1, 2]
        assert coordinator.global_parameters.parameters == make_parameter_set(signatures, 150.0)

    def test_rounds_publish_in_order_when_averaging_overlaps(self, signatures):
        aggregator = GatedAggregator(gated_rounds=[1])
        broadcaster = RecordingBroadcaster()
        coordinator = build_coordinator(signatures, quorum=1, broadcaster=broadcaster, aggregator=aggregator)

        with ThreadPoolExecutor(max_workers=2) as executor:
            first = executor.submit(coordinator.submit, "p1", make_parameter_set(signatures, 1.0))
            assert aggregator.entered[1].wait(timeout=5)
            second = executor.submit(coordinator.submit, "p2", make_parameter_set(signatures, 2.0))

            # Round 2 finishes averaging but must wait for round 1
            assert not coordinator.wait_for_round(2, timeout=0.3)
            assert broadcaster.count == 0

            aggregator.release[1].set()
            assert first.result(timeout=5).triggered_round == 1
            assert second.result(timeout=5).triggered_round == 2

        assert broadcaster.rounds == [1, 2]
        assert coordinator.global_parameters.parameters == make_parameter_set(signatures, 2.0)


class TestFailures:

    def test_empty_aggregation_aborts_round(self, signatures):
        broadcaster = RecordingBroadcaster()
        coordinator = build_coordinator(
            signatures, quorum=1, broadcaster=broadcaster, aggregator=FirstRoundEmptyAggregator()
        )

        with pytest.raises(EmptyAggregationInputError):
            coordinator.submit("p1", make_parameter_set(signatures, 1.0))

        assert broadcaster.count == 0
        assert coordinator.current_round == 0
        assert coordinator.global_parameters.parameters == ParameterSet.zeros(signatures)
        assert coordinator.get_statistics()["rounds_aborted"] == 1

        # The aborted round does not block its successor
        receipt = coordinator.submit("p2", make_parameter_set(signatures, 5.0))
        assert receipt.triggered_round == 2
        assert broadcaster.rounds == [2]
        assert coordinator.state == CoordinatorState.IDLE

    def test_broadcast_failure_still_updates_global_model(self, signatures):
        broadcaster = FailingBroadcaster()
        coordinator = build_coordinator(signatures, quorum=1, broadcaster=broadcaster)

        receipt = coordinator.submit("p1", make_parameter_set(signatures, 4.0))

        assert receipt.triggered_round == 1
        assert broadcaster.attempts == 1
        assert coordinator.current_round == 1
        assert coordinator.get_statistics()["publish_failures"] == 1

    def test_wait_for_round_times_out_without_submissions(self, coordinator):
        assert coordinator.wait_for_round(0, timeout=0.01)
        assert not coordinator.wait_for_round(1, timeout=0.05)
