"""
Unit tests for ParticipantNode.

The node is driven through a fake client that records outgoing
contributions and feeds coordinator replies straight into the node's
message handlers.
"""

import asyncio
from typing import Callable, List, Optional

import pytest

from fedpool.client.node import NodeLifecycleState, ParticipantNode
from fedpool.client.trainer.trainer_dummy import DummyTrainer
from fedpool.client.trainer.trainer_interface import TrainingConfig
from fedpool.common.errors import (
    ContributionRejectedError,
    ErrorCode,
    FederationError,
    NonFiniteValueError,
    ShapeMismatchError,
)
from fedpool.common.serialization import ParameterSetSerializer
from fedpool.common.tensor import ParameterSet
from fedpool.server.communication.protocol import Message, MessageFactory, MessageType

from tests.fixtures.test_utils import make_parameter_set

SIGNATURES = [(2, 3), (3,)]

Responder = Callable[[ParameterSet, Optional[int]], List[Message]]


class FakeClient:
    """Stands in for ParticipantClient without a network connection."""

    def __init__(self, participant_id: str = "participant_001", advised_noise_scale: Optional[float] = None):
        self.participant_id = participant_id
        self.serializer = ParameterSetSerializer()
        self.advised_noise_scale = advised_noise_scale
        self.message_handlers = {}
        self.sent: List[tuple] = []
        self.responder: Optional[Responder] = None
        self.stopped = False

    def set_message_handler(self, message_type, handler):
        self.message_handlers[message_type] = handler

    async def send_update(self, parameters, round_num=None):
        self.sent.append((parameters, round_num))
        if self.responder is not None:
            for reply in self.responder(parameters, round_num):
                await self.deliver(reply)

    async def deliver(self, message: Message):
        handler = self.message_handlers.get(MessageType(message.type))
        if handler is not None:
            await handler(message)

    def is_connected(self):
        return not self.stopped

    def get_stats(self):
        return {}

    async def stop(self):
        self.stopped = True


def global_model(round_num: int, value: float) -> Message:
    weights = make_parameter_set(SIGNATURES, value).to_nested()
    return MessageFactory.create_update_global_model("broadcast", weights, round_num)


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def node(client):
    trainer = DummyTrainer("participant_001", TrainingConfig(additional_params={"seed": 1}))
    return ParticipantNode(
        "participant_001", trainer, client=client, noise_scale=0.0, submission_timeout=1.0
    )


class TestGlobalModelAdoption:

    @pytest.mark.asyncio
    async def test_adopts_first_global_model(self, node, client):
        await client.deliver(global_model(0, 1.5))

        assert node.current_round == 0
        assert node.local_parameters == make_parameter_set(SIGNATURES, 1.5)
        assert node.global_models_adopted == 1

    @pytest.mark.asyncio
    async def test_ignores_models_that_are_not_newer(self, node, client):
        await client.deliver(global_model(2, 2.0))
        await client.deliver(global_model(1, 1.0))
        await client.deliver(global_model(2, 9.0))

        assert node.current_round == 2
        assert node.local_parameters == make_parameter_set(SIGNATURES, 2.0)
        assert node.stale_models_ignored == 2

    @pytest.mark.asyncio
    async def test_undecodable_model_is_skipped(self, node, client):
        bad = MessageFactory.create_update_global_model("broadcast", [[[1.0], [1.0, 2.0]]], 3)

        await client.deliver(bad)

        assert node.current_round is None
        assert node.local_parameters is None

    @pytest.mark.asyncio
    async def test_wait_for_global_model(self, node, client):
        assert not await node.wait_for_global_model(timeout=0.05)

        waiter = asyncio.create_task(node.wait_for_global_model(after_round=0, timeout=2.0))
        await client.deliver(global_model(0, 0.0))
        await asyncio.sleep(0)
        assert not waiter.done()

        await client.deliver(global_model(1, 0.0))
        assert await waiter


class TestContributions:

    @pytest.mark.asyncio
    async def test_run_round_requires_a_global_model(self, node):
        with pytest.raises(RuntimeError):
            await node.run_round()

    @pytest.mark.asyncio
    async def test_accepted_contribution(self, node, client):
        await client.deliver(global_model(0, 0.0))
        client.responder = lambda params, round_num: [
            MessageFactory.create_submit_ack("participant_001", pool_size=1, quorum=2)
        ]

        result = await node.run_round()

        assert result.base_round == 0
        assert (result.pool_size, result.quorum, result.triggered_round) == (1, 2, None)
        assert len(client.sent) == 1
        sent_parameters, sent_round = client.sent[0]
        assert sent_round == 0
        assert sent_parameters.signature == tuple(SIGNATURES)
        assert sent_parameters != node.local_parameters
        assert node.lifecycle_state == NodeLifecycleState.IDLE
        assert node.get_statistics()["contributions_accepted"] == 1

    @pytest.mark.asyncio
    async def test_local_model_unchanged_until_next_global_model(self, node, client):
        await client.deliver(global_model(0, 0.0))
        client.responder = lambda params, round_num: [
            MessageFactory.create_submit_ack("participant_001", pool_size=1, quorum=2)
        ]

        await node.run_round()

        assert node.local_parameters == make_parameter_set(SIGNATURES, 0.0)

    @pytest.mark.parametrize("code, expected", [
        (ErrorCode.SHAPE_MISMATCH, ShapeMismatchError),
        (ErrorCode.NON_FINITE_VALUE, NonFiniteValueError),
    ])
    @pytest.mark.asyncio
    async def test_rejection_surfaces_typed_error(self, node, client, code, expected):
        await client.deliver(global_model(0, 0.0))
        client.responder = lambda params, round_num: [
            MessageFactory.create_error("participant_001", code, "rejected")
        ]

        with pytest.raises(expected):
            await node.run_round()

        assert node.contributions_rejected == 1
        assert node.lifecycle_state == NodeLifecycleState.IDLE

    @pytest.mark.asyncio
    async def test_coordinator_failure_is_not_counted_as_rejection(self, node, client):
        await client.deliver(global_model(0, 0.0))
        client.responder = lambda params, round_num: [
            MessageFactory.create_error("participant_001", ErrorCode.INTERNAL_ERROR, "Aggregation failed")
        ]

        with pytest.raises(FederationError) as excinfo:
            await node.run_round()

        assert not isinstance(excinfo.value, ContributionRejectedError)
        assert excinfo.value.error_code == ErrorCode.INTERNAL_ERROR
        assert node.contributions_rejected == 0
        assert node.lifecycle_state == NodeLifecycleState.IDLE

    @pytest.mark.asyncio
    async def test_submission_history_is_bounded(self, client):
        node = ParticipantNode(
            "participant_001", DummyTrainer("participant_001"), client=client, noise_scale=0.0,
            submission_timeout=1.0, history_size=2,
        )
        await client.deliver(global_model(0, 0.0))
        client.responder = lambda params, round_num: [
            MessageFactory.create_submit_ack("participant_001", pool_size=1, quorum=5)
        ]

        for _ in range(3):
            await node.run_round()

        assert len(node.submission_history) == 2
        assert node.get_statistics()["contributions_accepted"] == 3

    @pytest.mark.asyncio
    async def test_unanswered_submission_times_out(self, node, client):
        node.submission_timeout = 0.05
        await client.deliver(global_model(0, 0.0))

        with pytest.raises(asyncio.TimeoutError):
            await node.run_round()

        assert node.lifecycle_state == NodeLifecycleState.ERROR

    @pytest.mark.asyncio
    async def test_error_without_pending_submission_is_only_logged(self, node, client):
        await client.deliver(MessageFactory.create_error("participant_001", ErrorCode.INVALID_MESSAGE, "bad"))
        assert node.contributions_rejected == 0

    @pytest.mark.asyncio
    async def test_run_adopts_each_new_round(self, node, client):
        await client.deliver(global_model(0, 0.0))

        def responder(params, round_num):
            new_round = round_num + 1
            return [
                MessageFactory.create_submit_ack("participant_001", pool_size=1, quorum=1, round_num=new_round),
                global_model(new_round, float(new_round)),
            ]

        client.responder = responder

        results = await node.run(rounds=3, round_timeout=1.0)

        assert [r.base_round for r in results] == [0, 1, 2]
        assert [r.triggered_round for r in results] == [1, 2, 3]
        assert node.current_round == 3
        assert node.local_parameters == make_parameter_set(SIGNATURES, 3.0)


class TestNoiseScale:

    def test_explicit_noise_scale_wins(self):
        client = FakeClient(advised_noise_scale=0.5)
        node = ParticipantNode("p", DummyTrainer("p"), client=client, noise_scale=0.1)
        assert node.noise_injector.noise_scale == 0.1

    def test_coordinator_advice_used_when_unset(self):
        client = FakeClient(advised_noise_scale=0.25)
        node = ParticipantNode("p", DummyTrainer("p"), client=client)
        assert node.noise_injector.noise_scale == 0.25


@pytest.mark.asyncio
async def test_stop_marks_shutdown(node, client):
    await node.stop()

    assert client.stopped
    assert node.lifecycle_state == NodeLifecycleState.SHUTDOWN
