"""
End-to-end federated rounds.

Participant nodes with the dummy trainer connect to a real coordinator server,
train, perturb and submit until several rounds have been averaged and
broadcast back to them.
"""

import asyncio

import pytest
from loguru import logger

from fedpool.client.config import ParticipantConfig
from fedpool.client.main import run_participant
from fedpool.client.node import NodeLifecycleState, ParticipantNode
from fedpool.client.trainer.trainer_dummy import DummyTrainer
from fedpool.client.trainer.trainer_interface import TrainingConfig

from tests.fixtures.test_utils import wait_for_condition

pytestmark = pytest.mark.integration


@pytest.fixture
async def node_factory(test_server):
    """Create connected ParticipantNodes, stopped after the test."""
    nodes = []

    async def create(participant_id: str, seed: int = 0, noise_scale=None) -> ParticipantNode:
        trainer = DummyTrainer(participant_id, TrainingConfig(additional_params={"seed": seed}))
        node = ParticipantNode(
            participant_id,
            trainer,
            server_host="127.0.0.1",
            server_port=test_server.port,
            noise_scale=noise_scale,
            noise_seed=seed,
            auto_reconnect=False,
            submission_timeout=10.0,
        )
        nodes.append(node)
        assert await node.connect(timeout=10.0), f"{participant_id} failed to connect"
        return node

    try:
        yield create
    finally:
        for node in nodes:
            await node.stop()


@pytest.mark.asyncio
async def test_nodes_join_at_round_zero(test_server, node_factory, signatures):
    node = await node_factory("participant_001")

    assert node.current_round == 0
    assert node.local_parameters.signature == tuple(signatures)
    assert node.lifecycle_state == NodeLifecycleState.IDLE
    assert node.noise_injector.noise_scale == 0.01, "Coordinator-advised sigma should be adopted"


@pytest.mark.asyncio
async def test_two_nodes_complete_three_rounds(test_server, node_factory):
    log = logger.bind(context="test_two_nodes_complete_three_rounds")
    nodes = [await node_factory(f"participant_{i:03d}", seed=i) for i in range(2)]

    results = await asyncio.wait_for(
        asyncio.gather(*(node.run(rounds=3, round_timeout=10.0) for node in nodes)),
        timeout=60.0,
    )

    assert all(len(node_results) == 3 for node_results in results)
    assert await wait_for_condition(lambda: test_server.coordinator.current_round == 3, timeout=10.0)
    assert await wait_for_condition(lambda: all(node.current_round == 3 for node in nodes), timeout=10.0)

    stats = test_server.coordinator.get_statistics()
    assert stats["contributions_accepted"] == 6
    assert stats["rounds_completed"] == 3
    assert stats["pool_size"] == 0

    global_model = test_server.coordinator.global_parameters.parameters
    for node in nodes:
        assert node.local_parameters == global_model, "Every node should hold the latest global model"
        assert node.get_statistics()["contributions_accepted"] == 3
    log.info("Three rounds completed by two nodes")


@pytest.mark.asyncio
async def test_late_joiner_starts_from_latest_round(test_server, node_factory):
    early = [await node_factory(f"participant_{i:03d}", seed=i) for i in range(2)]
    await asyncio.wait_for(asyncio.gather(*(node.run(rounds=1) for node in early)), timeout=30.0)
    assert await wait_for_condition(lambda: test_server.coordinator.current_round == 1, timeout=10.0)

    late = await node_factory("participant_late", seed=9)

    assert late.current_round == 1
    assert late.local_parameters == test_server.coordinator.global_parameters.parameters


@pytest.mark.asyncio
async def test_run_participant_contributes_with_compressed_archive(test_server):
    config = ParticipantConfig(
        participant_id="participant_cli",
        server_host="127.0.0.1",
        server_port=test_server.port,
        noise_scale=0.0,
        auto_reconnect=False,
        encoding="base64",
        compression=True,
    )

    exit_code = await asyncio.wait_for(run_participant(config, rounds=1), timeout=30.0)

    assert exit_code == 0
    assert test_server.coordinator.pool_size == 1, "Contribution stays pooled after the participant leaves"


@pytest.mark.asyncio
async def test_run_participant_with_taken_id_fails(test_server, node_factory):
    await node_factory("participant_001")
    config = ParticipantConfig(
        participant_id="participant_001",
        server_host="127.0.0.1",
        server_port=test_server.port,
        auto_reconnect=False,
    )

    exit_code = await asyncio.wait_for(run_participant(config, rounds=1), timeout=30.0)

    assert exit_code == 1
