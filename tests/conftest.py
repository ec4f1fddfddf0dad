"""
Pytest configuration and shared fixtures for fedpool tests.

This module provides reusable fixtures for testing the coordinator and
participants using in-process server and client instances. All tests run
within the same process using asyncio for realistic but controlled testing.

Key Fixtures:
    - signatures: Layer shape signatures of the small test model
    - coordinator: AggregationCoordinator with Q=2 and a zero initial model
    - test_server: Running CoordinatorServer bound to a free port
    - client_factory: Creates registered ParticipantClients, stopped on teardown
"""

import asyncio
import sys
from typing import Optional

import pytest
from loguru import logger

from fedpool.client.communication.client_socket import ParticipantClient
from fedpool.common.tensor import ParameterSet
from fedpool.server.communication.protocol import MessageType
from fedpool.server.communication.server_socket import CoordinatorServer
from fedpool.server.coordinator import AggregationCoordinator

from tests.fixtures.test_utils import MessageCollector, RecordingBroadcaster

TEST_SIGNATURES = ((2, 3), (3,))


@pytest.fixture
def signatures():
    """Shape signatures of a 2x3 weight matrix followed by its bias."""
    return TEST_SIGNATURES


@pytest.fixture
def recording_broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def coordinator(signatures, recording_broadcaster):
    """
    Provide a coordinator with Q=2 and a zero round 0 model.

    Publications are captured by ``recording_broadcaster``.
    """
    return AggregationCoordinator(
        expected_signatures=signatures,
        quorum=2,
        initial_parameters=ParameterSet.zeros(signatures),
        broadcaster=recording_broadcaster,
        noise_scale=0.01,
    )


@pytest.fixture
async def test_server(signatures):
    """
    Provide a running coordinator server for testing.

    The server binds to an ephemeral port on 127.0.0.1; read ``server.port``
    for the real port. Stopped automatically after the test.

    Yields:
        CoordinatorServer: Running server instance
    """
    log = logger.bind(context="test_server_fixture")

    coordinator = AggregationCoordinator(
        expected_signatures=signatures,
        quorum=2,
        initial_parameters=ParameterSet.zeros(signatures),
        noise_scale=0.01,
    )
    server = CoordinatorServer(coordinator, host="127.0.0.1", port=0, registration_timeout=5.0)
    await server.start()
    log.info(f"Test server started on port {server.port}")

    try:
        yield server
    finally:
        log.info("Stopping test server")
        await server.stop()


@pytest.fixture
async def client_factory(test_server):
    """
    Provide a factory for connected and registered participant clients.

    Usage:
        client = await client_factory("participant_001")
        client = await client_factory("participant_002", collector=MessageCollector())

    All created clients are stopped after the test.
    """
    log = logger.bind(context="client_factory_fixture")
    created = []

    async def create(participant_id: str, register: bool = True,
                     collector: Optional[MessageCollector] = None) -> ParticipantClient:
        client = ParticipantClient(
            participant_id=participant_id,
            server_host="127.0.0.1",
            server_port=test_server.port,
            auto_reconnect=False,
        )
        if collector is not None:
            for message_type in MessageType:
                client.set_message_handler(message_type, collector.collect_message)
        task = asyncio.create_task(client.start())
        created.append((client, task))

        if register and not await client.wait_until_registered(timeout=10.0):
            raise RuntimeError(f"Test client {participant_id} failed to register within timeout")
        return client

    try:
        yield create
    finally:
        log.info(f"Stopping {len(created)} test clients")
        for client, task in created:
            await client.stop()
            if not task.done():
                task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception):
                pass


def pytest_configure(config):
    """Route loguru output to the console for test runs."""
    logger.remove()
    logger.configure(extra={"context": "-"})
    logger.add(
        sys.stderr,
        level="INFO",
        format="{time:HH:mm:ss} | {level} | {extra[context]} | {message}",
    )


def pytest_sessionstart(session):
    logger.info("Starting fedpool test session")


def pytest_sessionfinish(session, exitstatus):
    logger.info(f"fedpool test session finished with status: {exitstatus}")
