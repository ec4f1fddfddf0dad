"""
Coordinator package for the federated aggregation system.

This package contains all coordinator-side components including:
- Shape validation and the contribution pool
- The aggregation coordinator and its round lifecycle
- Communication protocol and WebSocket server
- Aggregation algorithms

Modules:
    validation: ShapeValidator checking contributions against the expected layers
    pool: ContributionPool with atomic append-and-quorum-check
    coordinator: AggregationCoordinator and the Broadcaster contract
    communication: Protocol messages and WebSocket server
    aggregation: Aggregation algorithms
    config: Coordinator configuration
"""

from .coordinator import (
    AggregationCoordinator,
    Broadcaster,
    CoordinatorState,
    GlobalParameterSet,
    SubmissionReceipt,
)
from .pool import Contribution, ContributionPool, RoundBatch
from .validation import ShapeValidator

# Import communication submodules for convenience
from .communication.protocol import Message, MessageFactory, MessageType
from .communication.server_socket import ConnectedParticipant, CoordinatorServer, ParticipantState

__all__ = [
    # Aggregation core
    'AggregationCoordinator',
    'Broadcaster',
    'CoordinatorState',
    'GlobalParameterSet',
    'SubmissionReceipt',
    'Contribution',
    'ContributionPool',
    'RoundBatch',
    'ShapeValidator',

    # Communication
    'Message',
    'MessageType',
    'MessageFactory',
    'CoordinatorServer',
    'ParticipantState',
    'ConnectedParticipant',
]

__version__ = '1.0.0'
