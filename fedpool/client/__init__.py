"""
Participant package for the federated aggregation system.

Modules:
    node: ParticipantNode orchestrating train -> perturb -> submit
    communication: WebSocket client for the coordinator
    trainer: Trainer interface and the dummy trainer
    config: Participant configuration
"""

from .node import NodeLifecycleState, ParticipantNode, SubmissionResult

__all__ = [
    'NodeLifecycleState',
    'ParticipantNode',
    'SubmissionResult',
]
