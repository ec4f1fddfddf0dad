"""
Server communication package.

This package handles all coordinator-side communication including:
- WebSocket server wrapping the aggregation coordinator
- Protocol definitions and message factories
- Connection management and global model broadcast

Modules:
    server_socket: WebSocket server and broadcaster
    protocol: Message protocol definitions and utilities
"""

from .protocol import Message, MessageFactory, MessageType
from .server_socket import ConnectedParticipant, CoordinatorServer, ParticipantState, WebSocketBroadcaster

__all__ = [
    'CoordinatorServer',
    'WebSocketBroadcaster',
    'ParticipantState',
    'ConnectedParticipant',
    'Message',
    'MessageType',
    'MessageFactory',
]

__version__ = '1.0.0'
