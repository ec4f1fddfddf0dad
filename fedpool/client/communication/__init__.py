"""
Participant communication package.

Modules:
    client_socket: WebSocket client with registration, heartbeat and reconnect
"""

from .client_socket import ClientState, ConnectionStats, ParticipantClient, RegistrationError

__all__ = [
    'ClientState',
    'ConnectionStats',
    'ParticipantClient',
    'RegistrationError',
]
