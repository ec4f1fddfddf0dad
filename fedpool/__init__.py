"""
fedpool: quorum-triggered federated parameter averaging.

Packages:
    common: Data types, errors, noise injection and serialization
    server: Aggregation coordinator and its WebSocket transport
    client: Participant client, node and trainers
"""

__version__ = '1.0.0'
