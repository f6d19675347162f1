"""
Peer Gossip

Randomized push of signed peer entries plus tracker heartbeats.
"""

from .protocol import (
    GossipProtocol,
    GOSSIP_FANOUT,
    GOSSIP_SAMPLE,
    MAX_CONCURRENT_PUSHES
)

__all__ = [
    "GossipProtocol",
    "GOSSIP_FANOUT",
    "GOSSIP_SAMPLE",
    "MAX_CONCURRENT_PUSHES"
]
