"""
ReelNet P2P Layer

Peer discovery and trust propagation without a central server.

Components:
- Directory: known-peers table, registry bootstrap, trackers, resolution
- Verification: signature checks anchored to the node registry
- Gossip: randomized push of signed peer entries
- Transport: best-effort HTTP calls with per-call timeouts
"""

from .directory import PeerDirectory, PeerRecord

__all__ = ["PeerDirectory", "PeerRecord"]
