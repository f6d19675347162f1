"""
ReelNet - Peer-to-peer media node

Independently operated nodes host encrypted media, discover each other
through signed gossip, reconcile a shared catalog, and mirror popular ad
campaigns without a central coordinator.

Quick Start:
    >>> import asyncio
    >>> from reelnet import NodeConfig, ReelNode
    >>>
    >>> config = NodeConfig(data_dir="./my_node", public_ip="203.0.113.7")
    >>> node = ReelNode(config)
    >>> asyncio.run(node.run_forever())

Components:
    - Identity: node signing key, endpoint, name and region
    - PeerDirectory: known-peers table, trust verification, gossip
    - CatalogStore: local link registry plus reconciled remote catalog
    - ReplicationScheduler: hash-bucketed, coordination-free replication
    - StreamAdmission: session-gated playback with stream caps
    - ContentCipher: AES-256-CTR streaming encryption with content hashing
"""

from reelnet.config import NodeConfig
from reelnet.node import ReelNode

__version__ = "0.4.0"
__author__ = "ReelNet Team"

__all__ = [
    "NodeConfig",
    "ReelNode",
]
