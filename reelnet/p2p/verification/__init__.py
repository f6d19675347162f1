"""
Peer Verification

Signature checks that gate every gossip and tracker entry.
"""

from .signatures import verify_peer_identity

__all__ = ["verify_peer_identity"]
