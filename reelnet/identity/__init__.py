"""
Node Identity

Signing key, public endpoint, declared name and region of this node.
"""

from .node_identity import (
    NodeIdentity,
    node_message,
    recover_signer,
    is_address,
    is_ip_literal,
    is_registry_name,
    registry_key,
    split_endpoint,
    addresses_equal,
    ZERO_ADDRESS,
    REGISTRY_SUFFIX,
)

__all__ = [
    "NodeIdentity",
    "node_message",
    "recover_signer",
    "is_address",
    "is_ip_literal",
    "is_registry_name",
    "registry_key",
    "split_endpoint",
    "addresses_equal",
    "ZERO_ADDRESS",
    "REGISTRY_SUFFIX",
]
