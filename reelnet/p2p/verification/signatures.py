"""
Peer Record Signature Verification

The only admission control for gossip and tracker data.

Protocol:
1. Message = "NODE:<name>:<endpoint>"
2. Recover the personal-sign signer address
3. Registered name -> recovered address must equal the registry's node
   address and the registry entry must be active
4. Address-shaped name -> recovered address must equal the name
5. Otherwise (anonymous label) -> recovered address is accepted as-is

A registry-style name is only treated as anonymous when the registry
answered that it is unregistered; if the registry cannot be queried the
record is dropped. Anything else is dropped without surfacing an error.
"""

import logging
from typing import Optional

from reelnet.blockchain.registry import RegistryUnavailable
from reelnet.identity import (
    addresses_equal,
    is_address,
    is_registry_name,
    node_message,
    recover_signer,
)

logger = logging.getLogger(__name__)


async def verify_peer_identity(
    name: Optional[str],
    endpoint: Optional[str],
    signature: Optional[str],
    registry=None
) -> Optional[str]:
    """
    Verify a signed peer record.

    Args:
        name: Declared node name (registry name, address or label)
        endpoint: Declared endpoint URL
        signature: Hex personal-sign signature over the node message
        registry: Optional NodeRegistryConnector

    Returns:
        Recovered signer address if the record is admissible, else None
    """
    if not (name and endpoint and signature):
        return None

    recovered = recover_signer(node_message(name, endpoint), signature)
    if not recovered:
        logger.debug(f"Unrecoverable signature for {name}")
        return None

    if is_address(name):
        if addresses_equal(recovered, name):
            return recovered
        logger.debug(f"Signer {recovered} does not own address-name {name}")
        return None

    if registry is not None and is_registry_name(name):
        try:
            record = await registry.get_node(name)
        except RegistryUnavailable as e:
            logger.debug(f"Cannot verify {name} while the registry is unavailable: {e}")
            return None
        if record is not None and record.is_registered:
            if not record.active:
                logger.debug(f"Registry entry for {name} is inactive")
                return None
            if not addresses_equal(recovered, record.node_address):
                logger.debug(f"Signer {recovered} does not match registry address for {name}")
                return None
            return recovered

    # Anonymous / unregistered node
    return recovered
