"""
Node Registry Connector

Connects ReelNet to the on-chain node registry (the trust anchor):
- getNode(name) -> operator, node address, expiry, active flag, current IP
- getBootstrapNodes(limit) -> recently active (names, ips)

Raw contract tuples are validated into ``NodeRecord`` / ``BootstrapNodes``
at this boundary. A ``getNode`` lookup that cannot be answered (RPC error,
unbound contract, malformed result) raises ``RegistryUnavailable`` so callers
can tell it apart from an unregistered name (``None`` or a zero-address
record).

Author: ReelNet Team
License: MIT
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loguru import logger

from reelnet.identity import ZERO_ADDRESS, addresses_equal, registry_key

try:
    from web3 import Web3
    WEB3_AVAILABLE = True
except ImportError:
    WEB3_AVAILABLE = False
    logger.warning("web3 not installed. Node registry runs in mock mode only.")


NODE_REGISTRY_ABI = [
    {
        "name": "getNode",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "name", "type": "string"}],
        "outputs": [
            {"name": "operator", "type": "address"},
            {"name": "nodeAddress", "type": "address"},
            {"name": "expiresAt", "type": "uint256"},
            {"name": "active", "type": "bool"},
            {"name": "currentIP", "type": "string"},
        ],
    },
    {
        "name": "getBootstrapNodes",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "limit", "type": "uint256"}],
        "outputs": [
            {"name": "names", "type": "string[]"},
            {"name": "ips", "type": "string[]"},
        ],
    },
]


class RegistryUnavailable(Exception):
    """The registry could not answer a lookup."""


@dataclass
class NodeRecord:
    """Registry entry for a named node."""

    name: str
    operator: str
    node_address: str
    expires_at: int
    active: bool
    current_ip: str = ""

    @classmethod
    def from_tuple(cls, name: str, raw: Any) -> Optional["NodeRecord"]:
        """Validate a ``getNode`` return value."""
        try:
            operator, node_address, expires_at, active, current_ip = raw
            return cls(
                name=name,
                operator=str(operator),
                node_address=str(node_address),
                expires_at=int(expires_at),
                active=bool(active),
                current_ip=str(current_ip or ""),
            )
        except (TypeError, ValueError) as e:
            logger.debug("Malformed getNode result for {}: {}", name, e)
            return None

    @property
    def is_registered(self) -> bool:
        return not addresses_equal(self.node_address, ZERO_ADDRESS) and bool(self.node_address)

    def is_live(self, now: Optional[float] = None) -> bool:
        """Active, registered and not expired."""
        now = time.time() if now is None else now
        return self.active and self.is_registered and self.expires_at > now

    @property
    def endpoint(self) -> Optional[str]:
        if not self.current_ip:
            return None
        if "://" in self.current_ip:
            return self.current_ip.rstrip("/")
        return f"http://{self.current_ip}"


@dataclass
class BootstrapNodes:
    """Registry bootstrap list (parallel names/endpoints)."""

    names: List[str] = field(default_factory=list)
    ips: List[str] = field(default_factory=list)

    @classmethod
    def from_tuple(cls, raw: Any) -> Optional["BootstrapNodes"]:
        try:
            names, ips = raw
            return cls(names=[str(n) for n in names], ips=[str(i) for i in ips])
        except (TypeError, ValueError) as e:
            logger.debug("Malformed getBootstrapNodes result: {}", e)
            return None

    def pairs(self) -> List[tuple]:
        return [(n, i) for n, i in zip(self.names, self.ips) if n and i]


class NodeRegistryConnector:
    """
    Connector for the node registry contract.

    In mock mode (development/tests) registrations are kept in memory and
    can be seeded with ``register_node``.
    """

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        contract_address: Optional[str] = None,
        mock_mode: bool = True,
        timeout: float = 10.0
    ):
        """
        Initialize registry connector.

        Args:
            rpc_url: EVM JSON-RPC endpoint
            contract_address: Node registry contract address
            mock_mode: If True, operates without a chain
            timeout: RPC request timeout in seconds
        """
        self.rpc_url = rpc_url
        self.contract_address = contract_address
        self.mock_mode = mock_mode or not (rpc_url and contract_address)
        self.timeout = timeout
        self.contract = None
        self.connected = False

        # In-memory registry for mock mode
        self._mock_nodes: Dict[str, NodeRecord] = {}
        self._mock_bootstrap: List[str] = []

    def connect(self):
        """Bind the registry contract."""
        if self.mock_mode or not WEB3_AVAILABLE:
            logger.info("Node registry connector in MOCK mode (no chain)")
            self.mock_mode = True
            self.connected = True
            return

        try:
            w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.timeout}))
            self.contract = w3.eth.contract(
                address=Web3.to_checksum_address(self.contract_address),
                abi=NODE_REGISTRY_ABI
            )
            self.connected = True
            logger.info("Connected to node registry {} via {}", self.contract_address, self.rpc_url)
        except Exception as e:
            logger.error("Failed to bind node registry: {}", e)
            logger.warning("Falling back to MOCK mode")
            self.mock_mode = True
            self.connected = True

    # Mock seeding

    def register_node(
        self,
        name: str,
        node_address: str,
        current_ip: str = "",
        active: bool = True,
        expires_at: Optional[int] = None,
        operator: Optional[str] = None,
        bootstrap: bool = True
    ) -> NodeRecord:
        """Register a node in the mock registry."""
        key = registry_key(name)
        record = NodeRecord(
            name=key,
            operator=operator or node_address,
            node_address=node_address,
            expires_at=expires_at if expires_at is not None else int(time.time()) + 365 * 86400,
            active=active,
            current_ip=current_ip,
        )
        self._mock_nodes[key] = record
        if bootstrap and key not in self._mock_bootstrap:
            self._mock_bootstrap.insert(0, key)
        return record

    # Queries

    async def get_node(self, name: str) -> Optional[NodeRecord]:
        """
        Look up a registry name (suffix stripped).

        Returns:
            The registry record, or None if the name is not registered

        Raises:
            RegistryUnavailable: If the registry could not be queried
        """
        key = registry_key(name)

        if self.mock_mode:
            return self._mock_nodes.get(key)

        if not self.contract:
            raise RegistryUnavailable("Node registry contract is not bound")

        try:
            raw = await asyncio.to_thread(self.contract.functions.getNode(key).call)
        except Exception as e:
            logger.warning("getNode({}) failed: {}", key, e)
            raise RegistryUnavailable(f"getNode({key}) failed: {e}") from e

        record = NodeRecord.from_tuple(key, raw)
        if record is None:
            raise RegistryUnavailable(f"Malformed getNode result for {key}")
        return record

    async def get_bootstrap_nodes(self, limit: int = 20) -> Optional[BootstrapNodes]:
        """Recently active nodes (names and endpoints)."""
        if self.mock_mode:
            names, ips = [], []
            for key in self._mock_bootstrap[:limit]:
                record = self._mock_nodes[key]
                if record.active and record.current_ip:
                    names.append(key)
                    ips.append(record.endpoint)
            return BootstrapNodes(names=names, ips=ips)

        if not self.contract:
            return None

        try:
            raw = await asyncio.to_thread(self.contract.functions.getBootstrapNodes(limit).call)
            return BootstrapNodes.from_tuple(raw)
        except Exception as e:
            logger.warning("Registry bootstrap failed (contract access issue?): {}", e)
            return None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "mock_mode": self.mock_mode,
            "connected": self.connected,
            "mock_nodes": len(self._mock_nodes),
        }
