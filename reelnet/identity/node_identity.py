"""
Node Identity

Each ReelNet node has:
- A secp256k1 signing key (Ethereum personal-sign compatible)
- A declared identifier: its registry name, or its address when unnamed
- A public endpoint (http://<public ip>:<port>)
- A region code used for replica affinity

Peer records are signed over ``NODE:<name>:<endpoint>`` so any node can
recover the signer address and check it against the registry.
"""

import ipaddress
import logging
import os
import re
import socket
from pathlib import Path
from typing import Optional, Set, Tuple
from urllib.parse import urlsplit

import psutil
from eth_account import Account
from eth_account.messages import encode_defunct

logger = logging.getLogger(__name__)


ZERO_ADDRESS = "0x" + "0" * 40
REGISTRY_SUFFIX = ".reel"
KEY_FILENAME = "node_key.hex"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def node_message(name: str, endpoint: str) -> str:
    """
    Message every peer record is signed over.

    The endpoint is signed without a trailing slash, the form peer tables
    store and re-gossip.
    """
    return f"NODE:{name}:{endpoint.rstrip('/')}"


def recover_signer(message: str, signature: str) -> Optional[str]:
    """Recover the checksum address that personal-signed ``message``."""
    if not signature:
        return None
    try:
        return Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as e:
        logger.debug(f"Signature recovery failed: {e}")
        return None


def is_address(value: Optional[str]) -> bool:
    return bool(value) and bool(_ADDRESS_RE.match(value))


def is_ip_literal(host: Optional[str]) -> bool:
    """True for IPv4/IPv6 literals and ``localhost``."""
    if not host:
        return False
    if host == "localhost":
        return True
    try:
        ipaddress.ip_address(host.strip("[]"))
        return True
    except ValueError:
        return False


def is_registry_name(identifier: Optional[str]) -> bool:
    """True when ``identifier`` looks like a registry name rather than an address, IP or URL."""
    if not identifier or "://" in identifier or ":" in identifier:
        return False
    if is_address(identifier) or is_ip_literal(identifier):
        return False
    return bool(_NAME_RE.match(identifier))


def registry_key(name: str) -> str:
    """Registry lookup key for a declared name (suffix stripped)."""
    if name.endswith(REGISTRY_SUFFIX):
        return name[: -len(REGISTRY_SUFFIX)]
    return name


def split_endpoint(endpoint: str) -> Tuple[Optional[str], Optional[int]]:
    """Return ``(host, port)`` of an endpoint URL; port defaults by scheme."""
    try:
        parts = urlsplit(endpoint if "://" in endpoint else f"http://{endpoint}")
        port = parts.port or (443 if parts.scheme == "https" else 80)
        return parts.hostname, port
    except ValueError:
        return None, None


def addresses_equal(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


class NodeIdentity:
    """
    Signing identity of the local node.

    Supplies signing/verification primitives to the peer directory,
    replication scheduler and stream admission.
    """

    def __init__(
        self,
        private_key: Optional[str] = None,
        node_name: Optional[str] = None,
        public_ip: Optional[str] = None,
        port: int = 21746,
        region: str = "GLOBAL"
    ):
        """
        Initialize node identity.

        Args:
            private_key: Hex signing key; a fresh key is generated when omitted
            node_name: Registry name of this node, if registered
            public_ip: Publicly reachable IP/hostname
            port: Peer HTTP port
            region: Region code ('GLOBAL' when not region-scoped)
        """
        self._account = Account.from_key(private_key) if private_key else Account.create()
        self.node_name = node_name
        self.public_ip = public_ip
        self.port = port
        self.region = (region or "GLOBAL").upper()

        logger.info(f"Node identity: {self.identifier} ({self.address[:10]}...)")

    @classmethod
    def load_or_generate(cls, data_dir: Path, **kwargs) -> "NodeIdentity":
        """Load the signing key from ``data_dir`` or generate and persist a new one."""
        key_path = Path(data_dir) / KEY_FILENAME

        if key_path.exists():
            private_key = key_path.read_text().strip()
            logger.info("Loaded existing node key")
        else:
            os.makedirs(data_dir, exist_ok=True)
            private_key = "0x" + bytes(Account.create().key).hex()
            key_path.write_text(private_key)
            try:
                os.chmod(key_path, 0o600)
            except OSError:
                pass
            logger.info("Generated new node key")

        return cls(private_key=private_key, **kwargs)

    @property
    def address(self) -> str:
        """Checksum address of the signing key."""
        return self._account.address

    @property
    def identifier(self) -> str:
        """Name advertised to peers: registry name, else address."""
        return self.node_name or self.address

    @property
    def endpoint(self) -> str:
        return f"http://{self.public_ip or 'localhost'}:{self.port}"

    def sign_message(self, message: str) -> str:
        """Personal-sign ``message``; returns a 0x-prefixed hex signature."""
        signed = self._account.sign_message(encode_defunct(text=message))
        return "0x" + bytes(signed.signature).hex()

    def sign_node_record(self, name: Optional[str] = None, endpoint: Optional[str] = None) -> str:
        return self.sign_message(node_message(name or self.identifier, endpoint or self.endpoint))

    def signed_record(self, now: float) -> dict:
        """Signed self entry for gossip payloads and ``/peers``."""
        return {
            "name": self.identifier,
            "endpoint": self.endpoint,
            "lastSeen": now,
            "signature": self.sign_node_record(),
            "walletAddress": self.address,
        }

    def local_addresses(self) -> Set[str]:
        """Addresses this host answers on: interfaces, loopback and public IP."""
        addresses = {"127.0.0.1", "::1", "localhost", "0.0.0.0"}
        if self.public_ip:
            addresses.add(self.public_ip)
        try:
            for snics in psutil.net_if_addrs().values():
                for snic in snics:
                    if snic.family in (socket.AF_INET, socket.AF_INET6):
                        addresses.add(snic.address.split("%")[0])
        except Exception as e:
            logger.debug(f"Interface enumeration failed: {e}")
        return addresses

    def is_self(self, name: Optional[str] = None, endpoint: Optional[str] = None) -> bool:
        """
        Check whether a peer name/endpoint refers to this node.

        Names match on registry name or address. Endpoints match when the
        host is one of our addresses and the port is ours.
        """
        if name and (name == self.node_name or addresses_equal(name, self.address)):
            return True
        if endpoint:
            host, port = split_endpoint(endpoint)
            if host and port == self.port and host in self.local_addresses():
                return True
        return False
