"""
Peer Directory

Known-peers table of a ReelNet node.

Sources of peer records:
- Registry bootstrap: recently active nodes attested by the registry
- Trackers: signed peer lists pulled from configured tracker URLs
- Gossip: signed entries pushed by other nodes
- Manual connect: operator-supplied name or URL

Records are upserted by name and never deleted, except that any record
resolving to this node itself is purged. A ``peers.json`` snapshot gives
warm restarts; ``trackers.json`` holds the tracker list.
"""

import json
import logging
import random
import time
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from reelnet.blockchain.registry import RegistryUnavailable
from reelnet.identity import NodeIdentity, addresses_equal, is_address, is_registry_name
from reelnet.p2p.verification import verify_peer_identity

logger = logging.getLogger(__name__)


BOOTSTRAP_LIMIT = 20
PEERS_FILENAME = "peers.json"
TRACKERS_FILENAME = "trackers.json"


@dataclass
class PeerRecord:
    """A known remote node."""

    name: str  # Registry name, address, or raw label
    endpoint: str  # Base URL (e.g., "http://203.0.113.7:21746")
    last_seen: float = field(default_factory=time.time)
    signature: Optional[str] = None
    wallet_address: Optional[str] = None
    is_trusted: bool = False
    source: str = "gossip"  # registry | tracker | gossip | manual

    def is_alive(self, timeout: int = 3600) -> bool:
        """Check if peer was seen recently (default: 1 hour)."""
        return (time.time() - self.last_seen) < timeout

    def to_dict(self) -> Dict[str, Any]:
        """Wire form used by ``/peers`` and gossip payloads."""
        return {
            "name": self.name,
            "endpoint": self.endpoint,
            "lastSeen": self.last_seen,
            "signature": self.signature,
            "walletAddress": self.wallet_address,
        }

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> "PeerRecord":
        return cls(
            name=data["name"],
            endpoint=data["endpoint"],
            last_seen=float(data.get("last_seen", time.time())),
            signature=data.get("signature"),
            wallet_address=data.get("wallet_address"),
            is_trusted=bool(data.get("is_trusted", False)),
            source=data.get("source", "gossip"),
        )


class PeerDirectory:
    """
    Known-peers table with signature-gated ingestion.

    All mutation goes through ``upsert`` so the self-purge rule and the
    idempotent merge apply to every source.
    """

    def __init__(
        self,
        identity: NodeIdentity,
        client,
        registry=None,
        data_dir: Optional[Path] = None,
        trackers: Optional[List[str]] = None,
        bootstrap_limit: int = BOOTSTRAP_LIMIT
    ):
        """
        Initialize peer directory.

        Args:
            identity: Local node identity
            client: PeerClient used for tracker and connect calls
            registry: Optional NodeRegistryConnector (trust anchor)
            data_dir: Directory for peers.json / trackers.json snapshots
            trackers: Initial tracker URLs
            bootstrap_limit: Registry bootstrap list size
        """
        self.identity = identity
        self.client = client
        self.registry = registry
        self.data_dir = Path(data_dir) if data_dir else None
        self.bootstrap_limit = bootstrap_limit

        # Peer table (name -> PeerRecord)
        self.peers: Dict[str, PeerRecord] = {}
        self.trackers: List[str] = []
        for url in trackers or []:
            self._add_tracker_url(url)

        self.stats = {
            "entries_accepted": 0,
            "entries_rejected": 0,
            "self_purged": 0,
            "registry_bootstraps": 0,
            "tracker_pulls": 0
        }

    # Table operations

    def upsert(self, record: PeerRecord) -> bool:
        """
        Insert or merge a peer record.

        Merge keeps the latest ``last_seen`` and takes the incoming endpoint,
        so re-applying the same record leaves the table unchanged.

        Returns:
            True if the record is in the table afterwards
        """
        if self.identity.is_self(record.name, record.endpoint):
            if self.peers.pop(record.name, None) is not None:
                self.stats["self_purged"] += 1
                logger.info(f"Purged self-referencing peer record: {record.name}")
            return False

        now = time.time()
        record.last_seen = min(record.last_seen, now)

        existing = self.peers.get(record.name)
        if existing is None:
            self.peers[record.name] = record
            logger.info(f"Added peer: {record.name} ({record.endpoint}) via {record.source}")
            return True

        if existing.endpoint != record.endpoint:
            logger.info(f"Peer {record.name} moved: {existing.endpoint} -> {record.endpoint}")
            existing.endpoint = record.endpoint
            existing.is_trusted = record.is_trusted
        else:
            existing.is_trusted = existing.is_trusted or record.is_trusted

        existing.last_seen = max(existing.last_seen, record.last_seen)
        if record.signature:
            existing.signature = record.signature
        if record.wallet_address:
            existing.wallet_address = record.wallet_address
        return True

    def get(self, name: str) -> Optional[PeerRecord]:
        return self.peers.get(name)

    def find_by_wallet(self, address: str) -> Optional[PeerRecord]:
        for record in self.peers.values():
            if addresses_equal(record.wallet_address, address):
                return record
        return None

    def purge_self(self) -> int:
        """Drop every record that resolves to this node."""
        stale = [
            name for name, record in self.peers.items()
            if self.identity.is_self(record.name, record.endpoint)
        ]
        for name in stale:
            del self.peers[name]
        if stale:
            self.stats["self_purged"] += len(stale)
            logger.info(f"Purged {len(stale)} self-referencing peer records")
        return len(stale)

    def random_sample(self, count: int, trusted_only: bool = False) -> List[PeerRecord]:
        """Random subset of known peers (self is never stored)."""
        available = [p for p in self.peers.values() if p.is_trusted or not trusted_only]
        return random.sample(available, min(count, len(available)))

    def endpoints_shuffled(self) -> List[str]:
        """All known peer endpoints in random order."""
        endpoints = [p.endpoint for p in self.peers.values()]
        random.shuffle(endpoints)
        return endpoints

    def __len__(self) -> int:
        return len(self.peers)

    def __contains__(self, name: str) -> bool:
        return name in self.peers

    # Ingestion

    async def ingest(self, entries: Iterable[Any], source: str = "gossip") -> int:
        """
        Verify and upsert signed peer entries.

        Entries naming this node, unsigned entries and entries whose
        signature fails verification are dropped silently.

        Returns:
            Number of entries accepted
        """
        accepted = 0
        for entry in entries or []:
            if not isinstance(entry, dict):
                continue

            name = entry.get("name")
            endpoint = entry.get("endpoint")
            if not isinstance(name, str) or not isinstance(endpoint, str):
                continue
            if name == self.identity.identifier or self.identity.is_self(name, endpoint):
                continue

            signer = await verify_peer_identity(name, endpoint, entry.get("signature"), self.registry)
            if not signer:
                self.stats["entries_rejected"] += 1
                continue

            try:
                last_seen = float(entry.get("lastSeen") or 0)
            except (TypeError, ValueError):
                last_seen = 0.0
            if last_seen <= 0:
                existing = self.peers.get(name)
                last_seen = existing.last_seen if existing else time.time()

            record = PeerRecord(
                name=name,
                endpoint=endpoint.rstrip("/"),
                last_seen=last_seen,
                signature=entry["signature"],
                wallet_address=signer,
                is_trusted=True,
                source=source,
            )
            if self.upsert(record):
                accepted += 1

        self.stats["entries_accepted"] += accepted
        return accepted

    async def bootstrap_from_registry(self) -> int:
        """
        Seed unknown peers from the registry's bootstrap list.

        Registry-listed nodes are marked trusted provisionally; a later
        signed gossip entry refreshes their signature and wallet.
        """
        if self.registry is None:
            return 0

        nodes = await self.registry.get_bootstrap_nodes(self.bootstrap_limit)
        if nodes is None:
            return 0

        added = 0
        for name, endpoint in nodes.pairs():
            if name in self.peers or self.identity.is_self(name, endpoint):
                continue
            if self.upsert(PeerRecord(name=name, endpoint=endpoint.rstrip("/"), is_trusted=True, source="registry")):
                added += 1
                logger.info(f"Registry discovery: {name}")

        self.stats["registry_bootstraps"] += 1
        return added

    async def discover_from_trackers(self) -> int:
        """Pull signed peer lists from every tracker."""
        accepted = 0
        for tracker in list(self.trackers):
            data = await self.client.get_json(f"{tracker}/peers")
            if isinstance(data, dict):
                data = data.get("peers", [])
            if not isinstance(data, list):
                continue
            self.stats["tracker_pulls"] += 1
            accepted += await self.ingest(data, source="tracker")
        return accepted

    async def discover(self) -> int:
        """Registry bootstrap followed by tracker discovery."""
        added = await self.bootstrap_from_registry()
        added += await self.discover_from_trackers()
        return added

    # Resolution

    async def resolve(self, identifier: str) -> Optional[str]:
        """
        Resolve a name or address to a live endpoint.

        Known peers are searched first; registry-style names fall back to a
        direct registry query. Returns None if unresolved or inactive.
        """
        if not identifier:
            return None

        record = self.peers.get(identifier)
        if record is None and is_address(identifier):
            record = self.find_by_wallet(identifier)
        if record is not None:
            return record.endpoint

        if self.registry is not None and is_registry_name(identifier):
            try:
                node = await self.registry.get_node(identifier)
            except RegistryUnavailable as e:
                logger.warning(f"Cannot resolve {identifier}: {e}")
                return None
            if node is not None and node.is_live() and node.endpoint:
                logger.info(f"Resolved {identifier} -> {node.endpoint}")
                return node.endpoint

        return None

    async def connect(self, target: str) -> Optional[PeerRecord]:
        """
        Manually add a peer given a registry name or a URL.

        URLs are asked for their ``/peers`` list to learn the node's name;
        a signed self entry is admitted through verification, otherwise the
        URL itself becomes the (untrusted) name.
        """
        target = target.strip().rstrip("/")
        if not target:
            return None

        if "://" in target or ":" in target:
            endpoint = target if "://" in target else f"http://{target}"
            listed = await self.client.get_json(f"{endpoint}/peers")
            if isinstance(listed, list):
                for entry in listed:
                    if not isinstance(entry, dict):
                        continue
                    entry_endpoint = str(entry.get("endpoint") or "").rstrip("/")
                    if entry_endpoint and (entry_endpoint in endpoint or endpoint in entry_endpoint):
                        if await self.ingest([entry], source="manual"):
                            return self.peers.get(entry["name"])
            name = endpoint
        else:
            endpoint = await self.resolve(target)
            if not endpoint:
                logger.warning(f"Could not resolve endpoint for {target}")
                return None
            name = target

        record = PeerRecord(name=name, endpoint=endpoint, source="manual")
        if not self.upsert(record):
            return None
        logger.info(f"Connected to {name} @ {endpoint}")
        return self.peers.get(name)

    # Wire views

    def export_peers(self) -> List[Dict[str, Any]]:
        """Peer list served at ``/peers``: every known peer plus a signed self entry."""
        peers = [record.to_dict() for record in self.peers.values()]
        peers.append(self.identity.signed_record(time.time()))
        return peers

    # Trackers

    def _add_tracker_url(self, url: str) -> bool:
        url = url.strip().rstrip("/")
        if not url or url in self.trackers:
            return False
        self.trackers.append(url)
        return True

    def add_tracker(self, url: str) -> bool:
        added = self._add_tracker_url(url)
        if added:
            self.save_trackers()
        return added

    def remove_tracker(self, url: str) -> bool:
        url = url.strip().rstrip("/")
        if url not in self.trackers:
            return False
        self.trackers.remove(url)
        self.save_trackers()
        return True

    # Snapshots

    def load(self):
        """Load peers.json and trackers.json if present."""
        self.load_peers()
        self.load_trackers()
        self.purge_self()

    def load_peers(self) -> int:
        if not self.data_dir:
            return 0
        path = self.data_dir / PEERS_FILENAME
        if not path.exists():
            return 0
        try:
            for item in json.loads(path.read_text()):
                record = PeerRecord.from_snapshot(item)
                self.peers.setdefault(record.name, record)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to load peers snapshot: {e}")
        return len(self.peers)

    def save_peers(self):
        if not self.data_dir:
            return
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            data = [asdict(record) for record in self.peers.values()]
            (self.data_dir / PEERS_FILENAME).write_text(json.dumps(data, indent=2))
        except OSError as e:
            logger.warning(f"Failed to save peers snapshot: {e}")

    def load_trackers(self):
        if not self.data_dir:
            return
        path = self.data_dir / TRACKERS_FILENAME
        if not path.exists():
            self.save_trackers()
            return
        try:
            for url in json.loads(path.read_text()):
                self._add_tracker_url(str(url))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load trackers: {e}")

    def save_trackers(self):
        if not self.data_dir:
            return
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            (self.data_dir / TRACKERS_FILENAME).write_text(json.dumps(self.trackers, indent=2))
        except OSError as e:
            logger.warning(f"Failed to save trackers: {e}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "known_peers": len(self.peers),
            "trusted_peers": sum(1 for p in self.peers.values() if p.is_trusted),
            "trackers": len(self.trackers)
        }
