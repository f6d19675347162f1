"""
Peer Gossip Protocol

Randomized, best-effort propagation of peer directory entries.

Each round:
1. Build a payload: our own signed record plus a random subset of known peers
2. Pick FANOUT random targets (never ourselves)
3. POST the payload to each target's /gossip concurrently

There is no delivery guarantee and no retry; the next round is the retry.
Receivers verify every entry before upserting it.

A separate heartbeat pushes a capacity/content summary to each configured
tracker's /announce (push-based discovery, independent of gossip).
"""

import asyncio
import logging
import random
import time
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


# Gossip constants
GOSSIP_FANOUT = 3  # Number of peers to push to per round
GOSSIP_SAMPLE = 10  # Known peers included per payload
MAX_CONCURRENT_PUSHES = 8


class GossipProtocol:
    """
    Gossip push/ingest for the peer directory.

    Pushes run as an explicit task set bounded by a semaphore; each push
    carries the client's per-call timeout and its result is discarded.
    """

    def __init__(
        self,
        directory,
        client,
        fanout: int = GOSSIP_FANOUT,
        sample_size: int = GOSSIP_SAMPLE,
        max_concurrent: int = MAX_CONCURRENT_PUSHES,
        summary_provider: Optional[Callable[[], Dict[str, Any]]] = None
    ):
        """
        Initialize gossip protocol.

        Args:
            directory: PeerDirectory to read from and ingest into
            client: PeerClient for outbound pushes
            fanout: Targets per round
            sample_size: Known peers per payload
            max_concurrent: Concurrent outbound pushes
            summary_provider: Callable returning {"stats": ..., "content": ...}
                for tracker announces
        """
        self.directory = directory
        self.client = client
        self.fanout = fanout
        self.sample_size = sample_size
        self._push_slots = asyncio.Semaphore(max_concurrent)
        self.summary_provider = summary_provider

        # Statistics
        self.stats = {
            "rounds": 0,
            "pushes_sent": 0,
            "pushes_failed": 0,
            "payloads_received": 0,
            "entries_accepted": 0,
            "announces_sent": 0,
            "announces_failed": 0
        }

        logger.info(f"Initialized gossip protocol for node: {directory.identity.identifier}")

    def build_payload(self) -> Dict[str, Any]:
        """Our signed record plus a random subset of known peers."""
        now = time.time()
        subset = self.directory.random_sample(self.sample_size)
        return {
            "peers": [self.directory.identity.signed_record(now)] + [p.to_dict() for p in subset],
            "timestamp": now
        }

    def select_targets(self) -> List:
        """Random fan-out targets, excluding ourselves."""
        identity = self.directory.identity
        candidates = [
            p for p in self.directory.peers.values()
            if not identity.is_self(p.name, p.endpoint)
        ]
        return random.sample(candidates, min(self.fanout, len(candidates)))

    async def _push(self, url: str, payload: Dict[str, Any]) -> bool:
        async with self._push_slots:
            return await self.client.post_json(url, payload)

    async def _fan_out(self, urls: List[str], payload: Dict[str, Any]) -> List[Any]:
        tasks = [asyncio.create_task(self._push(url, payload)) for url in urls]
        return await asyncio.gather(*tasks, return_exceptions=True)

    async def gossip_round(self) -> int:
        """
        Push one gossip payload to FANOUT random peers.

        Returns:
            Number of targets that accepted the push
        """
        targets = self.select_targets()
        if not targets:
            return 0

        payload = self.build_payload()
        results = await self._fan_out([f"{t.endpoint}/gossip" for t in targets], payload)

        delivered = sum(1 for r in results if r is True)
        self.stats["rounds"] += 1
        self.stats["pushes_sent"] += delivered
        self.stats["pushes_failed"] += len(results) - delivered

        logger.debug(f"Gossip round: {delivered}/{len(targets)} targets reached")
        return delivered

    async def handle_gossip(self, payload: Any) -> int:
        """
        Ingest a received gossip payload.

        Returns:
            Number of entries accepted into the directory
        """
        self.stats["payloads_received"] += 1
        if not isinstance(payload, dict) or not isinstance(payload.get("peers"), list):
            return 0

        accepted = await self.directory.ingest(payload["peers"], source="gossip")
        self.stats["entries_accepted"] += accepted
        if accepted:
            logger.info(f"Gossip updated {accepted} peer locations")
            self.directory.save_peers()
        return accepted

    def build_announce(self) -> Dict[str, Any]:
        identity = self.directory.identity
        summary = self.summary_provider() if self.summary_provider else {}
        return {
            "nodeId": identity.identifier,
            "endpoint": identity.endpoint,
            "signature": identity.sign_node_record(),
            "stats": summary.get("stats", {}),
            "content": summary.get("content", [])
        }

    async def announce_round(self) -> int:
        """POST a capacity/content summary to every tracker."""
        trackers = list(self.directory.trackers)
        if not trackers:
            return 0

        results = await self._fan_out([f"{t}/announce" for t in trackers], self.build_announce())

        delivered = sum(1 for r in results if r is True)
        self.stats["announces_sent"] += delivered
        self.stats["announces_failed"] += len(results) - delivered
        return delivered

    def get_stats(self) -> Dict:
        """Get gossip protocol statistics."""
        return {
            **self.stats,
            "fanout": self.fanout,
            "sample_size": self.sample_size
        }
