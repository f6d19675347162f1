"""
Replication Scheduler

Coordination-free sharding of ad campaign replicas.

Every node hashes its own signer address together with a content id:

    bucket = first 2 bytes (big-endian) of SHA-256(address | content_id[#namespace])
    replicate iff bucket < 65535 * rate

so each node makes an independent, reproducible decision and roughly a
``rate`` fraction of the network mirrors any given item. Metadata and bytes
use separate namespaces, hence independent decisions per item.

Byte replication additionally requires:
- the campaign to be active with views and budget left
- local disk utilisation below the threshold (fail open if unavailable)
- a region match when both node and content are region-scoped

Bytes are downloaded to a staging path and moved into place before the link
is registered; a failed download never registers anything.
"""

import hashlib
import json
import logging
import os
import shutil
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


BUCKET_MAX = 65535
METADATA_RATE = 0.35
DATA_RATE = 0.10
DISK_THRESHOLD = 0.70
BLOCK_WINDOW = 5000
STARTUP_SCAN = 50
SYNC_STATE_FILENAME = "sync_state.json"
GLOBAL_REGION = "GLOBAL"


def replication_bucket(node_address: str, content_id: str, namespace: Optional[str] = None) -> int:
    """Deterministic 16-bit bucket of ``content_id`` for ``node_address``."""
    material = f"{node_address}{content_id}"
    if namespace:
        material = f"{material}#{namespace}"
    digest = hashlib.sha256(material.encode("utf-8")).digest()
    return int.from_bytes(digest[:2], "big")


def should_replicate(
    node_address: str,
    content_id: str,
    rate: float,
    namespace: Optional[str] = None
) -> bool:
    """
    Pure replication decision.

    Raises:
        ValueError: If ``rate`` is outside (0, 1]
    """
    if not 0 < rate <= 1:
        raise ValueError(f"Replication rate must be in (0, 1], got {rate}")
    if rate >= 1:
        return True
    return replication_bucket(node_address, content_id, namespace) < BUCKET_MAX * rate


class ReplicationOutcome(str, Enum):
    """Result of evaluating one campaign."""

    SKIPPED_SHARD = "skipped_shard"
    UNAVAILABLE = "unavailable"
    ALREADY_CACHED = "already_cached"
    EVICTED = "evicted"
    METADATA_UNAVAILABLE = "metadata_unavailable"
    METADATA_ONLY = "metadata_only"
    DOWNLOAD_FAILED = "download_failed"
    REPLICATED = "replicated"


class ReplicationScheduler:
    """
    Polls campaign creation events and mirrors the campaigns this node's
    buckets select.
    """

    def __init__(
        self,
        identity,
        ad_manager,
        store,
        directory,
        client,
        ads_dir: Path,
        metadata_rate: float = METADATA_RATE,
        data_rate: float = DATA_RATE,
        disk_threshold: float = DISK_THRESHOLD,
        block_window: int = BLOCK_WINDOW,
        startup_scan: int = STARTUP_SCAN
    ):
        """
        Initialize replication scheduler.

        Args:
            identity: Local NodeIdentity (signer address, region)
            ad_manager: AdManagerConnector
            store: CatalogStore receiving replicated links
            directory: PeerDirectory supplying source endpoints
            client: PeerClient for manifest and byte downloads
            ads_dir: Replica directory (also holds the sync cursor)
            metadata_rate: Fraction of nodes mirroring campaign manifests
            data_rate: Fraction of nodes mirroring campaign bytes
            disk_threshold: Max disk utilisation for byte replicas
            block_window: Max blocks scanned per poll
            startup_scan: Newest campaigns evaluated at startup
        """
        for rate in (metadata_rate, data_rate):
            if not 0 < rate <= 1:
                raise ValueError(f"Replication rate must be in (0, 1], got {rate}")

        self.identity = identity
        self.ad_manager = ad_manager
        self.store = store
        self.directory = directory
        self.client = client
        self.ads_dir = Path(ads_dir)
        self.metadata_rate = metadata_rate
        self.data_rate = data_rate
        self.disk_threshold = disk_threshold
        self.block_window = block_window
        self.startup_scan = startup_scan

        self.last_synced_block = 0
        self._polling = False

        self.stats = {outcome.value: 0 for outcome in ReplicationOutcome}
        self.stats["polls"] = 0

    # Decisions

    def should_replicate_metadata(self, campaign_id: int) -> bool:
        return should_replicate(self.identity.address, str(campaign_id), self.metadata_rate, "metadata")

    def disk_utilisation(self) -> Optional[float]:
        """Used fraction of the replica filesystem, or None if unavailable."""
        try:
            usage = shutil.disk_usage(self.ads_dir)
        except OSError:
            return None
        if usage.total <= 0:
            return None
        return 1 - usage.free / usage.total

    def should_replicate_data(self, campaign, metadata: Dict[str, Any]) -> bool:
        if not campaign.has_capacity:
            return False

        used = self.disk_utilisation()
        if used is not None and used > self.disk_threshold:
            logger.warning(f"Disk {used:.1%} full, skipping byte replica for campaign #{campaign.campaign_id}")
            return False

        node_region = (self.identity.region or GLOBAL_REGION).upper()
        media_info = metadata.get("mediaInfo") or {}
        content_region = str(metadata.get("region") or media_info.get("region") or GLOBAL_REGION).upper()
        if node_region != GLOBAL_REGION and content_region != GLOBAL_REGION:
            return node_region == content_region

        content_id = str(metadata.get("id") or campaign.content_id)
        return should_replicate(self.identity.address, content_id, self.data_rate, "data")

    # Acquisition

    def _paths(self, ad_id: str):
        return (
            self.ads_dir / f"{ad_id}.json",
            self.ads_dir / f"{ad_id}.enc",
            self.ads_dir / f"{ad_id}.key",
        )

    def evict(self, ad_id: str) -> bool:
        """Remove a cached replica and unregister it."""
        removed = False
        for path in self._paths(ad_id):
            if path.exists():
                path.unlink()
                removed = True
        self.store.unregister_link(ad_id)
        return removed

    async def fetch_metadata(self, ad_id: str):
        """Live map of ``ad_id`` from the first peer (random order) that has it."""
        for endpoint in self.directory.endpoints_shuffled():
            metadata = await self.client.get_json(f"{endpoint}/stream/{ad_id}/map")
            if isinstance(metadata, dict) and metadata.get("id"):
                return metadata, endpoint
        return None, None

    async def replicate_campaign(self, campaign_id: int) -> ReplicationOutcome:
        """Evaluate one campaign and mirror what this node's buckets select."""
        outcome = await self._replicate_campaign(campaign_id)
        self.stats[outcome.value] += 1
        return outcome

    async def _replicate_campaign(self, campaign_id: int) -> ReplicationOutcome:
        if not self.should_replicate_metadata(campaign_id):
            return ReplicationOutcome.SKIPPED_SHARD

        campaign = await self.ad_manager.get_campaign(campaign_id)
        if campaign is None or not campaign.content_id:
            return ReplicationOutcome.UNAVAILABLE

        ad_id = campaign.content_id
        manifest_path, blob_path, key_path = self._paths(ad_id)

        if manifest_path.exists() and blob_path.exists():
            if not campaign.active and not self.store.is_own_upload(ad_id):
                logger.info(f"Evicting inactive campaign #{campaign_id} ({ad_id})")
                self.evict(ad_id)
                return ReplicationOutcome.EVICTED
            return ReplicationOutcome.ALREADY_CACHED

        metadata, source = await self.fetch_metadata(ad_id)
        if metadata is None:
            return ReplicationOutcome.METADATA_UNAVAILABLE

        metadata = {k: v for k, v in metadata.items() if k not in ("status", "stats", "adRequired")}
        self.ads_dir.mkdir(parents=True, exist_ok=True)
        manifest_path.write_text(json.dumps(metadata, indent=2))

        if not self.should_replicate_data(campaign, metadata):
            return ReplicationOutcome.METADATA_ONLY

        staging = self.ads_dir / f"{ad_id}.enc.part"
        logger.info(f"Downloading bytes for campaign #{campaign_id} ({ad_id}) from {source}")
        if not await self.client.download(f"{source}/stream/{ad_id}/stream", staging):
            return ReplicationOutcome.DOWNLOAD_FAILED

        os.replace(staging, blob_path)
        key = campaign.content_key
        if key:
            key_path.write_text(key)

        self.store.register_link(ad_id, blob_path, metadata, key, is_ad=True)
        logger.info(f"Secured campaign #{campaign_id} ({blob_path.stat().st_size} bytes)")
        return ReplicationOutcome.REPLICATED

    # Polling

    @property
    def state_path(self) -> Path:
        return self.ads_dir / SYNC_STATE_FILENAME

    def load_state(self) -> int:
        if self.state_path.exists():
            try:
                self.last_synced_block = int(json.loads(self.state_path.read_text()).get("lastSyncedBlock", 0))
            except (OSError, ValueError, TypeError, AttributeError) as e:
                logger.warning(f"Invalid sync cursor, starting from 0: {e}")
                self.last_synced_block = 0
        return self.last_synced_block

    def save_state(self):
        self.ads_dir.mkdir(parents=True, exist_ok=True)
        self.state_path.write_text(json.dumps({"lastSyncedBlock": self.last_synced_block}))

    async def _evaluate(self, campaign_ids: List[int]) -> List[ReplicationOutcome]:
        outcomes = []
        for campaign_id in campaign_ids:
            try:
                outcomes.append(await self.replicate_campaign(campaign_id))
            except OSError as e:
                logger.error(f"Replication of campaign #{campaign_id} failed: {e}")
        return outcomes

    async def poll_once(self) -> List[ReplicationOutcome]:
        """
        Evaluate campaigns created since the sync cursor.

        At most ``block_window`` blocks are scanned per poll; the cursor only
        advances when the event query succeeds.
        """
        if self._polling:
            return []
        self._polling = True
        try:
            current = await self.ad_manager.block_number()
            if current is None:
                return []

            from_block = self.last_synced_block + 1 if self.last_synced_block > 0 else 0
            if from_block > current:
                return []
            to_block = min(current, from_block + self.block_window - 1)

            campaign_ids = await self.ad_manager.created_campaign_ids(from_block, to_block)
            if campaign_ids is None:
                return []

            for campaign_id in campaign_ids:
                logger.info(f"New campaign detected: #{campaign_id}")
            outcomes = await self._evaluate(campaign_ids)

            self.last_synced_block = to_block
            self.save_state()
            self.stats["polls"] += 1
            return outcomes
        finally:
            self._polling = False

    async def replicate_existing(self) -> List[ReplicationOutcome]:
        """Evaluate the newest ``startup_scan`` campaigns, newest first."""
        next_id = await self.ad_manager.next_campaign_id()
        lowest = max(0, next_id - self.startup_scan)
        return await self._evaluate(list(range(next_id - 1, lowest - 1, -1)))

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "last_synced_block": self.last_synced_block,
            "metadata_rate": self.metadata_rate,
            "data_rate": self.data_rate
        }
