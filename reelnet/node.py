"""
ReelNet Node

Wires the components together and runs the timer loops.

Startup order:
1. Identity (load or generate the signing key)
2. Peer directory snapshot (peers.json, trackers.json)
3. Hosted links scan (links/, ads/)
4. Registry bootstrap + tracker discovery
5. HTTP surface
6. Initial catalog reconciliation
7. Background loops: gossip, tracker heartbeat, catalog sync,
   replication poll, replica GC, stale upload GC
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from reelnet.api import PeerServer
from reelnet.blockchain import (
    AdManagerConnector,
    LinkRegistryConnector,
    NodeRegistryConnector,
    SubscriptionConnector,
)
from reelnet.catalog import CatalogDatabase, CatalogStore, CatalogSync
from reelnet.config import NodeConfig
from reelnet.core import ContentCipher
from reelnet.identity import NodeIdentity
from reelnet.p2p import PeerDirectory
from reelnet.p2p.gossip import GossipProtocol
from reelnet.p2p.transport import PeerClient
from reelnet.replication import ReplicaGarbageCollector, ReplicationScheduler
from reelnet.streaming import ProofStore, StreamAdmission, SystemLoadMonitor

logger = logging.getLogger(__name__)


class ReelNode:
    """
    A ReelNet node.

    Example:
        >>> node = ReelNode(NodeConfig(data_dir="./node_a", public_ip="203.0.113.7"))
        >>> await node.start()
        >>> ...
        >>> await node.stop()
    """

    def __init__(self, config: Optional[NodeConfig] = None):
        self.config = config or NodeConfig()
        cfg = self.config
        cfg.ensure_dirs()

        self.identity = NodeIdentity.load_or_generate(
            cfg.data_dir,
            node_name=cfg.node_name,
            public_ip=cfg.public_ip,
            port=cfg.port,
            region=cfg.region,
        ) if not cfg.private_key else NodeIdentity(
            private_key=cfg.private_key,
            node_name=cfg.node_name,
            public_ip=cfg.public_ip,
            port=cfg.port,
            region=cfg.region,
        )

        # Chain collaborators
        self.registry = NodeRegistryConnector(cfg.rpc_url, cfg.node_registry_address, mock_mode=cfg.mock_chain)
        self.ad_manager = AdManagerConnector(cfg.rpc_url, cfg.ad_manager_address, mock_mode=cfg.mock_chain)
        self.subscriptions = SubscriptionConnector(cfg.rpc_url, cfg.subscriptions_address, mock_mode=cfg.mock_chain)
        self.link_registry = LinkRegistryConnector(cfg.rpc_url, cfg.link_registry_address, mock_mode=cfg.mock_chain)

        # Peer layer
        self.client = PeerClient(timeout=cfg.peer_timeout, download_timeout=cfg.download_timeout)
        self.directory = PeerDirectory(
            self.identity,
            self.client,
            registry=self.registry,
            data_dir=cfg.data_dir,
            trackers=cfg.trackers,
            bootstrap_limit=cfg.bootstrap_limit,
        )

        # Catalog
        self.database = CatalogDatabase(str(cfg.catalog_db_path))
        self.store = CatalogStore(
            cfg.links_dir,
            cfg.ads_dir,
            self.database,
            directory=self.directory,
            identity=self.identity,
            cipher=ContentCipher(),
            temp_dir=cfg.temp_dir,
            global_max_streams=cfg.global_max_streams,
            default_port=cfg.port,
        )
        self.catalog_sync = CatalogSync(
            self.database,
            self.directory,
            self.client,
            posters_dir=cfg.posters_dir,
            backdrops_dir=cfg.backdrops_dir,
            peers_per_sync=cfg.catalog_sync_peers,
        )

        self.gossip = GossipProtocol(
            self.directory,
            self.client,
            fanout=cfg.gossip_fanout,
            sample_size=cfg.gossip_sample,
            max_concurrent=cfg.max_concurrent_pushes,
            summary_provider=self.summary,
        )

        # Replication
        self.replication = ReplicationScheduler(
            self.identity,
            self.ad_manager,
            self.store,
            self.directory,
            self.client,
            cfg.ads_dir,
            metadata_rate=cfg.metadata_replication_rate,
            data_rate=cfg.data_replication_rate,
            disk_threshold=cfg.disk_threshold,
            block_window=cfg.replication_block_window,
            startup_scan=cfg.replication_startup_scan,
        )
        self.replica_gc = ReplicaGarbageCollector(
            cfg.ads_dir,
            store=self.store,
            retention_days=cfg.replica_retention_days,
            exempt=self.store.is_own_upload,
        )

        # Streaming
        self.load_monitor = SystemLoadMonitor(cfg.min_free_ram_mb, cfg.load_factor)
        self.admission = StreamAdmission(
            self.store,
            self.identity,
            load_monitor=self.load_monitor,
            ad_manager=self.ad_manager,
            subscriptions=self.subscriptions,
            link_registry=self.link_registry,
            proof_store=ProofStore(cfg.proofs_dir),
            owner_wallets=cfg.owner_wallets,
            session_hours=cfg.session_hours,
            ad_candidates=cfg.ad_candidates,
            chain_id=cfg.chain_id,
            idle_grace=cfg.session_idle_grace,
        )

        self.server = PeerServer(
            self.directory,
            self.gossip,
            self.store,
            self.database,
            self.admission,
            load_monitor=self.load_monitor,
            posters_dir=cfg.posters_dir,
            backdrops_dir=cfg.backdrops_dir,
            port=cfg.port,
        )

        self.running = False
        self._background_tasks: List[asyncio.Task] = []

    def summary(self) -> dict:
        """Capacity/content summary pushed to trackers."""
        return {
            "stats": {
                "links": len(self.store.links),
                "activeStreams": sum(link.active_streams for link in self.store.links.values()),
                "maxStreams": self.config.global_max_streams,
                "region": self.identity.region,
            },
            "content": [
                {"id": link.id, "title": link.title, "mediaId": link.media_id}
                for link in self.store.links.values()
                if not link.is_ad
            ],
        }

    async def _periodic(self, name: str, interval: float, action: Callable[[], Awaitable], delay: float = 0):
        """Run ``action`` every ``interval`` seconds until cancelled; errors are logged per run."""
        if delay:
            await asyncio.sleep(delay)
        while self.running:
            try:
                await action()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in {name} loop: {e}")
            await asyncio.sleep(interval)

    def _spawn(self, name: str, interval: float, action: Callable[[], Awaitable], delay: float = 0):
        self._background_tasks.append(
            asyncio.create_task(self._periodic(name, interval, action, delay))
        )

    async def start(self, serve: bool = True):
        """Start the node."""
        if self.running:
            logger.warning("Node already running")
            return

        cfg = self.config
        for connector in (self.registry, self.ad_manager, self.subscriptions, self.link_registry):
            connector.connect()

        self.directory.load()
        self.store.load_existing_links()
        self.replication.load_state()

        if serve:
            await self.server.start()
        self.running = True

        added = await self.directory.discover()
        logger.info(f"Discovery: {added} peers added, {len(self.directory)} known")

        try:
            await self.catalog_sync.sync_once(discover=False)
        except Exception as e:
            logger.error(f"Initial catalog sync failed: {e}")

        async def catalog_cycle():
            await self.catalog_sync.sync_once()

        async def temp_gc():
            self.store.cleanup_stale_uploads(cfg.temp_max_age)

        self._spawn("gossip", cfg.gossip_interval, self.gossip.gossip_round, delay=cfg.gossip_interval)
        self._spawn("heartbeat", cfg.heartbeat_interval, self.gossip.announce_round)
        self._spawn("catalog sync", cfg.catalog_sync_interval, catalog_cycle, delay=cfg.catalog_sync_interval)
        self._spawn("replication poll", cfg.replication_poll_interval, self.replication.poll_once)
        self._spawn("replica gc", cfg.gc_interval, self.replica_gc.run_gc, delay=60)
        self._spawn("stale upload gc", cfg.temp_gc_interval, temp_gc, delay=cfg.temp_gc_interval)
        self._background_tasks.append(asyncio.create_task(self._replicate_existing()))

        logger.info(f"Node {self.identity.identifier} started at {self.identity.endpoint}")

    async def _replicate_existing(self):
        try:
            outcomes = await self.replication.replicate_existing()
            logger.info(f"Startup replication evaluated {len(outcomes)} campaigns")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Startup replication failed: {e}")

    async def stop(self):
        """Stop the node."""
        if not self.running:
            return
        self.running = False

        for task in self._background_tasks:
            task.cancel()
        await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

        await self.catalog_sync.close()
        await self.server.stop()
        self.directory.save_peers()
        await self.client.close()

        logger.info("Node stopped")

    async def run_forever(self):
        """Start and block until cancelled."""
        await self.start()
        try:
            while self.running:
                await asyncio.sleep(3600)
        finally:
            await self.stop()

    def get_stats(self) -> dict:
        return {
            "identity": {
                "identifier": self.identity.identifier,
                "address": self.identity.address,
                "endpoint": self.identity.endpoint,
                "region": self.identity.region,
            },
            "directory": self.directory.get_stats(),
            "gossip": self.gossip.get_stats(),
            "catalog": self.store.get_stats(),
            "sync": self.catalog_sync.get_stats(),
            "replication": self.replication.get_stats(),
            "replica_gc": self.replica_gc.get_stats(),
            "admission": self.admission.get_stats(),
        }


def main():
    """Console entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    config = NodeConfig.from_env()
    try:
        asyncio.run(ReelNode(config).run_forever())
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
