"""
Catalog Reconciliation

Periodic pull of peers' public catalogs into the local catalog database.

Per cycle:
1. Refresh the peer directory (registry bootstrap + trackers)
2. Pick a bounded random subset of known peers
3. For each remote item:
   - unknown media is discovered from the peer's sovereign manifest; if the
     manifest cannot be fetched the item is skipped (nothing is fabricated)
   - known media with missing rich metadata is hydrated from the manifest
   - upsert the (mediaId, uploaderWallet) entry, updating only its authority

Absence from a peer's catalog is never treated as deletion.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Set

from .models import CatalogEntry, MediaRecord

logger = logging.getLogger(__name__)


SYNC_PEERS = 5


class CatalogSync:
    """
    Catalog reconciliation engine.

    A single in-flight guard prevents overlapping cycles.
    """

    def __init__(
        self,
        database,
        directory,
        client,
        posters_dir: Optional[Path] = None,
        backdrops_dir: Optional[Path] = None,
        peers_per_sync: int = SYNC_PEERS
    ):
        self.database = database
        self.directory = directory
        self.client = client
        self.posters_dir = Path(posters_dir) if posters_dir else None
        self.backdrops_dir = Path(backdrops_dir) if backdrops_dir else None
        self.peers_per_sync = peers_per_sync

        self._syncing = False
        self._asset_tasks: Set[asyncio.Task] = set()

        self.stats = {
            "cycles": 0,
            "cycles_skipped": 0,
            "peers_synced": 0,
            "peers_failed": 0,
            "entries_created": 0,
            "authorities_updated": 0,
            "items_skipped": 0,
            "media_discovered": 0,
            "media_hydrated": 0,
            "assets_copied": 0
        }

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    async def sync_once(self, discover: bool = True) -> int:
        """
        Run one reconciliation cycle.

        Returns:
            Number of entries created or re-pointed (0 if a cycle was
            already running)
        """
        if self._syncing:
            self.stats["cycles_skipped"] += 1
            return 0
        self._syncing = True

        changed = 0
        try:
            if discover:
                await self.directory.discover()

            identity = self.directory.identity
            for peer in self.directory.random_sample(self.peers_per_sync):
                if identity.is_self(peer.name, peer.endpoint):
                    continue

                catalog = await self.client.get_json(f"{peer.endpoint}/catalog")
                if not isinstance(catalog, list):
                    self.stats["peers_failed"] += 1
                    continue

                logger.debug(f"Syncing {len(catalog)} catalog items from {peer.name}")
                for item in catalog:
                    if isinstance(item, dict) and await self.process_item(item, peer):
                        changed += 1
                self.stats["peers_synced"] += 1

            self.directory.save_peers()
            self.stats["cycles"] += 1
        finally:
            self._syncing = False

        if changed:
            logger.info(f"Catalog sync: {changed} entries created or updated")
        return changed

    async def process_item(self, item: Dict[str, Any], peer) -> Optional[CatalogEntry]:
        """
        Reconcile one remote catalog item from ``peer``.

        Returns:
            The created or re-pointed entry, or None if nothing changed
        """
        media_id = item.get("mediaId")
        if not media_id:
            self.stats["items_skipped"] += 1
            return None

        media = self.database.get_media(media_id)
        if media is None:
            media = await self.discover_media(media_id, peer)
            if media is None:
                self.stats["items_skipped"] += 1
                return None
        elif media.needs_hydration:
            media = await self.hydrate_media(media, peer)

        authority = peer.name
        uploader = item.get("uploaderWallet") or peer.wallet_address or peer.name

        existing = self.database.find_entry(media_id, uploader)
        if existing is not None:
            if existing.authority == authority:
                return None
            self.stats["authorities_updated"] += 1
            logger.debug(f"Authority for {existing.id}: {existing.authority} -> {authority}")
            return self.database.update_authority(existing.id, authority)

        entry_id = self._entry_id(item, authority, media_id)
        if entry_id is None:
            self.stats["items_skipped"] += 1
            return None

        entry = CatalogEntry(
            id=entry_id,
            media_id=media_id,
            uploader_wallet=uploader,
            authority=authority,
            content_hash=item.get("contentHash") or "",
            title=item.get("title") or f"[P2P] {media.title}",
            media_type=item.get("mediaType") or media.media_type,
            season=item.get("season"),
            episode=item.get("episode"),
            metadata=item.get("metadata") if isinstance(item.get("metadata"), dict) else {},
        )
        if not self.database.insert_entry(entry):
            self.stats["items_skipped"] += 1
            return None

        self.stats["entries_created"] += 1
        return entry

    def _entry_id(self, item: Dict[str, Any], authority: str, media_id: str) -> Optional[str]:
        """Peer's link id unless it is taken by another entry, else ``<authority>_<mediaId>``."""
        fallback = f"{authority}_{media_id}"
        for candidate in (item.get("id"), fallback):
            if not candidate:
                continue
            if self.database.get_entry(str(candidate)) is None:
                return str(candidate)
        return None

    async def fetch_manifest(self, media_id: str, peer) -> Optional[Dict[str, Any]]:
        manifest = await self.client.get_json(f"{peer.endpoint}/media/{media_id}/manifest")
        return manifest if isinstance(manifest, dict) else None

    async def discover_media(self, media_id: str, peer) -> Optional[MediaRecord]:
        """
        Create a media record from the peer's sovereign manifest.

        A manifest describing a different mediaId is ignored.
        """
        manifest = await self.fetch_manifest(media_id, peer)
        if manifest is None or str(manifest.get("mediaId")) != media_id:
            return None
        try:
            media = MediaRecord.from_manifest(manifest)
        except (TypeError, ValueError) as e:
            logger.debug(f"Invalid manifest for {media_id} from {peer.name}: {e}")
            return None

        self.database.put_media(media)
        self.stats["media_discovered"] += 1
        logger.info(f"Discovered media {media_id} ({media.title}) from {peer.name}")
        self._spawn_asset_copy(peer, media)
        return media

    async def hydrate_media(self, media: MediaRecord, peer) -> MediaRecord:
        """Fill missing rich fields from the peer's sovereign manifest."""
        manifest = await self.fetch_manifest(media.media_id, peer)
        if not isinstance(manifest, dict):
            return media

        fields = MediaRecord.manifest_fields(manifest)
        if not fields:
            return media

        updated = self.database.upsert_media(media.media_id, fields, only_missing=True)
        if updated is None:
            return media

        self.stats["media_hydrated"] += 1
        self._spawn_asset_copy(peer, updated)
        return updated

    def _spawn_asset_copy(self, peer, media: MediaRecord):
        if not media.source_id or not (self.posters_dir or self.backdrops_dir):
            return
        task = asyncio.create_task(self.hydrate_images(peer, media))
        self._asset_tasks.add(task)
        task.add_done_callback(self._asset_tasks.discard)

    async def hydrate_images(self, peer, media: MediaRecord) -> int:
        """Copy poster/backdrop images from ``peer`` if not cached; failures are ignored."""
        copied = 0
        for kind, directory in (("poster", self.posters_dir), ("backdrop", self.backdrops_dir)):
            if directory is None:
                continue
            dest = directory / f"{media.source_id}.jpg"
            if dest.exists():
                continue
            if await self.client.download(f"{peer.endpoint}/catalog/{kind}/{media.source_id}", dest):
                copied += 1

        self.stats["assets_copied"] += copied
        return copied

    async def close(self):
        """Cancel pending asset copies."""
        tasks = list(self._asset_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "syncing": self._syncing, "entries": self.database.count_entries()}
