"""
Catalog Store

Local authoritative registry of hosted content plus the reconciled view of
remote content.

Hosted content lives on disk as ``<id>.enc`` (AES-256-CTR blob), a
``<id>.json`` sidecar manifest and an optional ``<id>.key``. The in-memory
link registry is keyed by content id; remote content is read from the
CatalogDatabase.

Remote entries carry an *authority* (peer name, address or IP). It is
resolved to an endpoint through the PeerDirectory at read time only.
"""

import json
import logging
import os
import secrets
import time
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from reelnet.core.cipher import ALGORITHM, ContentCipher
from reelnet.identity import addresses_equal, is_ip_literal
from .models import MediaRecord, RegisteredLink

logger = logging.getLogger(__name__)


BLOB_SUFFIX = ".enc"
MANIFEST_SUFFIX = ".json"
KEY_SUFFIX = ".key"
DEFAULT_MAX_STREAMS = 50
TEMP_MAX_AGE = 24 * 60 * 60  # Seconds


class CatalogStore:
    """
    Link registry and catalog views.

    Stream counters are only changed through ``acquire_stream`` and
    ``release_stream``; the counter never goes below zero.
    """

    def __init__(
        self,
        links_dir: Path,
        ads_dir: Path,
        database,
        directory=None,
        identity=None,
        cipher: Optional[ContentCipher] = None,
        temp_dir: Optional[Path] = None,
        global_max_streams: int = DEFAULT_MAX_STREAMS,
        default_port: int = 21746
    ):
        """
        Initialize catalog store.

        Args:
            links_dir: Directory of hosted content
            ads_dir: Directory of replicated ad content
            database: CatalogDatabase (remote entries, media, votes)
            directory: PeerDirectory used for authority resolution
            identity: Local NodeIdentity (hoster address, public endpoint)
            cipher: ContentCipher for ingestion
            temp_dir: Upload staging directory swept by ``cleanup_stale_uploads``
            global_max_streams: Per-link concurrent stream cap
            default_port: Port assumed for bare IP authorities
        """
        self.links_dir = Path(links_dir)
        self.ads_dir = Path(ads_dir)
        self.database = database
        self.directory = directory
        self.identity = identity
        self.cipher = cipher or ContentCipher()
        self.temp_dir = Path(temp_dir) if temp_dir else None
        self.global_max_streams = global_max_streams
        self.default_port = default_port

        # Link registry (content id -> RegisteredLink)
        self.links: Dict[str, RegisteredLink] = {}

        self.stats = {
            "links_registered": 0,
            "links_removed": 0,
            "ingested": 0,
            "stale_uploads_removed": 0
        }

    # Link registry

    def register_link(
        self,
        link_id: str,
        file_path: Path,
        metadata: Dict[str, Any],
        key: Optional[str] = None,
        is_ad: bool = False
    ) -> Optional[RegisteredLink]:
        """
        Register hosted content.

        Registration requires the blob to exist on disk; a missing file is
        logged and nothing is registered.
        """
        file_path = Path(file_path)
        if not file_path.exists():
            logger.warning(f"File not found, not registering {link_id}: {file_path}")
            return None

        link = RegisteredLink(
            id=link_id,
            file_path=str(file_path),
            metadata=metadata,
            max_streams=self.global_max_streams,
            decryption_key=key,
            is_ad=is_ad,
        )
        existing = self.links.get(link_id)
        if existing is not None:
            link.active_streams = existing.active_streams

        self.links[link_id] = link
        self.stats["links_registered"] += 1
        logger.info(f"Registered: {link.title} ({link_id})")
        return link

    def unregister_link(self, link_id: str) -> Optional[RegisteredLink]:
        link = self.links.pop(link_id, None)
        if link is not None:
            self.stats["links_removed"] += 1
            logger.info(f"Unregistered: {link.title} ({link_id})")
        return link

    def get_link(self, link_id: str) -> Optional[RegisteredLink]:
        return self.links.get(link_id)

    def acquire_stream(self, link_id: str) -> bool:
        """Take one stream slot; False if unknown or at capacity."""
        link = self.links.get(link_id)
        if link is None or link.at_capacity:
            return False
        link.active_streams += 1
        return True

    def release_stream(self, link_id: str) -> None:
        link = self.links.get(link_id)
        if link is not None:
            link.active_streams = max(0, link.active_streams - 1)

    def load_existing_links(self) -> int:
        """Register every blob under links/ and ads/ that has a manifest."""
        count = 0
        for base, is_ad in ((self.links_dir, False), (self.ads_dir, True)):
            base.mkdir(parents=True, exist_ok=True)
            for blob in sorted(base.rglob(f"*{BLOB_SUFFIX}")):
                manifest_path = blob.with_suffix(MANIFEST_SUFFIX)
                if not manifest_path.exists():
                    continue
                try:
                    manifest = json.loads(manifest_path.read_text())
                except (OSError, ValueError) as e:
                    logger.warning(f"Invalid manifest {manifest_path.name}: {e}")
                    continue

                key_path = blob.with_suffix(KEY_SUFFIX)
                key = key_path.read_text().strip() if key_path.exists() else None

                if self.register_link(manifest.get("id", blob.stem), blob, manifest, key, is_ad=is_ad):
                    count += 1

        logger.info(f"Loaded {count} hosted links")
        return count

    # Ingestion

    def ingest_file(
        self,
        source: Path,
        title: str,
        media_id: Optional[str] = None,
        media_info: Optional[Dict[str, Any]] = None,
        mime_type: str = "video/mp4",
        hoster_address: Optional[str] = None,
        link_id: Optional[str] = None,
        is_ad: bool = False
    ) -> RegisteredLink:
        """
        Encrypt ``source`` and register it.

        Content goes to links/ and its media is recorded in the catalog
        database so the node can serve the sovereign manifest. Ad videos
        (``is_ad``) go to ads/ and stream without a session, which lets
        other nodes mirror them.

        Raises:
            FileNotFoundError: If ``source`` does not exist
        """
        source = Path(source)
        if not source.exists():
            raise FileNotFoundError(f"Source file not found: {source}")

        link_id = link_id or secrets.token_hex(8)
        base_dir = self.ads_dir if is_ad else self.links_dir
        base_dir.mkdir(parents=True, exist_ok=True)
        blob_path = base_dir / f"{link_id}{BLOB_SUFFIX}"

        key = self.cipher.generate_key()
        result = self.cipher.encrypt_file(source, blob_path, key)

        if hoster_address is None and self.identity is not None:
            hoster_address = self.identity.address
        endpoint = self.identity.endpoint if self.identity is not None else ""

        manifest = {
            "id": link_id,
            "title": title,
            "size": result.size,
            "mimeType": mime_type,
            "mediaId": media_id,
            "hosterAddress": hoster_address,
            "encryptionAlgo": ALGORITHM,
            "compressionAlgo": "none",
            "iv": result.iv,
            "hash": result.hash,
            "publicEndpoint": f"{endpoint}/stream/{link_id}/stream",
            "mediaInfo": media_info or {},
            "createdAt": time.time(),
        }

        blob_path.with_suffix(MANIFEST_SUFFIX).write_text(json.dumps(manifest, indent=2))
        key_path = blob_path.with_suffix(KEY_SUFFIX)
        key_path.write_text(key.hex())
        try:
            os.chmod(key_path, 0o600)
        except OSError:
            pass

        link = self.register_link(link_id, blob_path, manifest, key.hex(), is_ad=is_ad)
        if media_id and not is_ad:
            self.record_media(media_id, title, media_info or {})
        self.stats["ingested"] += 1
        return link

    def record_media(self, media_id: str, title: str, media_info: Dict[str, Any]) -> MediaRecord:
        """Media record for hosted content; an existing record only gains missing fields."""
        info = {**media_info, "mediaId": media_id}
        info.setdefault("title", title)
        info.setdefault("mediaType", media_info.get("type", "movie"))
        media = MediaRecord.from_manifest(info)

        updated = self.database.upsert_media(media_id, media.to_dict(), only_missing=True)
        if updated is not None:
            return updated
        self.database.put_media(media)
        return media

    def is_own_upload(self, link_id: str) -> bool:
        """True for content this node ingested itself (not a mirrored replica)."""
        link = self.links.get(link_id)
        if link is None or self.identity is None:
            return False
        return addresses_equal(link.hoster_address, self.identity.address)

    def delete_link(self, link_id: str) -> bool:
        """Unregister hosted content and remove its files."""
        link = self.unregister_link(link_id)
        if link is None:
            return False
        blob = Path(link.file_path)
        for path in (blob, blob.with_suffix(MANIFEST_SUFFIX), blob.with_suffix(KEY_SUFFIX)):
            if path.exists():
                path.unlink()
        return True

    # Votes

    def record_vote(self, entry_id: str, voter: str, value: int):
        return self.database.record_vote(entry_id, voter, value)

    # Catalog views

    def public_catalog(self) -> List[Dict[str, Any]]:
        """Summaries served at ``/catalog`` (hosted, non-ad content)."""
        return [link.summary() for link in self.links.values() if not link.is_ad]

    def _literal_endpoint(self, authority: str) -> str:
        base = (authority if "://" in authority else f"http://{authority}").rstrip("/")
        try:
            has_port = urlsplit(base).port is not None
        except ValueError:
            has_port = False
        return base if has_port else f"{base}:{self.default_port}"

    async def resolve_authority(self, authority: str) -> str:
        """
        Endpoint for an authority pointer.

        IP/localhost literals map directly; names and addresses go through
        the PeerDirectory, falling back to a literal (possibly dead) URL.
        """
        host = urlsplit(authority if "://" in authority else f"http://{authority}").hostname
        if is_ip_literal(host):
            return self._literal_endpoint(authority)

        if self.directory is not None:
            endpoint = await self.directory.resolve(authority)
            if endpoint:
                return endpoint.rstrip("/")

        return self._literal_endpoint(authority)

    async def resolved_catalog(self) -> List[Dict[str, Any]]:
        """Hosted plus remote content, preferring hosted on id collision."""
        local_endpoint = self.identity.endpoint if self.identity is not None else ""
        items = []
        for link in self.links.values():
            if link.is_ad:
                continue
            item = link.summary()
            item["url"] = f"{local_endpoint}/stream/{link.id}"
            item["isLocal"] = True
            items.append(item)

        seen = {item["id"] for item in items}
        for entry in self.database.list_entries():
            if entry.id in seen:
                continue
            endpoint = await self.resolve_authority(entry.authority)
            items.append({
                "id": entry.id,
                "title": entry.title,
                "mediaId": entry.media_id,
                "contentHash": entry.content_hash,
                "uploaderWallet": entry.uploader_wallet,
                "mediaType": entry.media_type,
                "season": entry.season,
                "episode": entry.episode,
                "trustScore": entry.trust_score,
                "upvotes": entry.upvotes,
                "downvotes": entry.downvotes,
                "metadata": entry.metadata,
                "url": f"{endpoint}/stream/{entry.id}",
                "isLocal": False,
            })
            seen.add(entry.id)

        return items

    # Housekeeping

    def cleanup_stale_uploads(self, max_age: float = TEMP_MAX_AGE, now: Optional[float] = None) -> int:
        """Delete staging files older than ``max_age`` seconds."""
        if self.temp_dir is None or not self.temp_dir.exists():
            return 0

        now = now if now is not None else time.time()
        removed = 0
        for path in self.temp_dir.iterdir():
            if not path.is_file():
                continue
            try:
                if now - path.stat().st_mtime > max_age:
                    path.unlink()
                    removed += 1
                    logger.info(f"Removed stale upload: {path.name}")
            except OSError as e:
                logger.warning(f"Failed to remove stale upload {path.name}: {e}")

        self.stats["stale_uploads_removed"] += removed
        return removed

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "hosted_links": len(self.links),
            "active_streams": sum(link.active_streams for link in self.links.values()),
        }
