"""
Catalog Tests

Test Coverage:
- Catalog database: media upserts, unique entries, votes
- Catalog store: ingestion (content and ads), media records, link registry,
  stream counters, views
- Catalog sync: reconciliation, media discovery, authority updates, hydration
"""

import hashlib
import json
import os
import time

import pytest

from reelnet.catalog import CatalogEntry, CatalogStore, CatalogSync, MediaRecord
from reelnet.p2p import PeerRecord

from conftest import FakePeerClient


PEER_A = "http://203.0.113.5:21746"
PEER_B = "http://203.0.113.6:21746"


def entry(entry_id="e1", media_id="tt0001", uploader="0xUploader", authority="peer-a"):
    return CatalogEntry(id=entry_id, media_id=media_id, uploader_wallet=uploader, authority=authority)


class TestCatalogDatabase:
    """Test the persistence collaborator."""

    def test_media_upsert_only_missing(self, database):
        database.put_media(MediaRecord(media_id="tt0001", title="Film", overview="Kept"))

        updated = database.upsert_media("tt0001", {"overview": "Replaced", "genre": "Drama", "bogus": 1})

        assert updated.overview == "Kept"
        assert updated.genre == "Drama"
        assert database.upsert_media("unknown", {"genre": "x"}) is None

    def test_one_entry_per_media_and_uploader(self, database):
        assert database.insert_entry(entry("e1"))
        assert not database.insert_entry(entry("e2"))
        assert database.insert_entry(entry("e3", uploader="0xOther"))
        assert database.count_entries() == 2

    def test_votes(self, database):
        database.insert_entry(entry("e1"))

        database.record_vote("e1", "0xAAA", 1)
        again = database.record_vote("e1", "0xaaa", 1)
        assert (again.upvotes, again.downvotes, again.trust_score) == (1, 0, 11)

        flipped = database.record_vote("e1", "0xBBB", -1)
        assert (flipped.upvotes, flipped.downvotes, flipped.trust_score) == (1, 1, 10)

        assert database.record_vote("missing", "0xAAA", 1) is None
        with pytest.raises(ValueError):
            database.record_vote("e1", "0xAAA", 2)

    def test_update_authority_changes_nothing_else(self, database):
        database.insert_entry(entry("e1"))
        database.record_vote("e1", "0xAAA", 1)

        moved = database.update_authority("e1", "peer-b")

        assert moved.authority == "peer-b"
        assert moved.trust_score == 11
        assert database.find_by_authority_and_content("peer-b", "tt0001")[0].id == "e1"
        assert database.find_by_authority_and_content("peer-a", "tt0001") == []


class TestCatalogStore:
    """Test hosted content handling."""

    def test_ingest_writes_blob_manifest_and_key(self, store, sample_file, hosted_link):
        blob = store.links_dir / f"{hosted_link.id}.enc"
        manifest = json.loads(blob.with_suffix(".json").read_text())
        key = blob.with_suffix(".key").read_text()

        assert "key" not in manifest
        assert manifest["hash"] == "0x" + hashlib.sha256(sample_file.read_bytes()).hexdigest()
        assert manifest["size"] == sample_file.stat().st_size
        assert manifest["mediaId"] == "tt0001"
        assert manifest["hosterAddress"] == store.identity.address
        assert manifest["publicEndpoint"].endswith(f"/stream/{hosted_link.id}/stream")

        decrypted = store.cipher.decrypt_bytes(blob.read_bytes(), key, manifest["iv"])
        assert decrypted == sample_file.read_bytes()

    def test_register_missing_file(self, store, tmp_path):
        assert store.register_link("ghost", tmp_path / "ghost.enc", {}) is None
        assert store.get_link("ghost") is None

    def test_stream_counters(self, store, hosted_link):
        hosted_link.max_streams = 1

        assert store.acquire_stream(hosted_link.id)
        assert not store.acquire_stream(hosted_link.id)
        assert not store.acquire_stream("unknown")

        store.release_stream(hosted_link.id)
        store.release_stream(hosted_link.id)
        assert hosted_link.active_streams == 0

    def test_reregister_keeps_stream_count(self, store, hosted_link):
        store.acquire_stream(hosted_link.id)
        again = store.register_link(hosted_link.id, hosted_link.file_path, hosted_link.metadata)
        assert again.active_streams == 1

    def test_load_existing_links(self, store, hosted_link, database, tmp_path):
        ad_blob = store.ads_dir / "ad1.enc"
        store.ads_dir.mkdir(parents=True, exist_ok=True)
        ad_blob.write_bytes(b"encrypted ad")
        ad_blob.with_suffix(".json").write_text(json.dumps({"id": "ad1", "title": "Ad"}))
        (store.ads_dir / "orphan.enc").write_bytes(b"no manifest")

        fresh = CatalogStore(store.links_dir, store.ads_dir, database)

        assert fresh.load_existing_links() == 2
        assert fresh.get_link(hosted_link.id).decryption_key == hosted_link.decryption_key
        assert fresh.get_link("ad1").is_ad
        assert fresh.get_link("orphan") is None

    def test_public_catalog_excludes_ads_and_keys(self, store, hosted_link):
        ad_blob = store.ads_dir / "ad1.enc"
        store.ads_dir.mkdir(parents=True, exist_ok=True)
        ad_blob.write_bytes(b"x")
        store.register_link("ad1", ad_blob, {"id": "ad1"}, key="00" * 32, is_ad=True)

        catalog = store.public_catalog()

        assert [item["id"] for item in catalog] == [hosted_link.id]
        assert hosted_link.decryption_key not in json.dumps(catalog)

    def test_delete_link(self, store, hosted_link):
        blob = store.links_dir / f"{hosted_link.id}.enc"

        assert store.delete_link(hosted_link.id)
        assert not blob.exists()
        assert not blob.with_suffix(".key").exists()
        assert not store.delete_link(hosted_link.id)

    @pytest.mark.asyncio
    async def test_resolved_catalog(self, store, hosted_link, database, directory):
        directory.upsert(PeerRecord(name="peer-a", endpoint=PEER_A))
        database.insert_entry(entry("remote-named", authority="peer-a"))
        database.insert_entry(entry("remote-ip", uploader="0x2", authority="203.0.113.7"))
        database.insert_entry(entry("remote-dead", uploader="0x3", authority="ghost"))
        database.insert_entry(entry(hosted_link.id, uploader="0x4", authority="peer-a"))

        items = {item["id"]: item for item in await store.resolved_catalog()}

        assert items[hosted_link.id]["isLocal"]
        assert items[hosted_link.id]["url"] == f"{store.identity.endpoint}/stream/{hosted_link.id}"
        assert items["remote-named"]["url"] == f"{PEER_A}/stream/remote-named"
        assert items["remote-ip"]["url"] == "http://203.0.113.7:21746/stream/remote-ip"
        assert items["remote-dead"]["url"] == "http://ghost:21746/stream/remote-dead"
        assert len(items) == 4

    def test_ingest_records_media(self, store, database, hosted_link):
        media = database.get_media("tt0001")

        assert media.title == "Sample Film"
        assert media.media_type == "movie"

    def test_ingest_keeps_richer_media_record(self, store, database, sample_file):
        database.put_media(MediaRecord(media_id="tt0005", title="Known Title", overview="Known"))

        store.ingest_file(sample_file, "Upload Title", media_id="tt0005", media_info={"overview": "Other"})

        media = database.get_media("tt0005")
        assert media.title == "Known Title"
        assert media.overview == "Known"

    def test_ingest_ad(self, store, database, sample_file):
        ad = store.ingest_file(sample_file, "Ad Spot", is_ad=True)

        assert ad.is_ad
        assert (store.ads_dir / f"{ad.id}.enc").exists()
        assert (store.ads_dir / f"{ad.id}.key").read_text() == ad.decryption_key
        assert not (store.links_dir / f"{ad.id}.enc").exists()
        assert store.public_catalog() == []

        reloaded = CatalogStore(store.links_dir, store.ads_dir, database)
        reloaded.load_existing_links()
        assert reloaded.get_link(ad.id).is_ad

    def test_is_own_upload(self, store, hosted_link, tmp_path):
        replica = tmp_path / "replica.enc"
        replica.write_bytes(b"x")
        store.register_link("replica", replica, {"hosterAddress": "0x" + "cd" * 20}, is_ad=True)

        assert store.is_own_upload(hosted_link.id)
        assert not store.is_own_upload("replica")
        assert not store.is_own_upload("unknown")

    def test_cleanup_stale_uploads(self, store):
        store.temp_dir.mkdir(parents=True, exist_ok=True)
        old = store.temp_dir / "old.part"
        new = store.temp_dir / "new.part"
        old.write_bytes(b"x")
        new.write_bytes(b"y")
        os.utime(old, (time.time() - 3 * 86400, time.time() - 3 * 86400))

        assert store.cleanup_stale_uploads(max_age=86400) == 1
        assert not old.exists()
        assert new.exists()


class TestCatalogSync:
    """Test reconciliation against peer catalogs."""

    @pytest.fixture
    def peers(self, directory):
        directory.upsert(PeerRecord(name="peer-a", endpoint=PEER_A, wallet_address="0x" + "aa" * 20))
        return directory

    @pytest.fixture
    def sync(self, database, peers, client):
        database.put_media(MediaRecord(media_id="tt0001", title="Film", overview="Known", poster_path="/p.jpg"))
        return CatalogSync(database, peers, client)

    def item(self, **overrides):
        data = {"id": "link1", "mediaId": "tt0001", "uploaderWallet": "0xUploader", "title": "Film"}
        data.update(overrides)
        return data

    @pytest.mark.asyncio
    async def test_creates_entry_for_known_media(self, sync, client, database):
        client.responses[f"{PEER_A}/catalog"] = [self.item()]

        assert await sync.sync_once(discover=False) == 1

        created = database.get_entry("link1")
        assert created.authority == "peer-a"
        assert created.uploader_wallet == "0xUploader"
        assert created.trust_score == 10

    @pytest.mark.asyncio
    async def test_skips_items_without_known_media(self, sync, client, database):
        client.responses[f"{PEER_A}/catalog"] = [
            self.item(mediaId=None),
            self.item(id="link2", mediaId="tt9999"),
            "garbage",
        ]

        assert await sync.sync_once(discover=False) == 0
        assert database.count_entries() == 0
        assert database.get_media("tt9999") is None

    @pytest.mark.asyncio
    async def test_discovers_unknown_media_from_manifest(self, sync, client, database):
        client.responses[f"{PEER_A}/catalog"] = [self.item(id="link2", mediaId="tt0042", title=None)]
        client.responses[f"{PEER_A}/media/tt0042/manifest"] = {
            "mediaId": "tt0042",
            "title": "Peer Film",
            "overview": "Found on a peer",
            "mediaType": "movie",
        }

        assert await sync.sync_once(discover=False) == 1

        media = database.get_media("tt0042")
        assert media.title == "Peer Film"
        assert media.overview == "Found on a peer"
        created = database.get_entry("link2")
        assert created.media_id == "tt0042"
        assert created.title == "[P2P] Peer Film"
        assert sync.stats["media_discovered"] == 1

    @pytest.mark.asyncio
    async def test_mismatched_manifest_ignored(self, sync, client, database):
        client.responses[f"{PEER_A}/catalog"] = [self.item(id="link2", mediaId="tt0042")]
        client.responses[f"{PEER_A}/media/tt0042/manifest"] = {"mediaId": "tt0043", "title": "Other"}

        assert await sync.sync_once(discover=False) == 0
        assert database.get_media("tt0042") is None
        assert database.get_media("tt0043") is None
        assert sync.stats["items_skipped"] == 1

    @pytest.mark.asyncio
    async def test_repeat_sync_is_stable(self, sync, client, database):
        client.responses[f"{PEER_A}/catalog"] = [self.item()]

        await sync.sync_once(discover=False)
        assert await sync.sync_once(discover=False) == 0
        assert database.count_entries() == 1

    @pytest.mark.asyncio
    async def test_absence_is_not_deletion(self, sync, client, database):
        client.responses[f"{PEER_A}/catalog"] = [self.item()]
        await sync.sync_once(discover=False)

        client.responses[f"{PEER_A}/catalog"] = []
        await sync.sync_once(discover=False)

        assert database.get_entry("link1") is not None

    @pytest.mark.asyncio
    async def test_authority_moves_to_new_host(self, sync, client, database, peers):
        client.responses[f"{PEER_A}/catalog"] = [self.item()]
        await sync.sync_once(discover=False)
        database.record_vote("link1", "0xVoter", 1)

        peer_b = PeerRecord(name="peer-b", endpoint=PEER_B)
        moved = await sync.process_item(self.item(id="different-link-id"), peer_b)

        assert moved.id == "link1"
        assert moved.authority == "peer-b"
        assert moved.trust_score == 11
        assert database.count_entries() == 1

    @pytest.mark.asyncio
    async def test_entry_id_falls_back_on_collision(self, sync, database, peers):
        database.insert_entry(entry("link1", media_id="tt0001", uploader="0xSomeoneElse"))

        created = await sync.process_item(self.item(), peers.get("peer-a"))

        assert created.id == "peer-a_tt0001"

    @pytest.mark.asyncio
    async def test_uploader_defaults_to_peer_wallet(self, sync, peers):
        created = await sync.process_item(self.item(uploaderWallet=None), peers.get("peer-a"))
        assert created.uploader_wallet == "0x" + "aa" * 20

    @pytest.mark.asyncio
    async def test_unreachable_peer(self, sync, client):
        assert await sync.sync_once(discover=False) == 0
        assert sync.stats["peers_failed"] == 1

    @pytest.mark.asyncio
    async def test_overlapping_cycle_skipped(self, sync):
        sync._syncing = True
        assert await sync.sync_once(discover=False) == 0
        assert sync.stats["cycles_skipped"] == 1

    @pytest.mark.asyncio
    async def test_hydrates_missing_metadata(self, database, peers, client):
        database.put_media(MediaRecord(media_id="tt0002", title="Sparse"))
        client.responses[f"{PEER_A}/media/tt0002/manifest"] = {
            "mediaId": "tt0002",
            "title": "Peer Title",
            "overview": "A film",
            "posterPath": "/poster.jpg",
            "releaseDate": "2024-01-01",
        }
        sync = CatalogSync(database, peers, client)

        await sync.process_item(self.item(mediaId="tt0002"), peers.get("peer-a"))

        media = database.get_media("tt0002")
        assert media.overview == "A film"
        assert media.poster_path == "/poster.jpg"
        assert media.release_date == "2024-01-01"
        assert media.title == "Sparse"

    @pytest.mark.asyncio
    async def test_hydrate_images(self, database, peers, tmp_path):
        client = FakePeerClient()
        client.blobs[f"{PEER_A}/catalog/poster/src1"] = b"jpeg"
        sync = CatalogSync(database, peers, client, posters_dir=tmp_path / "posters",
                           backdrops_dir=tmp_path / "backdrops")
        media = MediaRecord(media_id="tt0003", source_id="src1")

        assert await sync.hydrate_images(peers.get("peer-a"), media) == 1
        assert (tmp_path / "posters" / "src1.jpg").read_bytes() == b"jpeg"
        assert not (tmp_path / "backdrops" / "src1.jpg").exists()

        # Cached images are not fetched again
        assert await sync.hydrate_images(peers.get("peer-a"), media) == 0
