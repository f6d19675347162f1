"""
Peer Directory Tests

Test Coverage:
- Signature-gated ingestion (address names, registry names, anonymous labels)
- Trailing-slash endpoints re-gossiped to a second hop
- Registry outage: registry names rejected, known peers left intact
- Idempotent upsert and self-purge
- Resolution through the table and the registry
- Registry bootstrap, trackers and snapshots
"""

import json
import time

import pytest

from reelnet.blockchain import NodeRegistryConnector, RegistryUnavailable
from reelnet.identity import node_message
from reelnet.p2p import PeerDirectory, PeerRecord

from conftest import remote_identity, new_private_key


class TestIngestion:
    """Test signed entry admission."""

    @pytest.mark.asyncio
    async def test_accepts_signed_entry(self, directory):
        remote = remote_identity("203.0.113.5")

        accepted = await directory.ingest([remote.signed_record(time.time())])

        assert accepted == 1
        record = directory.get(remote.address)
        assert record.endpoint == remote.endpoint
        assert record.wallet_address == remote.address
        assert record.is_trusted

    @pytest.mark.asyncio
    async def test_ingest_is_idempotent(self, directory):
        remote = remote_identity("203.0.113.5")
        entry = remote.signed_record(time.time())

        await directory.ingest([entry])
        before = directory.get(remote.address).to_dict()
        await directory.ingest([entry])

        assert len(directory) == 1
        assert directory.get(remote.address).to_dict() == before

    @pytest.mark.asyncio
    async def test_rejects_tampered_endpoint(self, directory):
        remote = remote_identity("203.0.113.5")
        entry = remote.signed_record(time.time())
        entry["endpoint"] = "http://203.0.113.66:21746"

        assert await directory.ingest([entry]) == 0
        assert len(directory) == 0
        assert directory.stats["entries_rejected"] == 1

    @pytest.mark.asyncio
    async def test_rejects_unsigned_and_malformed(self, directory):
        entries = [
            {"name": "loner", "endpoint": "http://203.0.113.8:21746"},
            {"name": 42, "endpoint": "http://203.0.113.8:21746", "signature": "0x00"},
            "not-a-dict",
        ]
        assert await directory.ingest(entries) == 0
        assert len(directory) == 0

    @pytest.mark.asyncio
    async def test_rejects_address_name_signed_by_other_key(self, directory):
        victim = remote_identity("203.0.113.5")
        impostor = remote_identity("203.0.113.6")
        endpoint = "http://203.0.113.6:21746"
        entry = {
            "name": victim.address,
            "endpoint": endpoint,
            "signature": impostor.sign_message(node_message(victim.address, endpoint)),
        }

        assert await directory.ingest([entry]) == 0

    @pytest.mark.asyncio
    async def test_registered_name_must_match_registry_address(self, directory, registry):
        key = new_private_key()
        owner = remote_identity("203.0.113.5", node_name="salsa.reel", private_key=key)
        impostor = remote_identity("203.0.113.5", node_name="salsa.reel")
        registry.register_node("salsa.reel", owner.address, "203.0.113.5:21746")

        assert await directory.ingest([impostor.signed_record(time.time())]) == 0
        assert await directory.ingest([owner.signed_record(time.time())]) == 1
        assert directory.get("salsa.reel").wallet_address == owner.address

    @pytest.mark.asyncio
    async def test_inactive_registry_entry_rejected(self, directory, registry):
        owner = remote_identity("203.0.113.5", node_name="tacos.reel")
        registry.register_node("tacos.reel", owner.address, "203.0.113.5:21746", active=False)

        assert await directory.ingest([owner.signed_record(time.time())]) == 0

    @pytest.mark.asyncio
    async def test_anonymous_label_accepted(self, directory):
        remote = remote_identity("203.0.113.5", node_name="couch-node")

        assert await directory.ingest([remote.signed_record(time.time())]) == 1
        assert directory.get("couch-node").wallet_address == remote.address

    @pytest.mark.asyncio
    async def test_trailing_slash_endpoint_survives_regossip(self, directory, identity, client):
        remote = remote_identity("203.0.113.5", node_name="slash-node")
        endpoint = "http://203.0.113.5:21746/"
        entry = {
            "name": "slash-node",
            "endpoint": endpoint,
            "signature": remote.sign_message(node_message("slash-node", endpoint)),
        }

        assert await directory.ingest([entry]) == 1
        stored = directory.get("slash-node")
        assert stored.endpoint == "http://203.0.113.5:21746"

        next_hop = PeerDirectory(remote_identity("203.0.113.8"), client)
        assert await next_hop.ingest([stored.to_dict()]) == 1
        assert next_hop.get("slash-node").wallet_address == remote.address


class TestSelfRecords:
    """Test that the local node never appears in its own table."""

    @pytest.mark.asyncio
    async def test_own_record_not_ingested(self, directory, identity):
        assert await directory.ingest([identity.signed_record(time.time())]) == 0
        assert len(directory) == 0

    def test_upsert_of_self_endpoint_refused(self, directory, identity):
        assert not directory.upsert(PeerRecord(name="alias", endpoint=identity.endpoint))
        assert "alias" not in directory

    def test_purge_self(self, directory, identity):
        directory.peers["alias"] = PeerRecord(name="alias", endpoint=identity.endpoint)
        directory.peers["other"] = PeerRecord(name="other", endpoint="http://203.0.113.9:21746")

        assert directory.purge_self() == 1
        assert list(directory.peers) == ["other"]

    def test_same_host_other_port_is_not_self(self, directory, identity):
        assert directory.upsert(PeerRecord(name="neighbour", endpoint=f"http://{identity.public_ip}:9999"))


class TestMerge:
    """Test upsert merge rules."""

    def test_keeps_latest_last_seen_and_takes_new_endpoint(self, directory):
        directory.upsert(PeerRecord(name="p", endpoint="http://203.0.113.5:21746", last_seen=1000))
        directory.upsert(PeerRecord(name="p", endpoint="http://203.0.113.7:21746", last_seen=500))

        record = directory.get("p")
        assert record.endpoint == "http://203.0.113.7:21746"
        assert record.last_seen == 1000

    def test_future_last_seen_clamped(self, directory):
        directory.upsert(PeerRecord(name="p", endpoint="http://203.0.113.5:21746", last_seen=time.time() + 10000))
        assert directory.get("p").last_seen <= time.time()


class TestResolution:
    """Test identifier resolution."""

    @pytest.mark.asyncio
    async def test_resolves_known_name_and_wallet(self, directory):
        remote = remote_identity("203.0.113.5")
        await directory.ingest([remote.signed_record(time.time())])

        assert await directory.resolve(remote.address) == remote.endpoint
        directory.upsert(PeerRecord(name="named", endpoint="http://203.0.113.9:21746",
                                    wallet_address="0x" + "ab" * 20))
        assert await directory.resolve("0x" + "AB" * 20) == "http://203.0.113.9:21746"

    @pytest.mark.asyncio
    async def test_registry_fallback(self, directory, registry):
        registry.register_node("tacos", "0x" + "11" * 20, "203.0.113.9:21746")
        registry.register_node("stale", "0x" + "22" * 20, "203.0.113.10:21746", active=False)
        registry.register_node("expired", "0x" + "33" * 20, "203.0.113.11:21746", expires_at=1)

        assert await directory.resolve("tacos") == "http://203.0.113.9:21746"
        assert await directory.resolve("stale") is None
        assert await directory.resolve("expired") is None
        assert await directory.resolve("nobody") is None
        assert await directory.resolve("") is None


class TestDiscovery:
    """Test registry bootstrap and tracker pulls."""

    @pytest.mark.asyncio
    async def test_bootstrap_from_registry(self, directory, registry):
        registry.register_node("alpha.reel", "0x" + "11" * 20, "203.0.113.21:21746")
        registry.register_node("beta.reel", "0x" + "22" * 20, "203.0.113.22:21746")

        assert await directory.bootstrap_from_registry() == 2
        assert directory.get("alpha").source == "registry"
        assert directory.get("beta").is_trusted
        assert await directory.bootstrap_from_registry() == 0

    @pytest.mark.asyncio
    async def test_bootstrap_skips_self(self, directory, registry, identity):
        registry.register_node("me.reel", identity.address, f"{identity.public_ip}:{identity.port}")
        assert await directory.bootstrap_from_registry() == 0

    @pytest.mark.asyncio
    async def test_tracker_pull(self, directory, client):
        first = remote_identity("203.0.113.5")
        second = remote_identity("203.0.113.6")
        forged = second.signed_record(time.time())
        forged["endpoint"] = "http://203.0.113.99:21746"
        directory.add_tracker("http://tracker.example/")
        directory.add_tracker("http://tracker2.example")
        client.responses["http://tracker.example/peers"] = [first.signed_record(time.time()), forged]
        client.responses["http://tracker2.example/peers"] = {"peers": [second.signed_record(time.time())]}

        assert await directory.discover_from_trackers() == 2
        assert directory.get(first.address).source == "tracker"
        assert directory.get(second.address).endpoint == second.endpoint

    @pytest.mark.asyncio
    async def test_connect_by_url(self, directory, client):
        remote = remote_identity("203.0.113.5")
        client.responses[f"{remote.endpoint}/peers"] = [remote.signed_record(time.time())]

        record = await directory.connect("203.0.113.5:21746")

        assert record is not None
        assert record.name == remote.address
        assert record.is_trusted

    @pytest.mark.asyncio
    async def test_connect_unresolvable_name(self, directory):
        assert await directory.connect("ghost") is None


class TestPersistence:
    """Test peers.json and trackers.json snapshots."""

    @pytest.mark.asyncio
    async def test_snapshot_round_trip(self, directory, identity, client, registry):
        remote = remote_identity("203.0.113.5")
        await directory.ingest([remote.signed_record(time.time())])
        directory.save_peers()

        restored = PeerDirectory(identity, client, registry=registry, data_dir=directory.data_dir)
        restored.load()

        assert restored.get(remote.address).endpoint == remote.endpoint
        assert restored.get(remote.address).is_trusted

    def test_trackers_persisted(self, directory):
        assert directory.add_tracker("http://tracker.example/")
        assert not directory.add_tracker("http://tracker.example")

        saved = json.loads((directory.data_dir / "trackers.json").read_text())
        assert saved == ["http://tracker.example"]

        assert directory.remove_tracker("http://tracker.example")
        assert not directory.remove_tracker("http://tracker.example")

    def test_export_includes_signed_self(self, directory, identity):
        directory.upsert(PeerRecord(name="p", endpoint="http://203.0.113.5:21746"))

        exported = directory.export_peers()

        assert exported[0]["name"] == "p"
        assert exported[-1]["name"] == identity.identifier
        assert exported[-1]["signature"]


class _TimedOutCall:
    def call(self):
        raise RuntimeError("rpc timeout")


class _UnreachableFunctions:
    def getNode(self, key):
        return _TimedOutCall()


class UnreachableRegistryContract:
    """Contract binding whose every call times out."""

    functions = _UnreachableFunctions()


@pytest.fixture
def unreachable_registry():
    connector = NodeRegistryConnector(
        rpc_url="http://127.0.0.1:8545",
        contract_address="0x" + "22" * 20,
        mock_mode=False,
    )
    connector.contract = UnreachableRegistryContract()
    return connector


class TestRegistryOutage:
    """Test that registry names cannot be claimed while the registry is unreachable."""

    @pytest.mark.asyncio
    async def test_lookup_failure_raises(self, unreachable_registry):
        with pytest.raises(RegistryUnavailable):
            await unreachable_registry.get_node("alice")

    @pytest.mark.asyncio
    async def test_known_peer_not_hijacked(self, identity, client, unreachable_registry):
        directory = PeerDirectory(identity, client, registry=unreachable_registry)
        alice = remote_identity("203.0.113.5", node_name="alice")
        directory.upsert(PeerRecord(
            name="alice",
            endpoint=alice.endpoint,
            wallet_address=alice.address,
            is_trusted=True,
            source="registry",
        ))

        attacker = remote_identity("203.0.113.66")
        evil = "http://203.0.113.66:21746"
        forged = {
            "name": "alice",
            "endpoint": evil,
            "signature": attacker.sign_message(node_message("alice", evil)),
            "lastSeen": time.time(),
        }

        assert await directory.ingest([forged]) == 0
        record = directory.get("alice")
        assert record.endpoint == alice.endpoint
        assert record.wallet_address == alice.address
        assert directory.stats["entries_rejected"] == 1

    @pytest.mark.asyncio
    async def test_unknown_registry_name_rejected(self, identity, client, unreachable_registry):
        directory = PeerDirectory(identity, client, registry=unreachable_registry)
        claimant = remote_identity("203.0.113.66", node_name="bob.reel")

        assert await directory.ingest([claimant.signed_record(time.time())]) == 0
        assert "bob.reel" not in directory

    @pytest.mark.asyncio
    async def test_address_named_peer_still_accepted(self, identity, client, unreachable_registry):
        directory = PeerDirectory(identity, client, registry=unreachable_registry)
        remote = remote_identity("203.0.113.5")

        assert await directory.ingest([remote.signed_record(time.time())]) == 1

    @pytest.mark.asyncio
    async def test_resolve_returns_none(self, identity, client, unreachable_registry):
        directory = PeerDirectory(identity, client, registry=unreachable_registry)

        assert await directory.resolve("bob.reel") is None
