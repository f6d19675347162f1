"""
Shared fixtures for ReelNet tests.

Network calls go through ``FakePeerClient``: GET/download URLs map to
canned JSON or bytes, POSTs are recorded.
"""

import time
from pathlib import Path

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from reelnet.blockchain import (
    AdManagerConnector,
    LinkRegistryConnector,
    NodeRegistryConnector,
    SubscriptionConnector,
)
from reelnet.catalog import CatalogDatabase, CatalogStore
from reelnet.identity import NodeIdentity
from reelnet.p2p import PeerDirectory


LOCAL_IP = "198.51.100.1"
PORT = 21746


class FakePeerClient:
    """In-memory stand-in for PeerClient."""

    def __init__(self):
        self.responses = {}
        self.blobs = {}
        self.posted = []
        self.requested = []
        self.post_ok = True

    async def get_json(self, url, timeout=None):
        self.requested.append(url)
        return self.responses.get(url)

    async def post_json(self, url, payload, timeout=None):
        self.posted.append((url, payload))
        return self.post_ok

    async def download(self, url, dest, timeout=None):
        self.requested.append(url)
        data = self.blobs.get(url)
        if data is None:
            return False
        Path(dest).parent.mkdir(parents=True, exist_ok=True)
        Path(dest).write_bytes(data)
        return True

    async def close(self):
        pass


class FakeLoadMonitor:
    def __init__(self, overloaded=False):
        self.overloaded = overloaded

    def is_overloaded(self):
        return self.overloaded


def remote_identity(ip, node_name=None, private_key=None):
    """Identity of a node on a documentation-range address (never local)."""
    return NodeIdentity(private_key=private_key, node_name=node_name, public_ip=ip, port=PORT)


def new_private_key():
    return "0x" + bytes(Account.create().key).hex()


def sign_digest(account, digest):
    """Personal-sign a raw 32-byte digest the way a wallet does."""
    signed = account.sign_message(encode_defunct(primitive=digest))
    return "0x" + bytes(signed.signature).hex()


@pytest.fixture
def identity():
    return NodeIdentity(public_ip=LOCAL_IP, port=PORT)


@pytest.fixture
def registry():
    connector = NodeRegistryConnector(mock_mode=True)
    connector.connect()
    return connector


@pytest.fixture
def ad_manager():
    connector = AdManagerConnector(mock_mode=True)
    connector.connect()
    return connector


@pytest.fixture
def subscriptions():
    connector = SubscriptionConnector(mock_mode=True)
    connector.connect()
    return connector


@pytest.fixture
def link_registry():
    connector = LinkRegistryConnector(mock_mode=True)
    connector.connect()
    return connector


@pytest.fixture
def client():
    return FakePeerClient()


@pytest.fixture
def directory(identity, client, registry, tmp_path):
    return PeerDirectory(identity, client, registry=registry, data_dir=tmp_path / "node")


@pytest.fixture
def database(tmp_path):
    return CatalogDatabase(str(tmp_path / "catalog.db"))


@pytest.fixture
def store(tmp_path, database, directory, identity):
    return CatalogStore(
        tmp_path / "links",
        tmp_path / "ads",
        database,
        directory=directory,
        identity=identity,
        temp_dir=tmp_path / "temp",
        default_port=PORT,
    )


@pytest.fixture
def sample_file(tmp_path):
    path = tmp_path / "source.mp4"
    path.write_bytes(bytes(range(256)) * 40 + b"tail")
    return path


@pytest.fixture
def hosted_link(store, sample_file):
    return store.ingest_file(sample_file, "Sample Film", media_id="tt0001")


@pytest.fixture
def now():
    return time.time()
