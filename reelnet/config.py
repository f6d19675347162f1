"""
Node configuration.

Every tunable of a ReelNet node lives on ``NodeConfig``. Values come from
keyword arguments or from ``REELNET_*`` environment variables.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


ENV_PREFIX = "REELNET_"


class NodeConfig(BaseModel):
    """ReelNet node configuration."""

    # Identity
    node_name: Optional[str] = Field(
        default=None,
        description="Registry name of this node (e.g. 'salsa.reel'); address is used when unset"
    )
    public_ip: Optional[str] = Field(default=None, description="Publicly reachable IP or hostname")
    port: int = Field(default=21746, description="Peer HTTP port")
    region: str = Field(default="GLOBAL", description="Region code used for replica affinity")
    private_key: Optional[str] = Field(
        default=None,
        description="Hex node signing key; generated into data_dir when unset"
    )
    owner_wallets: List[str] = Field(
        default_factory=list,
        description="Wallets treated as local owners/admins for playback"
    )

    # Storage
    data_dir: Path = Field(default=Path("./reelnet_data"), description="Node data directory")

    # Chain collaborators
    rpc_url: Optional[str] = Field(default=None, description="EVM JSON-RPC endpoint")
    node_registry_address: Optional[str] = Field(default=None, description="Node registry contract")
    ad_manager_address: Optional[str] = Field(default=None, description="Ad manager contract")
    subscriptions_address: Optional[str] = Field(default=None, description="Subscriptions contract")
    link_registry_address: Optional[str] = Field(default=None, description="Link registry contract")
    chain_id: int = Field(default=1, description="Chain id bound into premium proofs")
    mock_chain: bool = Field(default=True, description="Run chain connectors in mock mode")

    # Discovery & gossip
    trackers: List[str] = Field(default_factory=list, description="Initial tracker URLs")
    bootstrap_limit: int = Field(default=20, description="Registry bootstrap list size")
    gossip_interval: float = Field(default=60.0, gt=0, description="Seconds between gossip rounds")
    gossip_fanout: int = Field(default=3, ge=1, description="Gossip targets per round")
    gossip_sample: int = Field(default=10, ge=0, description="Known peers included per payload")
    heartbeat_interval: float = Field(default=30.0, gt=0, description="Seconds between tracker announces")
    peer_timeout: float = Field(default=5.0, gt=0, description="Timeout for peer calls (seconds)")
    download_timeout: float = Field(default=60.0, gt=0, description="Timeout for byte downloads")
    max_concurrent_pushes: int = Field(default=8, ge=1, description="Concurrent outbound pushes")

    # Catalog
    catalog_sync_interval: float = Field(default=300.0, gt=0, description="Seconds between catalog syncs")
    catalog_sync_peers: int = Field(default=5, ge=1, description="Peers pulled per catalog sync")
    temp_gc_interval: float = Field(default=3600.0, gt=0, description="Seconds between stale upload sweeps")
    temp_max_age: float = Field(default=86400.0, gt=0, description="Stale upload age (seconds)")

    # Replication
    metadata_replication_rate: float = Field(default=0.35, gt=0, le=1)
    data_replication_rate: float = Field(default=0.10, gt=0, le=1)
    disk_threshold: float = Field(default=0.70, gt=0, le=1, description="Max disk utilisation for byte replicas")
    replication_poll_interval: float = Field(default=7200.0, gt=0)
    replication_block_window: int = Field(default=5000, ge=1)
    replication_startup_scan: int = Field(default=50, ge=0)
    gc_interval: float = Field(default=86400.0, gt=0, description="Seconds between replica GC runs")
    replica_retention_days: float = Field(default=30.0, gt=0)

    # Streaming
    global_max_streams: int = Field(default=50, ge=1, description="Concurrent sessions per link")
    min_free_ram_mb: int = Field(default=500, ge=0)
    load_factor: float = Field(default=0.8, gt=0, description="Load average ceiling per CPU")
    session_hours: float = Field(default=4.0, gt=0)
    ad_candidates: int = Field(default=3, ge=1)
    session_idle_grace: float = Field(
        default=120.0, ge=0,
        description="Seconds a session keeps its slot after its last stream connection closes (0 releases at disconnect)"
    )

    @field_validator("region")
    @classmethod
    def _upper_region(cls, value: str) -> str:
        return (value or "GLOBAL").upper()

    @field_validator("trackers", "owner_wallets", mode="before")
    @classmethod
    def _split_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return value

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX, **overrides) -> "NodeConfig":
        """Build config from ``<prefix><FIELD>`` environment variables."""
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.environ.get(f"{prefix}{name.upper()}")
            if raw is not None:
                values[name] = raw
        values.update(overrides)
        return cls(**values)

    # Derived locations

    @property
    def endpoint(self) -> str:
        return f"http://{self.public_ip or 'localhost'}:{self.port}"

    @property
    def links_dir(self) -> Path:
        return self.data_dir / "links"

    @property
    def ads_dir(self) -> Path:
        return self.data_dir / "ads"

    @property
    def temp_dir(self) -> Path:
        return self.data_dir / "temp"

    @property
    def proofs_dir(self) -> Path:
        return self.data_dir / "proofs"

    @property
    def posters_dir(self) -> Path:
        return self.data_dir / "posters"

    @property
    def backdrops_dir(self) -> Path:
        return self.data_dir / "backdrops"

    @property
    def catalog_db_path(self) -> Path:
        return self.data_dir / "catalog.db"

    def ensure_dirs(self) -> None:
        """Create the data directory tree."""
        for path in (
            self.data_dir,
            self.links_dir,
            self.ads_dir,
            self.temp_dir,
            self.proofs_dir,
            self.posters_dir,
            self.backdrops_dir,
        ):
            path.mkdir(parents=True, exist_ok=True)
