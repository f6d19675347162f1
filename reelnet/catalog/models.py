"""
Catalog data model.

- MediaRecord: local knowledge of a piece of media (chain-sourced skeleton
  plus optional rich metadata)
- CatalogEntry: one piece of content as known to the network; ``authority``
  is a peer identifier, resolved to an endpoint only at read time
- RegisteredLink: content hosted by this node (encrypted blob on disk)
"""

import time
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional


INITIAL_TRUST_SCORE = 10

# Rich fields a peer's sovereign manifest may fill in
HYDRATION_FIELDS = (
    "overview",
    "poster_path",
    "backdrop_path",
    "genre",
    "release_date",
    "extended_info",
)

_MANIFEST_KEYS = {
    "media_id": "mediaId",
    "media_type": "mediaType",
    "source_id": "sourceId",
    "poster_path": "posterPath",
    "backdrop_path": "backdropPath",
    "release_date": "releaseDate",
    "extended_info": "extendedInfo",
}


@dataclass
class MediaRecord:
    """Media known to this node, keyed by the cross-node media id."""

    media_id: str
    title: str = ""
    media_type: str = "movie"
    source: str = ""
    source_id: str = ""
    season: Optional[int] = None
    episode: Optional[int] = None
    overview: Optional[str] = None
    poster_path: Optional[str] = None
    backdrop_path: Optional[str] = None
    genre: Optional[str] = None
    release_date: Optional[str] = None
    extended_info: Optional[Dict[str, Any]] = None

    @property
    def needs_hydration(self) -> bool:
        return not self.overview or not self.poster_path

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MediaRecord":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def to_manifest(self) -> Dict[str, Any]:
        """Sovereign manifest served to peers (camelCase keys)."""
        return {_MANIFEST_KEYS.get(k, k): v for k, v in asdict(self).items()}

    @classmethod
    def from_manifest(cls, manifest: Dict[str, Any]) -> "MediaRecord":
        """
        Build a record from a sovereign manifest (camelCase keys).

        Raises:
            ValueError: If the manifest carries no mediaId
        """
        reverse = {v: k for k, v in _MANIFEST_KEYS.items()}
        known = {}
        for key, value in manifest.items():
            attr = reverse.get(key, key)
            if attr in cls.__dataclass_fields__ and value is not None:
                known[attr] = value
        if not known.get("media_id"):
            raise ValueError("Manifest has no mediaId")
        known["media_id"] = str(known["media_id"])
        return cls(**known)

    @staticmethod
    def manifest_fields(manifest: Dict[str, Any]) -> Dict[str, Any]:
        """Rich fields present in a peer manifest, keyed by attribute name."""
        reverse = {v: k for k, v in _MANIFEST_KEYS.items()}
        fields = {}
        for key, value in manifest.items():
            attr = reverse.get(key, key)
            if attr in HYDRATION_FIELDS and value not in (None, ""):
                fields[attr] = value
        return fields


@dataclass
class CatalogEntry:
    """Network catalog entry, unique per (media_id, uploader_wallet)."""

    id: str
    media_id: str
    uploader_wallet: str
    authority: str  # Peer name/address/IP currently hosting; never a resolved URL
    content_hash: str = ""
    title: str = ""
    trust_score: int = INITIAL_TRUST_SCORE
    upvotes: int = 0
    downvotes: int = 0
    media_type: str = "movie"
    season: Optional[int] = None
    episode: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CatalogEntry":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class RegisteredLink:
    """Locally hosted content."""

    id: str
    file_path: str
    metadata: Dict[str, Any]  # Sidecar manifest (without the key)
    active_streams: int = 0
    max_streams: int = 50
    decryption_key: Optional[str] = None
    is_ad: bool = False
    registered_at: float = field(default_factory=time.time)

    @property
    def title(self) -> str:
        return self.metadata.get("title", self.id)

    @property
    def media_id(self) -> Optional[str]:
        return self.metadata.get("mediaId")

    @property
    def hoster_address(self) -> Optional[str]:
        return self.metadata.get("hosterAddress")

    @property
    def content_hash(self) -> Optional[str]:
        return self.metadata.get("hash")

    @property
    def at_capacity(self) -> bool:
        return self.active_streams >= self.max_streams

    def summary(self) -> Dict[str, Any]:
        """Public catalog row (never includes the decryption key)."""
        media_info = self.metadata.get("mediaInfo") or {}
        return {
            "id": self.id,
            "title": self.title,
            "mediaId": self.media_id,
            "contentHash": self.content_hash,
            "uploaderWallet": self.hoster_address,
            "mediaType": media_info.get("type", "movie"),
            "season": media_info.get("season"),
            "episode": media_info.get("episode"),
            "size": self.metadata.get("size"),
            "activeStreams": self.active_streams,
            "metadata": media_info,
        }
