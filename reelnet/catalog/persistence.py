"""
Catalog Database: durable catalog store using SQLite.

Holds the reconciled network catalog and the media this node knows about.
Rows are indexed by their lookup columns and carry the full record as a
msgpack blob.

Key Features:
- At most one catalog entry per (media_id, uploader_wallet)
- Upsert-only sync path (no delete on absence)
- One vote per (entry, voter); trust score derived from the vote tally
- Thread-safe operations
"""

import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional

import msgpack

from .models import CatalogEntry, MediaRecord, INITIAL_TRUST_SCORE


class CatalogDatabase:
    """
    Persistence collaborator for the catalog.

    The core treats it as an external key-value catalog: media upserts,
    entry lookups by (media, uploader) or (authority, media), and vote
    increments.
    """

    def __init__(self, db_path: str = "reelnet_catalog.db", enable_wal: bool = True):
        """
        Initialize catalog database.

        Args:
            db_path: Path to SQLite database file (":memory:" is not supported;
                use a temp file in tests)
            enable_wal: Enable Write-Ahead Logging for better concurrency
        """
        self.db_path = str(db_path)
        self._lock = RLock()

        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db(enable_wal)

    @contextmanager
    def _connection(self):
        conn = sqlite3.connect(self.db_path)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _init_db(self, enable_wal: bool) -> None:
        """Initialize SQLite database with schema."""
        with self._lock, self._connection() as conn:
            cursor = conn.cursor()

            if enable_wal:
                cursor.execute("PRAGMA journal_mode=WAL")

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS media (
                    media_id TEXT PRIMARY KEY,
                    data BLOB NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS catalog_entries (
                    entry_id TEXT PRIMARY KEY,
                    media_id TEXT NOT NULL,
                    uploader_wallet TEXT NOT NULL,
                    authority TEXT NOT NULL,
                    data BLOB NOT NULL,
                    updated_at REAL NOT NULL,
                    UNIQUE (media_id, uploader_wallet)
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_authority
                ON catalog_entries(authority, media_id)
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS votes (
                    entry_id TEXT NOT NULL,
                    voter TEXT NOT NULL,
                    value INTEGER NOT NULL,
                    voted_at REAL NOT NULL,
                    PRIMARY KEY (entry_id, voter)
                )
            """)

    # Media

    def put_media(self, media: MediaRecord) -> None:
        """Insert or replace a media record."""
        with self._lock, self._connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO media (media_id, data, updated_at) VALUES (?, ?, ?)",
                (media.media_id, msgpack.packb(media.to_dict()), time.time())
            )

    def get_media(self, media_id: str) -> Optional[MediaRecord]:
        with self._lock, self._connection() as conn:
            row = conn.execute("SELECT data FROM media WHERE media_id = ?", (media_id,)).fetchone()
        if row is None:
            return None
        return MediaRecord.from_dict(msgpack.unpackb(row[0]))

    def upsert_media(self, media_id: str, fields: Dict[str, Any], only_missing: bool = True) -> Optional[MediaRecord]:
        """
        Merge ``fields`` into a known media record.

        Args:
            media_id: Media to update (must already exist)
            fields: Attribute values to merge
            only_missing: Keep existing non-empty values

        Returns:
            Updated record, or None if the media is unknown
        """
        with self._lock:
            media = self.get_media(media_id)
            if media is None:
                return None
            for key, value in fields.items():
                if key not in MediaRecord.__dataclass_fields__ or key == "media_id":
                    continue
                if only_missing and getattr(media, key) not in (None, ""):
                    continue
                setattr(media, key, value)
            self.put_media(media)
            return media

    # Catalog entries

    def _write_entry(self, conn, entry: CatalogEntry) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO catalog_entries
            (entry_id, media_id, uploader_wallet, authority, data, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.media_id,
                entry.uploader_wallet,
                entry.authority,
                msgpack.packb(entry.to_dict()),
                entry.updated_at,
            )
        )

    def insert_entry(self, entry: CatalogEntry) -> bool:
        """
        Insert a new catalog entry.

        Returns:
            False if the id or the (media_id, uploader_wallet) pair is taken
        """
        with self._lock, self._connection() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO catalog_entries
                    (entry_id, media_id, uploader_wallet, authority, data, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.id,
                        entry.media_id,
                        entry.uploader_wallet,
                        entry.authority,
                        msgpack.packb(entry.to_dict()),
                        entry.updated_at,
                    )
                )
                return True
            except sqlite3.IntegrityError:
                return False

    def get_entry(self, entry_id: str) -> Optional[CatalogEntry]:
        with self._lock, self._connection() as conn:
            row = conn.execute(
                "SELECT data FROM catalog_entries WHERE entry_id = ?", (entry_id,)
            ).fetchone()
        return CatalogEntry.from_dict(msgpack.unpackb(row[0])) if row else None

    def find_entry(self, media_id: str, uploader_wallet: str) -> Optional[CatalogEntry]:
        with self._lock, self._connection() as conn:
            row = conn.execute(
                "SELECT data FROM catalog_entries WHERE media_id = ? AND uploader_wallet = ?",
                (media_id, uploader_wallet)
            ).fetchone()
        return CatalogEntry.from_dict(msgpack.unpackb(row[0])) if row else None

    def find_by_authority_and_content(self, authority: str, media_id: str) -> List[CatalogEntry]:
        with self._lock, self._connection() as conn:
            rows = conn.execute(
                "SELECT data FROM catalog_entries WHERE authority = ? AND media_id = ?",
                (authority, media_id)
            ).fetchall()
        return [CatalogEntry.from_dict(msgpack.unpackb(row[0])) for row in rows]

    def update_authority(self, entry_id: str, authority: str) -> Optional[CatalogEntry]:
        """Point an entry at a new authority; no other field changes."""
        with self._lock:
            entry = self.get_entry(entry_id)
            if entry is None:
                return None
            entry.authority = authority
            entry.updated_at = time.time()
            with self._connection() as conn:
                self._write_entry(conn, entry)
            return entry

    def list_entries(self) -> List[CatalogEntry]:
        with self._lock, self._connection() as conn:
            rows = conn.execute("SELECT data FROM catalog_entries ORDER BY updated_at DESC").fetchall()
        return [CatalogEntry.from_dict(msgpack.unpackb(row[0])) for row in rows]

    def delete_entry(self, entry_id: str) -> bool:
        """Explicit deletion (never used by sync)."""
        with self._lock, self._connection() as conn:
            cursor = conn.execute("DELETE FROM catalog_entries WHERE entry_id = ?", (entry_id,))
            conn.execute("DELETE FROM votes WHERE entry_id = ?", (entry_id,))
            return cursor.rowcount > 0

    def count_entries(self) -> int:
        with self._lock, self._connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM catalog_entries").fetchone()[0]

    # Votes

    def record_vote(self, entry_id: str, voter: str, value: int) -> Optional[CatalogEntry]:
        """
        Record ``voter``'s vote (+1 / -1) on an entry and refresh its scores.

        A voter's later vote replaces the earlier one.
        """
        if value not in (1, -1):
            raise ValueError(f"Vote must be +1 or -1, got {value}")

        with self._lock:
            entry = self.get_entry(entry_id)
            if entry is None:
                return None

            with self._connection() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO votes (entry_id, voter, value, voted_at) VALUES (?, ?, ?, ?)",
                    (entry_id, voter.lower(), value, time.time())
                )
                up, down = conn.execute(
                    """
                    SELECT
                        COALESCE(SUM(CASE WHEN value > 0 THEN 1 ELSE 0 END), 0),
                        COALESCE(SUM(CASE WHEN value < 0 THEN 1 ELSE 0 END), 0)
                    FROM votes WHERE entry_id = ?
                    """,
                    (entry_id,)
                ).fetchone()

                entry.upvotes = up
                entry.downvotes = down
                entry.trust_score = INITIAL_TRUST_SCORE + up - down
                entry.updated_at = time.time()
                self._write_entry(conn, entry)

            return entry
