"""
Replica Garbage Collection
Age-based cleanup of cached ad replicas
"""

import logging
import time
from pathlib import Path
from typing import Callable, Dict, Optional

from .scheduler import SYNC_STATE_FILENAME

logger = logging.getLogger(__name__)


RETENTION_DAYS = 30


class ReplicaGarbageCollector:
    """
    Manages replica lifecycle
    - Deletes replicas (manifest + bytes + key) older than the retention window
    - Unregisters deleted replicas from the catalog store
    - Optional ``exempt(link_id)`` predicate spares selected replicas
    """

    def __init__(
        self,
        ads_dir: Path,
        store=None,
        retention_days: float = RETENTION_DAYS,
        exempt: Optional[Callable[[str], bool]] = None
    ):
        self.ads_dir = Path(ads_dir)
        self.store = store
        self.retention_days = retention_days
        self.exempt = exempt
        self.stats = {"runs": 0, "replicas_deleted": 0, "replicas_exempted": 0}

    async def run_gc(self, now: Optional[float] = None) -> int:
        """
        Run garbage collection cycle
        Deletes replicas whose manifest is older than the retention window
        """
        if not self.ads_dir.exists():
            return 0

        now = now if now is not None else time.time()
        max_age = self.retention_days * 24 * 60 * 60
        deleted = 0

        for manifest in self.ads_dir.glob("*.json"):
            if manifest.name == SYNC_STATE_FILENAME:
                continue
            link_id = manifest.stem
            try:
                if now - manifest.stat().st_mtime <= max_age:
                    continue
                if self.exempt is not None and self.exempt(link_id):
                    self.stats["replicas_exempted"] += 1
                    continue

                for path in (manifest.with_suffix(".enc"), manifest.with_suffix(".key"), manifest):
                    if path.exists():
                        path.unlink()
                if self.store is not None:
                    self.store.unregister_link(link_id)
                deleted += 1
                logger.info(f"Deleted expired replica: {link_id}")
            except OSError as e:
                logger.error(f"Failed to delete replica {link_id}: {e}")

        self.stats["runs"] += 1
        self.stats["replicas_deleted"] += deleted
        if deleted:
            logger.info(f"GC complete: {deleted} replicas deleted")
        return deleted

    def get_stats(self) -> Dict:
        return {**self.stats, "retention_days": self.retention_days}
