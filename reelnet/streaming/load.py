"""
Node load monitor used by stream admission and the live map.
"""

import logging
from typing import Dict

import psutil

logger = logging.getLogger(__name__)


MIN_FREE_RAM_MB = 500
LOAD_FACTOR = 0.8  # Load average ceiling per CPU


class SystemLoadMonitor:
    """Overloaded when free memory is below the floor or load average exceeds ``load_factor * cpus``."""

    def __init__(self, min_free_ram_mb: int = MIN_FREE_RAM_MB, load_factor: float = LOAD_FACTOR):
        self.min_free_ram_mb = min_free_ram_mb
        self.load_factor = load_factor

    def free_ram_mb(self) -> float:
        return psutil.virtual_memory().available / (1024 * 1024)

    def load_average(self) -> float:
        return psutil.getloadavg()[0]

    def is_overloaded(self) -> bool:
        free_mb = self.free_ram_mb()
        if free_mb < self.min_free_ram_mb:
            logger.warning(f"Low memory: {free_mb:.0f} MB free")
            return True

        cpus = psutil.cpu_count() or 1
        load = self.load_average()
        if load > cpus * self.load_factor:
            logger.warning(f"High load: {load:.2f} on {cpus} CPUs")
            return True

        return False

    def snapshot(self) -> Dict[str, float]:
        return {
            "free_ram_mb": round(self.free_ram_mb(), 1),
            "load_average": self.load_average(),
            "cpus": psutil.cpu_count() or 1
        }
