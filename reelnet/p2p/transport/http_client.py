"""
Peer HTTP Client

Outbound calls to other nodes (catalog pulls, gossip pushes, tracker
announces, manifest and blob downloads).

Every call carries a short timeout and reports failure as ``None``/``False``.
There are no retries: the next scheduled cycle is the retry.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Optional

import aiohttp

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT = 5.0  # Seconds per peer call
DOWNLOAD_TIMEOUT = 60.0  # Seconds per blob download
CHUNK_SIZE = 64 * 1024


class PeerClient:
    """
    Thin aiohttp wrapper for best-effort peer calls.

    The underlying ``ClientSession`` is created lazily so the client can be
    constructed outside a running event loop.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        download_timeout: float = DOWNLOAD_TIMEOUT
    ):
        self.timeout = timeout
        self.download_timeout = download_timeout
        self._session: Optional[aiohttp.ClientSession] = None

        self.stats = {
            "requests": 0,
            "failures": 0,
            "bytes_downloaded": 0
        }

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _client_timeout(self, timeout: Optional[float]) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=timeout or self.timeout)

    async def get_json(self, url: str, timeout: Optional[float] = None) -> Optional[Any]:
        """GET ``url`` and decode JSON; None on any failure or non-200."""
        self.stats["requests"] += 1
        try:
            async with self._get_session().get(url, timeout=self._client_timeout(timeout)) as response:
                if response.status != 200:
                    logger.debug(f"GET {url} -> {response.status}")
                    self.stats["failures"] += 1
                    return None
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.debug(f"GET {url} failed: {e}")
            self.stats["failures"] += 1
            return None

    async def post_json(self, url: str, payload: Any, timeout: Optional[float] = None) -> bool:
        """POST JSON ``payload``; True on any 2xx."""
        self.stats["requests"] += 1
        try:
            async with self._get_session().post(
                url, json=payload, timeout=self._client_timeout(timeout)
            ) as response:
                if 200 <= response.status < 300:
                    return True
                logger.debug(f"POST {url} -> {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"POST {url} failed: {e}")
        self.stats["failures"] += 1
        return False

    async def download(self, url: str, dest: Path, timeout: Optional[float] = None) -> bool:
        """
        Stream ``url`` into ``dest``.

        On failure the partially written file is removed, so ``dest`` exists
        only after a complete 200 response.
        """
        self.stats["requests"] += 1
        dest = Path(dest)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            async with self._get_session().get(
                url, timeout=self._client_timeout(timeout or self.download_timeout)
            ) as response:
                if response.status != 200:
                    logger.debug(f"Download {url} -> {response.status}")
                    self.stats["failures"] += 1
                    return False
                with open(dest, "wb") as f:
                    async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                        f.write(chunk)
                        self.stats["bytes_downloaded"] += len(chunk)
            return True
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.debug(f"Download {url} failed: {e}")
            self.stats["failures"] += 1
            if dest.exists():
                os.remove(dest)
            return False
