"""
Peer Transport

Best-effort HTTP calls to other nodes with per-call timeouts.
"""

from .http_client import PeerClient, DEFAULT_TIMEOUT, DOWNLOAD_TIMEOUT

__all__ = ["PeerClient", "DEFAULT_TIMEOUT", "DOWNLOAD_TIMEOUT"]
