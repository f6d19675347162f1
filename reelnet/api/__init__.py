"""Peer HTTP surface."""

from .server import PeerServer, parse_range, vote_message

__all__ = ["PeerServer", "parse_range", "vote_message"]
