"""Coordination-free replication of ad campaigns."""

from .scheduler import (
    ReplicationOutcome,
    ReplicationScheduler,
    replication_bucket,
    should_replicate,
)
from .gc import ReplicaGarbageCollector

__all__ = [
    "ReplicationOutcome",
    "ReplicationScheduler",
    "ReplicaGarbageCollector",
    "replication_bucket",
    "should_replicate",
]
