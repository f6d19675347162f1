"""
Chain Collaborators

Read-only connectors for the node registry (trust anchor), ad campaigns,
premium subscriptions and the link registry.
"""

from .registry import (
    NodeRegistryConnector,
    NodeRecord,
    BootstrapNodes,
    RegistryUnavailable,
)
from .campaigns import (
    AdManagerConnector,
    SubscriptionConnector,
    LinkRegistryConnector,
    CampaignRecord,
)

__all__ = [
    "NodeRegistryConnector",
    "NodeRecord",
    "BootstrapNodes",
    "RegistryUnavailable",
    "AdManagerConnector",
    "SubscriptionConnector",
    "LinkRegistryConnector",
    "CampaignRecord",
]
