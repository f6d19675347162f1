"""
Ad Campaign, Subscription and Link Registry Connectors

Read-only views of the contracts stream admission and replication depend on:
- AdManager: campaigns (budget, remaining views, video hash, active flag)
  and the CampaignCreated event stream
- Subscriptions: whether a wallet holds an active premium subscription
- LinkRegistry: the on-chain hoster of a link id

Each connector has a mock mode backed by in-memory state.

Author: ReelNet Team
License: MIT
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from loguru import logger

from reelnet.identity import ZERO_ADDRESS, addresses_equal

try:
    from web3 import Web3
    WEB3_AVAILABLE = True
except ImportError:
    WEB3_AVAILABLE = False


AD_MANAGER_ABI = [
    {
        "name": "getCampaign",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "campaignId", "type": "uint256"}],
        "outputs": [
            {"name": "advertiser", "type": "address"},
            {"name": "budget", "type": "uint256"},
            {"name": "duration", "type": "uint8"},
            {"name": "videoHash", "type": "string"},
            {"name": "viewsRemaining", "type": "uint256"},
            {"name": "category", "type": "uint8"},
            {"name": "active", "type": "bool"},
        ],
    },
    {
        "name": "nextCampaignId",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

SUBSCRIPTIONS_ABI = [
    {
        "name": "isSubscribed",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "user", "type": "address"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

LINK_REGISTRY_ABI = [
    {
        "name": "getLinkStats",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "linkId", "type": "bytes32"}],
        "outputs": [
            {"name": "hoster", "type": "address"},
            {"name": "upvotes", "type": "uint256"},
            {"name": "downvotes", "type": "uint256"},
        ],
    },
]

CAMPAIGN_CREATED_SIGNATURE = "CampaignCreated(uint256,address,uint256,uint256,uint8,uint8)"


@dataclass
class CampaignRecord:
    """AdManager campaign."""

    campaign_id: int
    advertiser: str
    budget: int
    duration: int
    video_hash: str
    views_remaining: int
    category: int
    active: bool

    @classmethod
    def from_tuple(cls, campaign_id: int, raw: Any) -> Optional["CampaignRecord"]:
        try:
            advertiser, budget, duration, video_hash, views_remaining, category, active = raw
            return cls(
                campaign_id=int(campaign_id),
                advertiser=str(advertiser),
                budget=int(budget),
                duration=int(duration),
                video_hash=str(video_hash or ""),
                views_remaining=int(views_remaining),
                category=int(category),
                active=bool(active),
            )
        except (TypeError, ValueError) as e:
            logger.debug("Malformed getCampaign result for #{}: {}", campaign_id, e)
            return None

    @property
    def has_capacity(self) -> bool:
        """Active with views and budget left."""
        return self.active and self.views_remaining > 0 and self.budget > 0

    @property
    def content_id(self) -> str:
        """Link id of the ad video (``videoHash`` is ``ID`` or ``ID#KEY``)."""
        return self.video_hash.split("#", 1)[0]

    @property
    def content_key(self) -> Optional[str]:
        if "#" in self.video_hash:
            return self.video_hash.split("#", 1)[1] or None
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.campaign_id,
            "advertiser": self.advertiser,
            "videoHash": self.video_hash,
            "duration": self.duration,
            "viewsRemaining": self.views_remaining,
            "category": self.category,
        }


class _ContractConnector:
    """Shared web3 contract binding for the read-only connectors."""

    name = "contract"
    abi: List[Dict[str, Any]] = []

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        contract_address: Optional[str] = None,
        mock_mode: bool = True,
        timeout: float = 10.0
    ):
        self.rpc_url = rpc_url
        self.contract_address = contract_address
        self.mock_mode = mock_mode or not (rpc_url and contract_address)
        self.timeout = timeout
        self.w3 = None
        self.contract = None

    def connect(self):
        if self.mock_mode or not WEB3_AVAILABLE:
            logger.info("{} connector in MOCK mode (no chain)", self.name)
            self.mock_mode = True
            return

        try:
            self.w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.timeout}))
            self.contract = self.w3.eth.contract(
                address=Web3.to_checksum_address(self.contract_address),
                abi=self.abi
            )
            logger.info("Bound {} at {}", self.name, self.contract_address)
        except Exception as e:
            logger.error("Failed to bind {}: {}", self.name, e)
            self.mock_mode = True

    async def _call(self, fn_name: str, *args):
        fn = getattr(self.contract.functions, fn_name)
        return await asyncio.to_thread(fn(*args).call)


class AdManagerConnector(_ContractConnector):
    """AdManager contract: campaigns and their creation events."""

    name = "AdManager"
    abi = AD_MANAGER_ABI

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._mock_campaigns: Dict[int, CampaignRecord] = {}
        self._mock_created_at: Dict[int, int] = {}
        self.mock_block = 0

    def add_campaign(self, campaign: CampaignRecord, block: Optional[int] = None):
        """Seed a campaign in mock mode (emits CampaignCreated at ``block``)."""
        self._mock_campaigns[campaign.campaign_id] = campaign
        self.mock_block = max(self.mock_block, block if block is not None else self.mock_block + 1)
        self._mock_created_at[campaign.campaign_id] = block if block is not None else self.mock_block

    async def next_campaign_id(self) -> int:
        if self.mock_mode:
            return max(self._mock_campaigns, default=-1) + 1
        if not self.contract:
            return 0
        try:
            return int(await self._call("nextCampaignId"))
        except Exception as e:
            logger.warning("nextCampaignId failed: {}", e)
            return 0

    async def get_campaign(self, campaign_id: int) -> Optional[CampaignRecord]:
        if self.mock_mode:
            return self._mock_campaigns.get(campaign_id)
        if not self.contract:
            return None
        try:
            raw = await self._call("getCampaign", campaign_id)
            return CampaignRecord.from_tuple(campaign_id, raw)
        except Exception as e:
            logger.debug("getCampaign({}) failed: {}", campaign_id, e)
            return None

    async def block_number(self) -> Optional[int]:
        if self.mock_mode:
            return self.mock_block
        if not self.w3:
            return None
        try:
            return int(await asyncio.to_thread(lambda: self.w3.eth.block_number))
        except Exception as e:
            logger.warning("block_number failed: {}", e)
            return None

    async def created_campaign_ids(self, from_block: int, to_block: int) -> Optional[List[int]]:
        """Ids from CampaignCreated events in ``[from_block, to_block]``."""
        if self.mock_mode:
            return sorted(
                cid for cid, block in self._mock_created_at.items()
                if from_block <= block <= to_block
            )
        if not self.w3:
            return None
        try:
            topic = Web3.to_hex(Web3.keccak(text=CAMPAIGN_CREATED_SIGNATURE))
            logs = await asyncio.to_thread(self.w3.eth.get_logs, {
                "address": Web3.to_checksum_address(self.contract_address),
                "fromBlock": from_block,
                "toBlock": to_block,
                "topics": [topic],
            })
            return [int.from_bytes(bytes(log["topics"][1]), "big") for log in logs]
        except Exception as e:
            logger.warning("CampaignCreated query {}-{} failed: {}", from_block, to_block, e)
            return None


class SubscriptionConnector(_ContractConnector):
    """Subscriptions contract: premium membership checks."""

    name = "Subscriptions"
    abi = SUBSCRIPTIONS_ABI

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._mock_subscribers: Set[str] = set()

    def add_subscriber(self, wallet: str):
        self._mock_subscribers.add(wallet.lower())

    async def is_subscribed(self, wallet: Optional[str]) -> bool:
        if not wallet:
            return False
        if self.mock_mode:
            return wallet.lower() in self._mock_subscribers
        if not self.contract:
            return False
        try:
            return bool(await self._call("isSubscribed", Web3.to_checksum_address(wallet)))
        except Exception as e:
            logger.warning("isSubscribed({}) failed: {}", wallet, e)
            return False


class LinkRegistryConnector(_ContractConnector):
    """LinkRegistry contract: on-chain hoster of a link."""

    name = "LinkRegistry"
    abi = LINK_REGISTRY_ABI

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._mock_hosters: Dict[str, str] = {}

    def set_hoster(self, link_hash: str, hoster: str):
        self._mock_hosters[link_hash.lower()] = hoster

    async def get_hoster(self, link_hash: str) -> Optional[str]:
        """Registered hoster of ``link_hash`` (bytes32 hex), or None."""
        if self.mock_mode:
            hoster = self._mock_hosters.get(link_hash.lower())
        elif not self.contract:
            return None
        else:
            try:
                hoster = str((await self._call("getLinkStats", link_hash))[0])
            except Exception as e:
                logger.debug("getLinkStats({}) failed: {}", link_hash, e)
                return None

        if not hoster or addresses_equal(hoster, ZERO_ADDRESS):
            return None
        return hoster
