"""
Stream Admission

Session-gated playback of locally hosted content.

State per client key (``<client ip>_<link id>``):

    NoSession --(ad proof | premium proof | owner | free)--> ActiveSession
    ActiveSession --(expiry | disconnect)--> NoSession

Decision order for a playback request:
1. Unknown content -> denied (404)
2. Live session for the client key -> play
3. Node overloaded or link at its stream cap -> denied (503)
4. Content owner or local admin -> play
5. Active premium subscription -> sign premium proof
6. Active ad campaign available -> show ad, then ad proof
7. No campaign available -> play (free session)

A session holds exactly one stream slot on its link from creation until it
is ended or found expired. Expiry is detected lazily on access; the slot is
released exactly once.
"""

import ipaddress
import logging
import random
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from reelnet.identity import addresses_equal
from .proofs import (
    AdViewProof,
    PremiumViewProof,
    ProofStore,
    ad_proof_message_hash,
    link_id_hash,
    premium_proof_message_hash,
    recover_proof_signer,
)

logger = logging.getLogger(__name__)


SESSION_HOURS = 4
AD_CANDIDATES = 3
IDLE_GRACE = 120  # Seconds a session survives with no open stream connection


def session_key(client_ip: str, link_id: str) -> str:
    return f"{client_ip}_{link_id}".strip()


def is_loopback(client_ip: Optional[str]) -> bool:
    if not client_ip:
        return False
    if client_ip == "localhost":
        return True
    try:
        address = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    mapped = getattr(address, "ipv4_mapped", None)
    return address.is_loopback or bool(mapped and mapped.is_loopback)


class AdmissionStatus(str, Enum):
    PLAY = "play"
    SHOW_AD = "show_ad"
    SIGN_PREMIUM = "sign_premium"
    DENIED = "denied"


@dataclass
class StreamSession:
    token: str
    link_id: str
    client_key: str
    expires_at: float
    is_premium: bool = False
    created_at: float = field(default_factory=time.time)
    open_connections: int = 0
    idle_deadline: Optional[float] = None  # Set when the last stream connection closes

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = now if now is not None else time.time()
        if now >= self.expires_at:
            return True
        return self.open_connections == 0 and self.idle_deadline is not None and now >= self.idle_deadline


@dataclass
class AdmissionDecision:
    status: AdmissionStatus
    reason: Optional[str] = None
    token: Optional[str] = None
    expires_at: Optional[float] = None
    ad: Optional[Dict[str, Any]] = None
    message: Optional[Dict[str, Any]] = None
    http_status: int = 200

    @property
    def granted(self) -> bool:
        return self.status == AdmissionStatus.PLAY

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"status": self.status.value}
        for key, value in (
            ("reason", self.reason),
            ("token", self.token),
            ("expiresAt", self.expires_at),
            ("ad", self.ad),
            ("message", self.message),
        ):
            if value is not None:
                body[key] = value
        return body


def _denied(reason: str, http_status: int) -> AdmissionDecision:
    return AdmissionDecision(AdmissionStatus.DENIED, reason=reason, http_status=http_status)


class StreamAdmission:
    """
    Admission controller and session table.

    Sessions are indexed by token and by client key; at most one live
    session exists per client key.
    """

    def __init__(
        self,
        store,
        identity,
        load_monitor=None,
        ad_manager=None,
        subscriptions=None,
        link_registry=None,
        proof_store: Optional[ProofStore] = None,
        owner_wallets: Optional[Iterable[str]] = None,
        session_hours: float = SESSION_HOURS,
        ad_candidates: int = AD_CANDIDATES,
        chain_id: int = 1,
        idle_grace: float = IDLE_GRACE
    ):
        """
        Initialize stream admission.

        Args:
            store: CatalogStore holding the link registry and stream counters
            identity: Local NodeIdentity (fallback hoster address)
            load_monitor: SystemLoadMonitor (``is_overloaded()``)
            ad_manager: AdManagerConnector for ad selection
            subscriptions: SubscriptionConnector for premium checks
            link_registry: LinkRegistryConnector for on-chain hosters
            proof_store: Archive for accepted proofs
            owner_wallets: Wallets treated as local owners
            session_hours: Session lifetime
            ad_candidates: Random campaigns tried per ad selection
            chain_id: Chain id bound into premium proofs
            idle_grace: Seconds a session may sit without a stream connection
                after its last connection closed
        """
        self.store = store
        self.identity = identity
        self.load_monitor = load_monitor
        self.ad_manager = ad_manager
        self.subscriptions = subscriptions
        self.link_registry = link_registry
        self.proof_store = proof_store or ProofStore()
        self.owner_wallets = {w.lower() for w in owner_wallets or []}
        self.session_seconds = session_hours * 60 * 60
        self.ad_candidates = ad_candidates
        self.chain_id = chain_id
        self.idle_grace = idle_grace

        self.sessions: Dict[str, StreamSession] = {}
        self._by_client: Dict[str, str] = {}

        self.stats = {
            "sessions_created": 0,
            "sessions_ended": 0,
            "sessions_expired": 0,
            "denied_capacity": 0,
            "ads_shown": 0,
            "proofs_accepted": 0,
            "proofs_rejected": 0
        }

    # Session table

    def _drop(self, session: StreamSession):
        """Remove a session and release its stream slot (once)."""
        if self.sessions.pop(session.token, None) is None:
            return
        if self._by_client.get(session.client_key) == session.token:
            del self._by_client[session.client_key]
        self.store.release_stream(session.link_id)

    def create_session(
        self,
        link_id: str,
        client_ip: str,
        is_premium: bool = False,
        now: Optional[float] = None
    ) -> Optional[StreamSession]:
        """
        Open a session and take a stream slot.

        Returns the existing live session for the client key if there is one;
        None if the link is unknown or at capacity.
        """
        now = now if now is not None else time.time()
        existing = self.session_for(client_ip, link_id, now)
        if existing is not None:
            return existing

        if not self.store.acquire_stream(link_id):
            return None

        session = StreamSession(
            token=secrets.token_hex(32),
            link_id=link_id,
            client_key=session_key(client_ip, link_id),
            expires_at=now + self.session_seconds,
            is_premium=is_premium,
            created_at=now,
        )
        self.sessions[session.token] = session
        self._by_client[session.client_key] = session.token
        self.stats["sessions_created"] += 1
        return session

    def validate_session(self, token: Optional[str], now: Optional[float] = None) -> Optional[StreamSession]:
        """Live session for ``token``; an expired one is dropped here."""
        session = self.sessions.get(token) if token else None
        if session is None:
            return None
        if session.is_expired(now):
            self._drop(session)
            self.stats["sessions_expired"] += 1
            return None
        return session

    def session_for(self, client_ip: str, link_id: str, now: Optional[float] = None) -> Optional[StreamSession]:
        return self.validate_session(self._by_client.get(session_key(client_ip, link_id)), now)

    def end_session(self, token: Optional[str]) -> bool:
        session = self.sessions.get(token) if token else None
        if session is None:
            return False
        self._drop(session)
        self.stats["sessions_ended"] += 1
        return True

    def attach_connection(self, session: StreamSession):
        """A stream connection opened on ``session``."""
        session.open_connections += 1
        session.idle_deadline = None

    def detach_connection(self, session: StreamSession, now: Optional[float] = None):
        """
        A stream connection on ``session`` closed (gracefully or not).

        With no connection left the session only survives the idle grace
        period, so an abandoned player frees its slot on the next lazy
        expiry check. A zero grace releases the slot here.
        """
        session.open_connections = max(0, session.open_connections - 1)
        if session.open_connections == 0:
            if self.idle_grace <= 0:
                self._drop(session)
                self.stats["sessions_expired"] += 1
                return
            now = now if now is not None else time.time()
            session.idle_deadline = min(session.expires_at, now + self.idle_grace)

    def expire_sessions(self, link_id: Optional[str] = None, now: Optional[float] = None) -> int:
        """Drop expired sessions (of one link, or all)."""
        now = now if now is not None else time.time()
        expired = [
            s for s in self.sessions.values()
            if s.is_expired(now) and (link_id is None or s.link_id == link_id)
        ]
        for session in expired:
            self._drop(session)
        self.stats["sessions_expired"] += len(expired)
        return len(expired)

    def active_sessions(self, link_id: Optional[str] = None) -> List[StreamSession]:
        return [s for s in self.sessions.values() if link_id is None or s.link_id == link_id]

    # Authorization

    def is_owner(self, wallet: Optional[str], link) -> bool:
        if not wallet:
            return False
        return wallet.lower() in self.owner_wallets or addresses_equal(wallet, link.hoster_address)

    def _play(self, session: StreamSession, reason: str) -> AdmissionDecision:
        return AdmissionDecision(
            AdmissionStatus.PLAY,
            reason=reason,
            token=session.token,
            expires_at=session.expires_at
        )

    def _grant(self, link_id: str, client_ip: str, reason: str, is_premium: bool = False,
               now: Optional[float] = None) -> AdmissionDecision:
        session = self.create_session(link_id, client_ip, is_premium, now)
        if session is None:
            self.stats["denied_capacity"] += 1
            return _denied("Node at capacity", 503)
        return self._play(session, reason)

    async def authorize(
        self,
        link_id: str,
        client_ip: str,
        wallet: Optional[str] = None,
        now: Optional[float] = None
    ) -> AdmissionDecision:
        """Decide what a playback request needs next."""
        link = self.store.get_link(link_id)
        if link is None:
            return _denied("Content not found on this node", 404)

        self.expire_sessions(link_id, now)

        session = self.session_for(client_ip, link_id, now)
        if session is not None:
            return self._play(session, "active_session")

        if self.load_monitor is not None and self.load_monitor.is_overloaded():
            self.stats["denied_capacity"] += 1
            return _denied("Node overloaded", 503)
        if link.at_capacity:
            self.stats["denied_capacity"] += 1
            return _denied("Node at capacity", 503)

        if self.is_owner(wallet, link):
            return self._grant(link_id, client_ip, "owner", now=now)
        if is_loopback(client_ip):
            return self._grant(link_id, client_ip, "local", now=now)

        if wallet and self.subscriptions is not None and await self.subscriptions.is_subscribed(wallet):
            hoster = await self.resolve_hoster(link_id)
            return AdmissionDecision(
                AdmissionStatus.SIGN_PREMIUM,
                reason="premium_subscription",
                message={
                    "hoster": hoster,
                    "contentHash": link.content_hash,
                    "linkId": link_id_hash(link_id),
                    "chainId": self.chain_id,
                }
            )

        ad = await self.select_ad()
        if ad is not None:
            self.stats["ads_shown"] += 1
            return AdmissionDecision(AdmissionStatus.SHOW_AD, reason="ad_required", ad=ad)

        return self._grant(link_id, client_ip, "no_ads_available", now=now)

    async def select_ad(self) -> Optional[Dict[str, Any]]:
        """First of several random campaigns that is active with views left."""
        if self.ad_manager is None:
            return None

        total = await self.ad_manager.next_campaign_id()
        if total <= 0:
            return None

        for _ in range(self.ad_candidates):
            campaign = await self.ad_manager.get_campaign(random.randrange(total))
            if campaign is not None and campaign.active and campaign.views_remaining > 0:
                return campaign.to_dict()
        return None

    async def resolve_hoster(self, link_id: str) -> str:
        """On-chain hoster of the link, else this node's address."""
        if self.link_registry is not None:
            hoster = await self.link_registry.get_hoster(link_id_hash(link_id))
            if hoster:
                return hoster
        return self.identity.address

    # Proofs

    def _reject(self, reason: str, http_status: int) -> AdmissionDecision:
        self.stats["proofs_rejected"] += 1
        logger.warning(f"Rejected view proof: {reason}")
        return _denied(reason, http_status)

    async def submit_ad_proof(
        self,
        proof: AdViewProof,
        client_ip: str,
        now: Optional[float] = None
    ) -> AdmissionDecision:
        """Verify a signed ad view and open a session for the viewer."""
        if self.store.get_link(proof.link_id) is None:
            return self._reject("Content not found on this node", 404)

        if self.ad_manager is not None:
            campaign = await self.ad_manager.get_campaign(proof.campaign_id)
            if campaign is None or not campaign.active:
                return self._reject(f"Campaign #{proof.campaign_id} is not active", 400)
            if campaign.views_remaining <= 0:
                return self._reject(f"Campaign #{proof.campaign_id} has no views remaining", 400)

        uploader = await self.resolve_hoster(proof.link_id)
        try:
            digest = ad_proof_message_hash(
                proof.campaign_id, uploader, proof.viewer_address, proof.content_hash, proof.link_id
            )
        except ValueError as e:
            return self._reject(str(e), 400)

        signer = recover_proof_signer(digest, proof.signature)
        if not addresses_equal(signer, proof.viewer_address):
            return self._reject("Invalid signature: signer does not match viewer", 401)

        self.proof_store.save_ad(proof, uploader)
        self.stats["proofs_accepted"] += 1
        logger.info(f"Verified ad proof for {uploader} from {proof.viewer_address}")
        return self._grant(proof.link_id, client_ip, "ad_proof", now=now)

    async def submit_premium_proof(
        self,
        proof: PremiumViewProof,
        client_ip: str,
        now: Optional[float] = None
    ) -> AdmissionDecision:
        """Verify a signed premium view and open a premium session."""
        if self.store.get_link(proof.link_id) is None:
            return self._reject("Content not found on this node", 404)

        hoster = proof.hoster or await self.resolve_hoster(proof.link_id)
        try:
            digest = premium_proof_message_hash(
                hoster, proof.wallet, proof.content_hash, proof.nonce, self.chain_id
            )
        except ValueError as e:
            return self._reject(str(e), 400)

        signer = recover_proof_signer(digest, proof.signature)
        if not addresses_equal(signer, proof.wallet):
            return self._reject("Invalid signature: signer must be the viewer", 401)

        if self.subscriptions is not None and not await self.subscriptions.is_subscribed(proof.wallet):
            return self._reject("No active subscription", 403)

        self.proof_store.save_premium(proof, hoster)
        self.stats["proofs_accepted"] += 1
        return self._grant(proof.link_id, client_ip, "premium_proof", is_premium=True, now=now)

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "live_sessions": len(self.sessions)}
