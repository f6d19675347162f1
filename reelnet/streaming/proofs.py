"""
Proof-of-View

Viewers personal-sign a keccak digest before a session is granted.

Ad view (matches the AdManager contract):
    keccak256(abi.encodePacked(uint256 campaignId, address uploader,
                               address viewer, bytes32 contentHash,
                               bytes32 linkIdHash))

Premium view (matches the Subscriptions contract):
    keccak256(abi.encodePacked(address hoster, address viewer,
                               bytes32 contentHash, uint256 nonce,
                               uint256 chainId))

``linkIdHash`` is the link id itself when it is already 0x-hex, otherwise
keccak256 of its UTF-8 text. Accepted proofs are archived as JSON so they
can be submitted on-chain later.
"""

import json
import logging
import time
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

logger = logging.getLogger(__name__)


ZERO_HASH = "0x" + "00" * 32


def _bytes32(value: Optional[str], label: str) -> bytes:
    if not value:
        return bytes(32)
    text = value[2:] if value.startswith("0x") else value
    try:
        raw = bytes.fromhex(text)
    except ValueError:
        raise ValueError(f"{label} is not hex: {value}")
    if len(raw) != 32:
        raise ValueError(f"{label} must be 32 bytes, got {len(raw)}")
    return raw


def link_id_hash(link_id: str) -> str:
    """bytes32 hex of a link id."""
    if link_id.startswith("0x") and len(link_id) == 66:
        return link_id.lower()
    return Web3.to_hex(Web3.keccak(text=link_id))


def ad_proof_message_hash(
    campaign_id: int,
    uploader: str,
    viewer: str,
    content_hash: str,
    link_id: str
) -> bytes:
    return bytes(Web3.solidity_keccak(
        ["uint256", "address", "address", "bytes32", "bytes32"],
        [
            int(campaign_id),
            Web3.to_checksum_address(uploader),
            Web3.to_checksum_address(viewer),
            _bytes32(content_hash, "contentHash"),
            _bytes32(link_id_hash(link_id), "linkId"),
        ]
    ))


def premium_proof_message_hash(
    hoster: str,
    viewer: str,
    content_hash: Optional[str],
    nonce: int,
    chain_id: int
) -> bytes:
    return bytes(Web3.solidity_keccak(
        ["address", "address", "bytes32", "uint256", "uint256"],
        [
            Web3.to_checksum_address(hoster),
            Web3.to_checksum_address(viewer),
            _bytes32(content_hash, "contentHash"),
            int(nonce),
            int(chain_id),
        ]
    ))


def recover_proof_signer(message_hash: bytes, signature: str) -> Optional[str]:
    """Address that personal-signed the raw 32-byte digest, or None."""
    try:
        return Account.recover_message(encode_defunct(primitive=message_hash), signature=signature)
    except Exception as e:
        logger.debug(f"Proof signature recovery failed: {e}")
        return None


def _require(data: Dict[str, Any], *keys: str):
    missing = [k for k in keys if data.get(k) in (None, "")]
    if missing:
        raise ValueError(f"Missing proof components: {', '.join(missing)}")


@dataclass
class AdViewProof:
    campaign_id: int
    viewer_address: str
    signature: str
    link_id: str
    content_hash: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AdViewProof":
        if not isinstance(data, dict):
            raise ValueError("Proof must be an object")
        _require(data, "campaignId", "viewerAddress", "signature", "linkId", "contentHash")
        try:
            campaign_id = int(data["campaignId"])
        except (TypeError, ValueError):
            raise ValueError(f"Invalid campaignId: {data['campaignId']}")
        return cls(
            campaign_id=campaign_id,
            viewer_address=str(data["viewerAddress"]),
            signature=str(data["signature"]),
            link_id=str(data["linkId"]),
            content_hash=str(data["contentHash"]),
        )


@dataclass
class PremiumViewProof:
    wallet: str
    signature: str
    nonce: int
    link_id: str
    content_hash: Optional[str] = None
    hoster: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PremiumViewProof":
        if not isinstance(data, dict):
            raise ValueError("Proof must be an object")
        _require(data, "wallet", "signature", "nonce", "linkId")
        try:
            nonce = int(data["nonce"])
        except (TypeError, ValueError):
            raise ValueError(f"Invalid nonce: {data['nonce']}")
        return cls(
            wallet=str(data["wallet"]),
            signature=str(data["signature"]),
            nonce=nonce,
            link_id=str(data["linkId"]),
            content_hash=data.get("contentHash") or None,
            hoster=data.get("hoster") or None,
        )


class ProofStore:
    """Archive of accepted proofs (one JSON file each)."""

    def __init__(self, proofs_dir: Optional[Path] = None):
        self.proofs_dir = Path(proofs_dir) if proofs_dir else None
        self.saved = 0

    def save(self, kind: str, viewer: str, record: Dict[str, Any]) -> Optional[Path]:
        if self.proofs_dir is None:
            return None
        self.proofs_dir.mkdir(parents=True, exist_ok=True)
        prefix = "" if kind == "ad" else f"{kind}_"
        path = self.proofs_dir / f"{prefix}{int(time.time() * 1000)}_{viewer[:8]}.json"
        path.write_text(json.dumps({"type": kind, **record, "createdAt": time.time()}, indent=2))
        self.saved += 1
        return path

    def save_ad(self, proof: AdViewProof, uploader: str) -> Optional[Path]:
        record = asdict(proof)
        record.update(uploader_wallet=uploader, link_id=link_id_hash(proof.link_id))
        return self.save("ad", proof.viewer_address, record)

    def save_premium(self, proof: PremiumViewProof, hoster: str) -> Optional[Path]:
        record = asdict(proof)
        record.update(
            hoster=hoster,
            link_id=link_id_hash(proof.link_id),
            content_hash=proof.content_hash or ZERO_HASH
        )
        return self.save("premium", proof.wallet, record)
