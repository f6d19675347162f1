"""Session-gated playback: admission, proofs of view, load monitor."""

from .admission import (
    AdmissionDecision,
    AdmissionStatus,
    StreamAdmission,
    StreamSession,
    is_loopback,
    session_key,
)
from .load import SystemLoadMonitor
from .proofs import (
    AdViewProof,
    PremiumViewProof,
    ProofStore,
    ad_proof_message_hash,
    link_id_hash,
    premium_proof_message_hash,
    recover_proof_signer,
)

__all__ = [
    "AdmissionDecision",
    "AdmissionStatus",
    "StreamAdmission",
    "StreamSession",
    "SystemLoadMonitor",
    "AdViewProof",
    "PremiumViewProof",
    "ProofStore",
    "ad_proof_message_hash",
    "link_id_hash",
    "premium_proof_message_hash",
    "recover_proof_signer",
    "is_loopback",
    "session_key",
]
