"""
Authorization capabilities (zcaps) and controller DIDs.

A vault server returns a root capability for every new vault. The wallet
server delegates it once to the service that will use the vault, signing the
delegation with the user's KMS-held Ed25519 key. Delegated capabilities are
bearer secrets: never log them.

Proof format: detached JWS (EdDSA, unencoded payload) over
sha256(canonical proof options) || sha256(canonical capability), where the
canonical form is sorted-key compact JSON and the capability excludes its
proof.
"""

import hashlib
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from ..errors import CapabilityError
from .kms import KMSSigner
from .transport import b64_encode

SECURITY_CONTEXT = "https://w3id.org/security/v2"
EDV_VAULT_TARGET_TYPE = "urn:edv:vault"
PROOF_TYPE = "Ed25519Signature2018"
DELEGATION_PURPOSE = "capabilityDelegation"

EDV_ACTIONS = ("read", "write")

# capability ids allowed above a delegated capability
MAX_CHAIN_LENGTH = 2

JWS_HEADER = {"alg": "EdDSA", "b64": False, "crit": ["b64"]}


# =============================================================================
# Controller DIDs
# =============================================================================

def did_jwk_from_ed25519(public_key: bytes) -> str:
    """
    Build a did:jwk identifier for an Ed25519 public key.

    Raises:
        CapabilityError: If the bytes are not a valid Ed25519 public key
    """
    try:
        Ed25519PublicKey.from_public_bytes(public_key)
    except (TypeError, ValueError) as e:
        raise CapabilityError(f"invalid Ed25519 public key: {e}") from e

    jwk = {"crv": "Ed25519", "kty": "OKP", "x": b64_encode(public_key)}
    return "did:jwk:" + b64_encode(canonical_json(jwk))


def verification_method(did: str) -> str:
    return f"{did}#0"


# =============================================================================
# Capabilities
# =============================================================================

def canonical_json(document: Any) -> bytes:
    return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def parse_capability(raw: bytes) -> Dict[str, Any]:
    """
    Parse a capability document returned by a vault server.

    Raises:
        CapabilityError: If it is not a JSON object with an id
    """
    try:
        capability = json.loads(raw)
    except ValueError as e:
        raise CapabilityError(f"parse capability: {e}") from e

    if not isinstance(capability, dict) or not capability.get("id"):
        raise CapabilityError("parse capability: missing capability id")
    return capability


def capability_chain(parent: Dict[str, Any]) -> List[str]:
    """Chain of capability ids from the root down to and including parent."""
    chain: List[str] = []

    proofs = parent.get("proof") or []
    if isinstance(proofs, dict):
        proofs = [proofs]
    for proof in proofs:
        if isinstance(proof, dict) and proof.get("capabilityChain"):
            chain = list(proof["capabilityChain"])
            break
    else:
        if parent.get("parentCapability"):
            chain = [parent["parentCapability"]]

    return chain + [parent["id"]]


def signing_input(capability: Dict[str, Any], proof_options: Dict[str, Any]) -> bytes:
    """
    Bytes covered by a capability proof signature.

    Args:
        capability: Capability without its "proof" member
        proof_options: Proof without its "jws" member
    """
    header = b64_encode(canonical_json(JWS_HEADER)).encode("ascii")
    payload = hashlib.sha256(canonical_json(proof_options)).digest() + hashlib.sha256(
        canonical_json(capability)
    ).digest()
    return header + b"." + payload


async def delegate_capability(
    signer: KMSSigner,
    parent: Dict[str, Any],
    invoker: str,
    invocation_target: str,
    controller_did: str,
    expires_in: timedelta,
    allowed_actions: Sequence[str] = EDV_ACTIONS,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Delegate a capability to a new invoker.

    Args:
        signer: KMS signer of the parent capability's controller
        parent: Capability being delegated (normally a vault root capability)
        invoker: Identity allowed to invoke the new capability
        invocation_target: URL of the resource the capability applies to
        controller_did: DID whose key signs the delegation
        expires_in: Lifetime of the new capability
        allowed_actions: Actions the invoker may perform
        now: Creation time (defaults to the current time)

    Returns:
        Signed capability document

    Raises:
        CapabilityError: If the delegation would exceed the chain limit
        KMSError: If signing fails
    """
    chain = capability_chain(parent)
    if len(chain) > MAX_CHAIN_LENGTH:
        raise CapabilityError("capability chain exceeds maximum delegation depth")

    created = now or datetime.now(timezone.utc)
    capability = {
        "@context": SECURITY_CONTEXT,
        "id": uuid.uuid4().urn,
        "parentCapability": parent["id"],
        "invoker": invoker,
        "allowedAction": list(allowed_actions),
        "invocationTarget": {"id": invocation_target, "type": EDV_VAULT_TARGET_TYPE},
        "expires": _timestamp(created + expires_in),
    }
    proof_options = {
        "type": PROOF_TYPE,
        "created": _timestamp(created),
        "verificationMethod": verification_method(controller_did),
        "proofPurpose": DELEGATION_PURPOSE,
        "capabilityChain": chain,
    }

    signature = await signer.sign(signing_input(capability, proof_options))

    header = b64_encode(canonical_json(JWS_HEADER))
    proof = dict(proof_options, jws=f"{header}..{b64_encode(signature)}")
    return dict(capability, proof=[proof])


def serialize_capability(capability: Dict[str, Any]) -> str:
    return canonical_json(capability).decode("utf-8")


def _timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
