"""
DID Issuer.

Generates a fresh Ed25519 key pair per credential, derives a DID bound to
the public key, signs the claims set and discards the private key.

DID layout (multibase base58btc over the multicodec-prefixed key):

    did:<method>:z<base58btc(0xed 0x01 || public_key)>

The engine never persists private key material. Only the public key,
the signature and the signed claims are retained.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import base58
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ed25519
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from identity_engine.app.config import EngineSettings
from identity_engine.app.errors import InternalInvariantViolation, IssuanceConflict
from identity_engine.app.schemas.credential import IssuedCredential
from identity_engine.app.schemas.results import RiskAssessment
from identity_engine.app.schemas.submission import Submission
from identity_engine.app.utils.canonical import canonicalize

logger = logging.getLogger("identity_engine.did_issuer")

MB_PREFIX = "z"  # multibase base58btc
ED25519_MULTICODEC = b"\xed\x01"
CREDENTIAL_TYPES = ["VerifiableCredential", "IdentityVerificationCredential"]


# ---------------------------------------------------------------------------
# Multibase helpers
# ---------------------------------------------------------------------------

def multibase_encode(raw: bytes) -> str:
    return MB_PREFIX + base58.b58encode(raw).decode("utf-8")


def multibase_decode(value: str) -> bytes:
    if not value.startswith(MB_PREFIX):
        raise ValueError("Only base58btc multibase values are supported")
    return base58.b58decode(value[len(MB_PREFIX):])


def did_for_public_key(method: str, public_key: bytes) -> str:
    return f"did:{method}:{multibase_encode(ED25519_MULTICODEC + public_key)}"


# ---------------------------------------------------------------------------
# Credential registry
# ---------------------------------------------------------------------------

class CredentialRegistry:
    """
    Credentials by submission id.

    A credential is minted as *pending* and becomes *active* only once the
    orchestrator completes its session. Pending credentials of cancelled
    sessions are discarded and never become resolvable by DID.
    """

    def __init__(self) -> None:
        self._by_submission: Dict[str, IssuedCredential] = {}
        self._active: Dict[str, IssuedCredential] = {}

    def for_submission(self, submission_id: str) -> Optional[IssuedCredential]:
        return self._by_submission.get(submission_id)

    def insert_pending(self, credential: IssuedCredential) -> None:
        if credential.submission_id in self._by_submission:
            raise IssuanceConflict(credential.submission_id)
        self._by_submission[credential.submission_id] = credential

    def activate(self, submission_id: str) -> IssuedCredential:
        credential = self._by_submission.get(submission_id)
        if credential is None:
            raise InternalInvariantViolation(
                f"No credential minted for submission {submission_id}"
            )
        self._active[credential.did] = credential
        return credential

    def discard(self, submission_id: str) -> None:
        credential = self._by_submission.get(submission_id)
        if credential is not None and credential.did not in self._active:
            del self._by_submission[submission_id]

    def resolve(self, did: str) -> Optional[IssuedCredential]:
        return self._active.get(did)

    def __len__(self) -> int:
        return len(self._active)


# ---------------------------------------------------------------------------
# Issuer
# ---------------------------------------------------------------------------

class DidIssuer:
    def __init__(
        self,
        settings: EngineSettings,
        registry: Optional[CredentialRegistry] = None,
    ) -> None:
        self._settings = settings
        self.registry = registry or CredentialRegistry()

    async def issue(
        self,
        submission: Submission,
        risk: Optional[RiskAssessment],
    ) -> IssuedCredential:
        """
        Idempotent: a second call for the same submission returns the
        credential minted by the first.
        """
        if risk is None or not risk.passed:
            raise InternalInvariantViolation(
                "Issuing requires a passing RiskAssessment"
            )

        existing = self.registry.for_submission(submission.submission_id)
        if existing is not None:
            return existing

        credential = self._mint(submission, risk)
        try:
            self.registry.insert_pending(credential)
        except IssuanceConflict:
            logger.info(
                "issuance_conflict_resolved",
                extra={"submission_id": submission.submission_id},
            )
            return self.registry.for_submission(submission.submission_id)

        logger.info(
            "credential_minted",
            extra={
                "submission_id": submission.submission_id,
                "did": credential.did,
            },
        )
        return credential

    def _mint(
        self, submission: Submission, risk: RiskAssessment
    ) -> IssuedCredential:
        private_key = ed25519.Ed25519PrivateKey.generate()
        public_raw = private_key.public_key().public_bytes(
            Encoding.Raw, PublicFormat.Raw
        )

        did = did_for_public_key(self._settings.did_method, public_raw)
        issued_at = datetime.now(timezone.utc).replace(microsecond=0)
        expires_at = issued_at + timedelta(
            days=self._settings.credential_validity_days
        )

        claims = self._claims(did, submission, risk, issued_at, expires_at)
        signature = private_key.sign(canonicalize(claims))
        del private_key

        return IssuedCredential(
            did=did,
            submission_id=submission.submission_id,
            public_key=multibase_encode(public_raw),
            verification_method=f"{did}#{did.rsplit(':', 1)[-1]}",
            signature=multibase_encode(signature),
            issued_at=issued_at,
            expires_at=expires_at,
            subject_claims=claims,
        )

    @staticmethod
    def _claims(
        did: str,
        submission: Submission,
        risk: RiskAssessment,
        issued_at: datetime,
        expires_at: datetime,
    ) -> Dict[str, Any]:
        profile = submission.user_profile
        claims: Dict[str, Any] = {
            "id": did,
            "type": CREDENTIAL_TYPES,
            "fullName": profile.full_name,
            "dateOfBirth": profile.birth_date.isoformat(),
            "documentType": submission.document_type.value,
            "riskTier": risk.risk_tier.value,
            "manualReviewRequired": risk.manual_review_required,
            "issuedAt": issued_at.isoformat(),
            "expiresAt": expires_at.isoformat(),
        }
        if profile.nationality:
            claims["nationality"] = profile.nationality
        return claims


# ---------------------------------------------------------------------------
# Public verification
# ---------------------------------------------------------------------------

def verify_credential(credential: IssuedCredential) -> bool:
    """
    Third-party verification using only public material.

    Checks that the DID is derived from the published key and that the
    signature covers the canonical claims.
    """
    try:
        public_raw = multibase_decode(credential.public_key)
        signature = multibase_decode(credential.signature)
        method = credential.did.split(":")[1]
        if did_for_public_key(method, public_raw) != credential.did:
            return False
        public_key = ed25519.Ed25519PublicKey.from_public_bytes(public_raw)
        public_key.verify(signature, canonicalize(credential.subject_claims))
    except (InvalidSignature, ValueError):
        return False
    return True
