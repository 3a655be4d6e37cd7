"""
IssuedCredential schema.

A credential is created only when every prior stage reported pass and is
immutable once issued. It carries public verification material only:
private key material never enters this model.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class IssuedCredential(BaseModel):
    """
    Verifiable credential bound to a freshly generated DID.

    `signature` covers the canonical JSON encoding of `subject_claims`.
    """

    did: str = Field(..., pattern=r"^did:[a-z0-9]+:[A-Za-z0-9._:%-]+$")
    submission_id: str
    public_key: str = Field(
        ...,
        description="Multibase (base58btc) Ed25519 public key",
    )
    verification_method: str
    proof_type: str = "Ed25519Signature2020"
    signature: str = Field(
        ...,
        description="Multibase (base58btc) Ed25519 signature",
    )
    issued_at: datetime
    expires_at: datetime
    subject_claims: Dict[str, Any]

    @model_validator(mode="after")
    def enforce_binding(self):
        if not self.verification_method.startswith(f"{self.did}#"):
            raise ValueError("verification_method must be scoped to the DID")
        if self.subject_claims.get("id") != self.did:
            raise ValueError("subject_claims.id must equal the DID")
        if self.expires_at <= self.issued_at:
            raise ValueError("expires_at must be after issued_at")
        return self

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class CredentialPublicView(BaseModel):
    """
    Third-party verification view returned by GET /credentials/{did}.
    """

    did: str
    public_key: str
    verification_method: str
    proof_type: str
    signature: str
    issued_at: datetime
    expires_at: datetime
    subject_claims: Dict[str, Any]
    signature_valid: bool

    @classmethod
    def from_credential(
        cls, credential: IssuedCredential, *, signature_valid: bool
    ) -> "CredentialPublicView":
        return cls(
            did=credential.did,
            public_key=credential.public_key,
            verification_method=credential.verification_method,
            proof_type=credential.proof_type,
            signature=credential.signature,
            issued_at=credential.issued_at,
            expires_at=credential.expires_at,
            subject_claims=credential.subject_claims,
            signature_valid=signature_valid,
        )

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )
