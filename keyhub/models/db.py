from __future__ import annotations

"""Persistence / Supabase row models."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, constr

from keyhub.models import KeyMeta, KeyStatus, PrivateKey, PublicKey, PublicKeyRecord

__all__ = [
    "APIToken",
    "PublicKeyRow",
]


class APIToken(BaseModel):
    """Row in `api_tokens`."""

    token_id: str = Field(..., description="Primary key")
    identity_id: str = Field(..., description="Identity the token acts for")
    token_sha256: str = Field(..., description="bcrypt-salted SHA-256 hash")
    token_lookup: Optional[str] = Field(None, description="HMAC lookup index")
    scopes: List[str] = Field(default_factory=list, description="Permission scopes")
    expires_at: Optional[datetime] = Field(None, description="Absolute expiry")
    revoked_at: Optional[datetime] = Field(None, description="Soft-delete marker")


class PublicKeyRow(BaseModel):
    """Row in `public_keys` – one public key plus its optional private key.

    ``id_hash``, ``owner_hash`` and ``material_hash`` are the indexed lookup
    columns; the raw values are stored alongside but never indexed.
    """

    id_hash: constr(min_length=64, max_length=64)  # type: ignore[valid-type]
    owner_hash: constr(min_length=64, max_length=64)  # type: ignore[valid-type]
    material_hash: Optional[str] = Field(None, description="Unique together with owner_hash")
    key_id: str
    owner: str
    type: str
    label: str
    status: KeyStatus = KeyStatus.active
    revoked_at: Optional[datetime] = None
    public_key_pem: Optional[str] = None
    public_key_base58: Optional[str] = None
    private_key: Optional[Dict[str, Any]] = Field(None, description="Embedded PrivateKey (jsonb)")
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_public_key(
        cls,
        public_key: PublicKey,
        *,
        id_hash: str,
        owner_hash: str,
        material_hash: Optional[str],
        now: datetime,
    ) -> "PublicKeyRow":
        private_key = public_key.private_key
        return cls(
            id_hash=id_hash,
            owner_hash=owner_hash,
            material_hash=material_hash,
            key_id=public_key.id,
            owner=public_key.owner,
            type=public_key.type,
            label=public_key.label,
            status=public_key.status or KeyStatus.active,
            revoked_at=public_key.revoked_at,
            public_key_pem=public_key.public_key_pem,
            public_key_base58=public_key.public_key_base58,
            private_key=private_key.model_dump(mode="json", exclude_none=True) if private_key else None,
            created_at=now,
            updated_at=now,
        )

    def to_record(self) -> PublicKeyRecord:
        public_key = PublicKey(
            id=self.key_id,
            owner=self.owner,
            type=self.type,
            label=self.label,
            status=self.status,
            revoked_at=self.revoked_at,
            public_key_pem=self.public_key_pem,
            public_key_base58=self.public_key_base58,
            private_key=PrivateKey.model_validate(self.private_key) if self.private_key else None,
        )
        return PublicKeyRecord(
            public_key=public_key,
            meta=KeyMeta(created=self.created_at, updated=self.updated_at),
        )
