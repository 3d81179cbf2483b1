from __future__ import annotations

"""Unified models namespace – contains both API (request/response) and DB models.

All key models, enums and the actor context live directly in this package so
call-sites can simply::

    from keyhub.models import PublicKey, PrivateKey, Actor, ANONYMOUS
"""

from datetime import datetime
from enum import Enum
from importlib import import_module
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field

from pydantic import BaseModel, Field, model_validator

# External enums -------------------------------------------------------------
from keyhub.models.permissions import Permission

# ---------------------------------------------------------------------------
# Actor Models
# ---------------------------------------------------------------------------

@dataclass
class Actor:
    """Identity on whose behalf a key operation runs.

    Built from a verified API token.  Two values stand in for "no identity":
    ``ANONYMOUS`` (public caller, private fields are never visible) and
    ``None`` (internal server call, permission checks are bypassed).
    """
    identity_id: str
    scopes: list[str] = field(default_factory=list)
    token_id: str | None = None

    def has_scope(self, scope: str) -> bool:
        """Check if the token has a specific scope."""
        return scope in self.scopes or "admin" in self.scopes

    def is_admin(self) -> bool:
        return "admin" in self.scopes


class _AnonymousActor:
    """Sentinel type for unauthenticated callers."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "ANONYMOUS"


ANONYMOUS = _AnonymousActor()


def actor_id(actor) -> str:
    """Log and audit identifier for an actor or sentinel."""
    if actor is None:
        return "system"
    if actor is ANONYMOUS:
        return "anonymous"
    return actor.identity_id

# ---------------------------------------------------------------------------
# Enums – shareable across request / DB models
# ---------------------------------------------------------------------------

class KeyStatus(str, Enum):
    active = "active"
    disabled = "disabled"

class KeyAlgorithm(str, Enum):
    """Key-material variant; selected by which public material field is set."""
    rsa = "rsa"
    ed25519 = "ed25519"

class KeyCapability(str, Enum):
    sign = "sign"  # paired private key stored server-side

class AuditAction(str, Enum):
    """Standardized audit action types for key operations."""
    key_create = "key.create"
    key_update = "key.update"
    key_revoke = "key.revoke"
    auth_failure = "auth.failure"

class AuditStatus(str, Enum):
    """Status of audited operations."""
    success = "success"
    failure = "failure"
    denied = "denied"

# ---------------------------------------------------------------------------
# Key models
# ---------------------------------------------------------------------------

DEFAULT_KEY_TYPE = "CryptographicKey"


class PrivateKey(BaseModel):
    """Private half of a key pair, embedded under its public key."""

    id: Optional[str] = None
    type: Optional[str] = None
    label: Optional[str] = None
    public_key: Optional[str] = Field(None, description="ID of the paired public key")
    private_key_pem: Optional[str] = Field(None, description="PKCS#1/PKCS#8 RSA private key")
    private_key_base58: Optional[str] = Field(None, description="64-byte Ed25519 secret, base58")
    status: Optional[KeyStatus] = None
    revoked_at: Optional[datetime] = None


class PublicKey(BaseModel):
    id: Optional[str] = Field(None, description="Key URI (generated when absent)")
    owner: Optional[str] = Field(None, description="Identity the key belongs to")
    type: Optional[str] = None
    label: Optional[str] = None
    status: Optional[KeyStatus] = None
    revoked_at: Optional[datetime] = None
    public_key_pem: Optional[str] = Field(None, description="RSA public key, PEM")
    public_key_base58: Optional[str] = Field(None, description="32-byte Ed25519 public key, base58")
    private_key: Optional[PrivateKey] = None

    @property
    def algorithm(self) -> Optional[KeyAlgorithm]:
        """Return the material variant, ``None`` unless exactly one is set."""
        if self.public_key_pem is not None and self.public_key_base58 is None:
            return KeyAlgorithm.rsa
        if self.public_key_base58 is not None and self.public_key_pem is None:
            return KeyAlgorithm.ed25519
        return None

    @property
    def material(self) -> Optional[str]:
        return self.public_key_pem if self.public_key_pem is not None else self.public_key_base58

    def without_private_key(self) -> "PublicKey":
        return self.model_copy(update={"private_key": None}, deep=True)


class KeyMeta(BaseModel):
    created: datetime
    updated: datetime


class PublicKeyRecord(BaseModel):
    """A stored public key together with its store-managed metadata."""

    public_key: PublicKey
    meta: KeyMeta


class PublicKeyResult(BaseModel):
    """Single-key read result; the private key is never nested in ``public_key``."""

    public_key: PublicKey
    meta: Optional[KeyMeta] = None
    private_key: Optional[PrivateKey] = None


class PublicKeyQuery(BaseModel):
    """Lookup by ``id`` or by ``owner`` plus exactly one material field."""

    id: Optional[str] = None
    owner: Optional[str] = None
    public_key_pem: Optional[str] = None
    public_key_base58: Optional[str] = None

    @model_validator(mode="after")
    def _check_shape(self) -> "PublicKeyQuery":
        if self.id is not None:
            return self
        materials = [m for m in (self.public_key_pem, self.public_key_base58) if m is not None]
        if self.owner is None or len(materials) != 1:
            raise ValueError("query needs 'id' or 'owner' plus one key material field")
        return self

    @property
    def material(self) -> Optional[str]:
        return self.public_key_pem if self.public_key_pem is not None else self.public_key_base58


class KeyListOptions(BaseModel):
    capability: Optional[KeyCapability] = Field(None, description="Restrict to keys usable for this capability")

# ---------------------------------------------------------------------------
# API  Pydantic models
# ---------------------------------------------------------------------------

class AddPublicKeyRequest(BaseModel):
    public_key: PublicKey
    private_key: Optional[PrivateKey] = Field(None, description="Only supplied when the server should store it")

class ErrorResponse(BaseModel):
    """Body returned for every key service error."""

    detail: str = Field(..., examples=["permission_denied"])
    message: str
    details: Optional[Dict[str, Any]] = None
    cause: Optional[str] = None


# ---------------------------------------------------------------------------
# Re-export DB row models
# ---------------------------------------------------------------------------

_db = import_module("keyhub.models.db")

# Merge symbols into current module globals so consumers can ``import keyhub.models as m``
_globals_update = {k: getattr(_db, k) for k in getattr(_db, "__all__", [])}
_globals_update.update(globals())
globals().update(_globals_update)

# Build __all__
__all__: list[str] = [k for k in _globals_update.keys() if not k.startswith("_")]
