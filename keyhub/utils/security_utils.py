"""Hashing and API-token verification helpers."""

from __future__ import annotations

from datetime import datetime, timezone
from hashlib import sha256

import base64
import hmac
import inspect
import os

import bcrypt
from fastapi import HTTPException, status

from keyhub.models import Actor, AuditAction, AuditStatus
from keyhub.utils.audit import log_audit_event
from keyhub.utils.database import query_data
from keyhub.utils.logger import logger

API_TOKEN_TABLE = "api_tokens"
TOKEN_PREFIX = "kh_"

# ---------------------------------------------------------------------------
# Lookup hashes
# ---------------------------------------------------------------------------


def lookup_hash(value: str) -> str:
    """Fixed-width SHA-256 hex digest used as an index/query key.

    Raw identifiers and key material never appear in indexed columns or cache
    keys; only this digest does.
    """
    return sha256(value.encode("utf-8")).hexdigest()

# ---------------------------------------------------------------------------
# Helper for safe Supabase calls
# ---------------------------------------------------------------------------

async def _safe_supabase_call(coro, *, detail: str):
    """Await a Supabase async call and translate network/database errors into HTTP 503."""
    try:
        return await coro if inspect.isawaitable(coro) else coro  # type: ignore[misc]
    except HTTPException:
        raise
    except Exception as exc:  # pragma: no cover – network/database only
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail) from exc


async def hash_token(raw: str) -> str:
    """Return bcrypt(sha256(raw)) as stored in ``api_tokens.token_sha256``."""
    digest = sha256(raw.encode()).hexdigest()
    return bcrypt.hashpw(digest.encode(), bcrypt.gensalt()).decode()


def _verify_hash(raw: str, hashed: str) -> bool:
    return bcrypt.checkpw(raw.encode(), hashed.encode())

# ---------------------------------------------------------------------------
# Scalable token lookup helper
# ---------------------------------------------------------------------------

_PEPPER_ENV = "TOKEN_LOOKUP_PEPPER"


def compute_token_lookup(raw_token: str) -> str | None:
    """Return HMAC(pepper, sha256(raw_token)) using TOKEN_LOOKUP_PEPPER.

    If no pepper is configured (e.g., local dev), return None so callers
    fall back to scanning and bcrypt-comparing every live token.
    """
    key_b64 = os.getenv(_PEPPER_ENV)
    if not key_b64:
        return None
    try:
        padding_needed = (4 - len(key_b64) % 4) % 4
        pepper = base64.urlsafe_b64decode(key_b64 + "=" * padding_needed)
    except Exception:  # noqa: BLE001
        return None
    token_sha = sha256(raw_token.encode()).hexdigest()
    return hmac.new(pepper, token_sha.encode(), sha256).hexdigest()


async def verify_api_token(token: str, supabase) -> Actor:
    """Validate an opaque bearer token and return the acting identity.

    Tokens look like ``kh_<random>``; ``api_tokens`` stores bcrypt(sha256(token))
    plus an optional HMAC lookup column used as the fast path.
    """

    if not token.startswith(TOKEN_PREFIX):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token format")

    token_sha = sha256(token.encode()).hexdigest()
    lookup = compute_token_lookup(token)
    filters = {"token_lookup": lookup} if lookup is not None else {"revoked_at": ("is", "null")}
    resp = await _safe_supabase_call(
        query_data(
            supabase,
            API_TOKEN_TABLE,
            filters=filters,
            select_fields="token_id,token_sha256,scopes,identity_id,expires_at,revoked_at",
        ),
        detail="supabase_tokens_unreachable",
    )

    row = None
    for candidate in getattr(resp, "data", []) or []:
        stored_hash = candidate.get("token_sha256", "")
        if stored_hash.startswith(("$2b", "$2a")) and _verify_hash(token_sha, stored_hash):
            row = candidate
            break

    if row is None:
        await log_audit_event(
            supabase,
            action=AuditAction.auth_failure,
            actor_id="unknown",
            status=AuditStatus.failure,
            metadata={"reason": "invalid_token", "token_prefix": token[:8] + "..."},
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    if row.get("revoked_at") is not None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token revoked")

    expires_at = row.get("expires_at")
    if expires_at and datetime.fromisoformat(expires_at).astimezone(timezone.utc) < datetime.now(timezone.utc):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")

    logger.debug("auth.token", extra={"token_id": row.get("token_id"), "identity_id": row["identity_id"]})
    return Actor(
        identity_id=row["identity_id"],
        scopes=list(row.get("scopes") or []),
        token_id=row.get("token_id"),
    )
