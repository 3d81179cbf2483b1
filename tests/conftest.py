from __future__ import annotations

"""Pytest fixtures for the key service and FastAPI integration tests.

Supabase is replaced by the in-memory stub in ``tests/supabase_stub.py``,
Redis by :class:`FakeRedis`, and token verification by an in-process token
store, so the request pipeline runs end-to-end without network access.
"""

import functools
import os
import sys
from pathlib import Path
import secrets
from typing import Any, Dict, Optional

import base58
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa
from fastapi import FastAPI, HTTPException, status
from redis.exceptions import ConnectionError as RedisConnectionError
from starlette.testclient import TestClient

# ---------------------------------------------------------------------------
# Runtime env for the application
# ---------------------------------------------------------------------------

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "test_key")
os.environ.setdefault("FRONTEND_ORIGIN", "https://dashboard.test")
os.environ.setdefault("SERVER_BASE_URI", "https://keys.test")
os.environ.setdefault("KEY_BASE_PATH", "/keys")

# Ensure project root on PYTHONPATH so `import keyhub` works when pytest is run
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Boot the app once
from keyhub.main import create_app, limiter  # noqa: E402, WPS433
from keyhub.models import Actor, Permission  # noqa: E402
from keyhub.settings import KeyConfig  # noqa: E402
from keyhub.utils.key_cache import KeyCache  # noqa: E402
from keyhub.utils.key_service import KeyLifecycleService  # noqa: E402
from keyhub.utils.key_store import KeyRecordStore  # noqa: E402
from tests.supabase_stub import SupabaseStub  # noqa: E402

app: FastAPI = create_app()
client = TestClient(app)

BASE_URI = "https://keys.test"
BASE_PATH = "/keys"

OWNER = "did:example:alice"
OTHER = "did:example:bob"
ALL_PERMISSIONS = [p.value for p in Permission]

# ---------------------------------------------------------------------------
# Key material
# ---------------------------------------------------------------------------


def rsa_pair(index: int = 0) -> tuple[str, str]:
    """Return a cached (public PEM, private PEM) RSA pair; *index* picks a distinct pair."""
    return _rsa_pair(index)


@functools.lru_cache(maxsize=None)
def _rsa_pair(index: int) -> tuple[str, str]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return public_pem, private_pem


def ed25519_pair() -> tuple[str, str]:
    """Return (public base58, private base58) in the canonical 44/88 char form.

    A small share of keys encode shorter; those are regenerated.
    """
    while True:
        key = ed25519.Ed25519PrivateKey.generate()
        seed = key.private_bytes(
            serialization.Encoding.Raw,
            serialization.PrivateFormat.Raw,
            serialization.NoEncryption(),
        )
        public = key.public_key().public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)
        public_b58 = base58.b58encode(public).decode()
        private_b58 = base58.b58encode(seed + public).decode()
        if len(public_b58) == 44 and len(private_b58) == 88:
            return public_b58, private_b58


def key_id(slug: str) -> str:
    return f"{BASE_URI}{BASE_PATH}/{slug}"

# ---------------------------------------------------------------------------
# Redis stand-in
# ---------------------------------------------------------------------------


class FakeRedis:
    """Dict-backed subset of ``redis.asyncio.Redis`` (get/set/delete)."""

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, Optional[int]] = {}
        self.fail = False
        self.calls: list[tuple[str, str]] = []

    def _maybe_fail(self):
        if self.fail:
            raise RedisConnectionError("redis unavailable")

    async def get(self, name: str):
        self.calls.append(("get", name))
        self._maybe_fail()
        return self.store.get(name)

    async def set(self, name: str, value: str, ex: Optional[int] = None):
        self.calls.append(("set", name))
        self._maybe_fail()
        self.store[name] = value
        self.ttls[name] = ex
        return True

    async def delete(self, *names: str):
        self.calls.append(("delete", ",".join(names)))
        self._maybe_fail()
        removed = 0
        for name in names:
            removed += self.store.pop(name, None) is not None
        return removed

    async def aclose(self):
        return None

# ---------------------------------------------------------------------------
# In-process token store used to simulate `api_tokens` table
# ---------------------------------------------------------------------------

_token_store: Dict[str, Dict[str, Any]] = {}


def make_token(identity_id: str, scopes: list[str]) -> str:  # noqa: D401
    raw = "kh_" + secrets.token_urlsafe(8)
    _token_store[raw] = {
        "token_id": secrets.token_hex(4),
        "identity_id": identity_id,
        "scopes": scopes,
    }
    return raw


def auth(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_state():
    limiter.reset()
    SupabaseStub.reset()
    yield
    limiter.reset()
    SupabaseStub.reset()


@pytest.fixture()
def api_client() -> TestClient:  # noqa: D401 – simple alias
    return client


@pytest.fixture()
def patch_verify(monkeypatch):  # noqa: D401
    """Patch verify_api_token to use the in-memory store."""

    from keyhub.utils import security_utils as sec

    async def _verify(token: str, _supabase) -> Actor:  # noqa: ANN001
        row = _token_store.get(token)
        if row is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
        return Actor(identity_id=row["identity_id"], scopes=list(row["scopes"]), token_id=row["token_id"])

    monkeypatch.setattr(sec, "verify_api_token", _verify, raising=True)
    yield


@pytest.fixture()
def supabase() -> SupabaseStub:
    return SupabaseStub()


@pytest.fixture()
def config() -> KeyConfig:
    return KeyConfig(base_uri=BASE_URI, base_path=BASE_PATH)


@pytest.fixture()
def store(supabase) -> KeyRecordStore:
    return KeyRecordStore(supabase)


@pytest.fixture()
def service(store, config) -> KeyLifecycleService:
    return KeyLifecycleService(store, config=config)


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def cache(fake_redis) -> KeyCache:
    return KeyCache(fake_redis, prefix="test:key:", ttl=60)


@pytest.fixture()
def cached_service(store, config, cache) -> KeyLifecycleService:
    return KeyLifecycleService(store, config=config, cache=cache)


@pytest.fixture()
def owner() -> Actor:
    return Actor(identity_id=OWNER, scopes=list(ALL_PERMISSIONS), token_id="tok_owner")


@pytest.fixture()
def stranger() -> Actor:
    return Actor(identity_id=OTHER, scopes=list(ALL_PERMISSIONS), token_id="tok_other")


@pytest.fixture()
def admin() -> Actor:
    return Actor(identity_id="did:example:ops", scopes=["admin"], token_id="tok_admin")
