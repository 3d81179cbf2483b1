from __future__ import annotations

"""Application-level configuration helpers (env → constants).

Only generic settings that may be imported *anywhere* in the code-base
should live in this module.  Key-service knobs are grouped in
:class:`KeyConfig` so the lifecycle service receives them explicitly instead
of reading the environment on every call.
"""

# Standard library
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

__all__ = ["ALLOWED_ORIGINS", "KeyConfig", "load_key_config", "load_provisioned_keys"]

_TRUTHY = {"1", "true", "yes", "on"}


def _collect_origins() -> list[str]:
    """Collect allowed CORS origins from the environment.

    Falls back to the local dashboard dev-server when no explicit env vars
    are set.
    """
    origins: list[str] = []
    for name in ("FRONTEND_ORIGIN", "EXTRA_ORIGIN"):
        if (val := os.getenv(name)):
            origins.append(val)

    if not origins:
        origins.append("http://localhost:5173")
    return origins


ALLOWED_ORIGINS: list[str] = _collect_origins()


@dataclass(frozen=True)
class KeyConfig:
    """Settings consumed by the key lifecycle service."""

    base_uri: str = "https://localhost:18443"
    base_path: str = "/keys"
    cache_enabled: bool = False
    cache_prefix: str = "keyhub:public-key:"
    cache_ttl: int = 300
    redis_url: str = "redis://localhost:6379/0"
    # key pairs to add on startup, see load_provisioned_keys()
    keys: List[Dict[str, Any]] = field(default_factory=list)


def load_provisioned_keys(path: str | None) -> List[Dict[str, Any]]:
    """Read the startup key list from a JSON file.

    The file holds a list of ``{"public_key": {...}, "private_key": {...}}``
    objects; ``private_key`` is optional.
    """
    if not path:
        return []
    entries = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(entries, list):
        raise ValueError(f"{path}: expected a JSON list of key entries")
    return entries


def load_key_config() -> KeyConfig:
    return KeyConfig(
        base_uri=os.getenv("SERVER_BASE_URI", "https://localhost:18443"),
        base_path=os.getenv("KEY_BASE_PATH", "/keys"),
        cache_enabled=os.getenv("KEY_CACHE_ENABLED", "false").lower() in _TRUTHY,
        cache_prefix=os.getenv("KEY_CACHE_PREFIX", "keyhub:public-key:"),
        cache_ttl=int(os.getenv("KEY_CACHE_TTL", "300")),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        keys=load_provisioned_keys(os.getenv("KEY_PROVISION_FILE")),
    )
