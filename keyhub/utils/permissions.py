"""Permission checks for key operations.

The authority answers one question: may *actor* exercise *permission* over
keys owned by *owner*?  :class:`PermissionGate` turns key-level intents into
that question, resolving the owner from the resource, and offers two
outcomes:

* ``require`` – hard check, raises :class:`PermissionDenied` (create, edit,
  revoke)
* ``allows`` – soft check, returns ``False`` instead of raising (reads, where
  a denial only hides private fields)

``None`` as actor is the internal server caller and always passes;
``ANONYMOUS`` never passes.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Optional, Protocol, Union

from keyhub.errors import PermissionDenied
from keyhub.models import ANONYMOUS, Actor, Permission, PublicKey
from keyhub.utils.logger import logger

Resource = Union[PublicKey, str]
StoredKeyLookup = Callable[[str], Awaitable[PublicKey]]


class PermissionAuthority(Protocol):
    async def check(self, actor: Actor, permission: Permission, owner: Optional[str]) -> None:
        """Return when allowed; raise :class:`PermissionDenied` otherwise."""


class ScopePermissionAuthority:
    """Token-scope authority.

    Allowed when the actor holds the permission scope (``admin`` is a
    wildcard) and either owns the resource or is an admin.
    """

    async def check(self, actor: Actor, permission: Permission, owner: Optional[str]) -> None:
        if not actor.has_scope(permission.value):
            raise PermissionDenied(
                "Permission denied.", permission=permission.value, reason="missing_scope"
            )
        if owner is None or (actor.identity_id != owner and not actor.is_admin()):
            raise PermissionDenied(
                "Permission denied.", permission=permission.value, reason="not_owner"
            )


def resolve_owner(resource: Resource) -> Optional[str]:
    """Translate a resource to the identity that owns it."""
    if isinstance(resource, PublicKey):
        return resource.owner
    return resource


class PermissionGate:
    def __init__(self, authority: PermissionAuthority, lookup: Optional[StoredKeyLookup] = None):
        self._authority = authority
        self._lookup = lookup

    def bind_lookup(self, lookup: StoredKeyLookup) -> None:
        self._lookup = lookup

    async def require(self, actor, permission: Permission, resource: Resource) -> None:
        if actor is None:
            return
        if actor is ANONYMOUS:
            raise PermissionDenied(
                "Permission denied. Authentication required.",
                permission=permission.value,
                reason="anonymous",
            )
        await self._authority.check(actor, permission, resolve_owner(resource))

    async def allows(self, actor, permission: Permission, resource: Resource) -> bool:
        try:
            await self.require(actor, permission, resource)
        except PermissionDenied as exc:
            logger.debug(
                "permission.soft_deny",
                extra={"permission": permission.value, "reason": exc.details.get("reason")},
            )
            return False
        return True

    async def require_stored(self, actor, permission: Permission, key_id: str) -> PublicKey:
        """Check *permission* against the owner currently on record.

        The caller-supplied owner is never consulted, so a payload cannot
        redirect the check to an identity the actor controls.  Returns the
        stored key; lookup errors (e.g. not found) propagate.
        """
        if actor is ANONYMOUS:
            raise PermissionDenied(
                "Permission denied. Authentication required.",
                permission=permission.value,
                reason="anonymous",
            )
        if self._lookup is None:
            raise RuntimeError("PermissionGate has no stored-key lookup bound")
        stored = await self._lookup(key_id)
        await self.require(actor, permission, stored)
        return stored
