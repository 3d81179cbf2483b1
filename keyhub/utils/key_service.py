from __future__ import annotations

"""Key lifecycle orchestration: add, get, list, update and revoke.

This is the only layer with business-rule authority.  It validates key
pairs, consults the permission gate, fills defaults, and keeps the optional
cache coherent with writes.

Actors:

* ``ANONYMOUS`` – public caller: reads succeed without private keys, writes
  are denied
* ``None`` – internal server call: permission checks are bypassed
* :class:`~keyhub.models.Actor` – checked against the permission authority

State machine per key: ``active`` → (revoke) → ``disabled`` (terminal).
"""

from datetime import datetime, timezone
from typing import Any, Iterable, List, Mapping, Optional
from urllib.parse import quote

from keyhub.errors import DuplicateError, KeyValidationError, NotFoundError, PermissionDenied
from keyhub.models import (
    ANONYMOUS,
    DEFAULT_KEY_TYPE,
    KeyListOptions,
    KeyStatus,
    Permission,
    PrivateKey,
    PublicKey,
    PublicKeyQuery,
    PublicKeyRecord,
    PublicKeyResult,
    actor_id,
)
from keyhub.settings import KeyConfig
from keyhub.utils.key_cache import KeyCache
from keyhub.utils.key_store import IdGenerator, KeyRecordStore, UuidIdGenerator
from keyhub.utils.key_validation import KeyPairValidator
from keyhub.utils.logger import logger
from keyhub.utils.permissions import PermissionGate, ScopePermissionAuthority

__all__ = ["KeyLifecycleService", "UPDATE_EXCLUDED_FIELDS"]

# Never writable through update_public_key; silently dropped.
UPDATE_EXCLUDED_FIELDS = frozenset({
    "id",
    "owner",
    "status",
    "revoked_at",
    "public_key_pem",
    "public_key_base58",
    "private_key",
})


def _now() -> datetime:
    return datetime.now(timezone.utc)


class KeyLifecycleService:
    def __init__(
        self,
        store: KeyRecordStore,
        *,
        config: KeyConfig,
        id_generator: Optional[IdGenerator] = None,
        validator: Optional[KeyPairValidator] = None,
        gate: Optional[PermissionGate] = None,
        cache: Optional[KeyCache] = None,
    ):
        """
        Args:
            store: persistence for key records
            config: base URI/path for ids and the cache TTL
            id_generator: source of id slugs (uuid4 hex by default)
            validator: key-pair validator (RSA + Ed25519 by default)
            gate: permission gate (token-scope authority by default)
            cache: read-through cache; ``None`` disables caching
        """
        self._store = store
        self._config = config
        self._ids = id_generator or UuidIdGenerator()
        self._validator = validator or KeyPairValidator()
        self._gate = gate or PermissionGate(ScopePermissionAuthority())
        self._gate.bind_lookup(self._get_stored_key)
        self._cache = cache

    @property
    def cache_enabled(self) -> bool:
        return self._cache is not None

    # ------------------------------------------------------------------
    # Ids
    # ------------------------------------------------------------------

    def create_public_key_id(self, slug: str) -> str:
        """Build a key id from the configured base URI/path and a short name."""
        return f"{self._config.base_uri}{self._config.base_path}/{quote(slug, safe='')}"

    async def generate_public_key_id(self) -> str:
        return self.create_public_key_id(await self._ids.generate_id())

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def add_public_key(
        self,
        actor,
        public_key: PublicKey,
        private_key: Optional[PrivateKey] = None,
    ) -> PublicKeyRecord:
        """Validate, authorize, fill defaults and persist a new public key.

        *private_key* is only given when the server should store it; it is
        embedded under the public key.  The caller's models are not mutated.
        """
        if not public_key.owner:
            raise KeyValidationError("Could not add public key. 'owner' is required.")
        self._validator.validate(public_key, private_key)
        await self._gate.require(actor, Permission.create, public_key)

        public_key = public_key.model_copy(deep=True)
        # a private key only ever arrives through the validated argument
        public_key.private_key = None

        if public_key.id is not None:
            # TODO: decide whether forcing an id needs its own permission
            logger.warning(
                "adding public key with explicit id",
                extra={"key_id": public_key.id, "actor": actor_id(actor)},
            )
        else:
            public_key.id = await self.generate_public_key_id()

        now = _now()
        public_key.status = KeyStatus.active
        public_key.revoked_at = None
        if public_key.label is None:
            public_key.label = f"Key {int(now.timestamp() * 1000)}"
        if public_key.type is None:
            public_key.type = DEFAULT_KEY_TYPE

        # log prior to adding private key
        logger.debug(
            "adding public key",
            extra={"key_id": public_key.id, "owner": public_key.owner, "algorithm": public_key.algorithm.value},
        )

        if private_key is not None:
            private_key = private_key.model_copy(deep=True)
            private_key.type = private_key.type or public_key.type
            private_key.label = private_key.label or public_key.label
            private_key.public_key = public_key.id
            private_key.status = KeyStatus.active
            private_key.revoked_at = None
            public_key.private_key = private_key

        return await self._store.insert(public_key)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_public_key(self, actor, query: PublicKeyQuery) -> PublicKeyResult:
        """Look up one key by id, or by owner plus key material.

        The private key is returned in ``PublicKeyResult.private_key`` only
        for the internal actor or an actor passing PUBLIC_KEY_ACCESS; a
        denied check only hides it.
        """
        use_cache = self._cache is not None and query.id is not None and actor is ANONYMOUS
        if use_cache:
            cached = await self._cache.get(query.id)
            if cached is not None:
                return PublicKeyResult(public_key=cached.public_key.without_private_key(), meta=cached.meta)

        if query.id is not None:
            record = await self._store.find_by_id(query.id)
        else:
            record = await self._store.find_by_owner_and_material(query.owner, query.material)
        if record is None:
            raise NotFoundError(
                "Public key not found.",
                **({"key_id": query.id} if query.id is not None else {"owner": query.owner}),
            )

        # ANONYMOUS is refused without consulting the authority, None always passes
        include_private = await self._gate.allows(actor, Permission.access, record.public_key)

        if use_cache:
            await self._cache.set(query.id, record, self._config.cache_ttl)

        return PublicKeyResult(
            public_key=record.public_key.without_private_key(),
            meta=record.meta,
            private_key=record.public_key.private_key if include_private else None,
        )

    async def get_public_keys(
        self,
        owner_id: str,
        actor=ANONYMOUS,
        options: Optional[KeyListOptions] = None,
    ) -> List[PublicKeyRecord]:
        """Return every key of *owner_id* in store order.

        Private keys stay embedded only when *actor* may access them.
        """
        options = options or KeyListOptions()
        records = await self._store.find_all_by_owner(owner_id, options.capability)
        if await self._gate.allows(actor, Permission.access, owner_id):
            return records
        return [
            record.model_copy(update={"public_key": record.public_key.without_private_key()})
            for record in records
        ]

    async def _get_stored_key(self, key_id: str) -> PublicKey:
        """Internal lookup bypassing permissions; private key re-embedded."""
        result = await self.get_public_key(None, PublicKeyQuery(id=key_id))
        if result.private_key is None:
            return result.public_key
        return result.public_key.model_copy(update={"private_key": result.private_key})

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update_public_key(self, actor, public_key: PublicKey) -> None:
        """Update descriptive fields (label, type) of a stored key.

        The EDIT check runs against the owner on record; ``owner``, status
        and key material in *public_key* are ignored.
        """
        if public_key.id is None:
            raise NotFoundError("Could not update public key. Public key not found.")
        await self._gate.require_stored(actor, Permission.edit, public_key.id)

        fields: Mapping[str, Any] = public_key.model_dump(exclude_none=True, exclude=set(UPDATE_EXCLUDED_FIELDS))
        matched = await self._store.update_descriptive(public_key.id, dict(fields), exclude=UPDATE_EXCLUDED_FIELDS)
        if matched == 0:
            raise NotFoundError(
                "Could not update public key. Public key not found.", key_id=public_key.id
            )

        if self._cache is not None:
            await self._cache.evict(public_key.id)
        logger.info("public key updated", extra={"key_id": public_key.id, "fields": sorted(fields)})

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    async def revoke_public_key(self, actor, key_id: str) -> PublicKey:
        """Disable a key (and its stored private key) exactly once.

        A second revoke, or losing a concurrent race, raises
        :class:`NotFoundError`.  Returns the key with revocation fields set.
        """
        if actor is ANONYMOUS:
            raise PermissionDenied(
                "Permission denied. Authentication required.",
                permission=Permission.remove.value,
                reason="anonymous",
            )
        stored = await self._get_stored_key(key_id)
        await self._gate.require(actor, Permission.remove, stored)

        revoked_at = _now()
        revoked = stored.model_copy(deep=True, update={"status": KeyStatus.disabled, "revoked_at": revoked_at})
        if revoked.private_key is not None:
            revoked.private_key = revoked.private_key.model_copy(
                update={"status": KeyStatus.disabled, "revoked_at": revoked_at}
            )

        matched = await self._store.update_status(
            key_id,
            KeyStatus.active,
            KeyStatus.disabled,
            revoked_at,
            private_key=revoked.private_key,
        )
        if matched == 0:
            raise NotFoundError(
                "Could not revoke public key. Public key not found or already revoked.",
                key_id=key_id,
            )

        if self._cache is not None:
            await self._cache.evict(key_id)
        logger.info("public key revoked", extra={"key_id": key_id, "actor": actor_id(actor)})
        return revoked

    # ------------------------------------------------------------------
    # Startup provisioning
    # ------------------------------------------------------------------

    async def provision_keys(self, entries: Iterable[Mapping[str, Any]]) -> int:
        """Add configured keys as the internal actor, skipping duplicates.

        Returns the number of keys actually inserted.
        """
        inserted = 0
        for entry in entries:
            public_key = PublicKey.model_validate(entry["public_key"])
            raw_private = entry.get("private_key")
            private_key = PrivateKey.model_validate(raw_private) if raw_private else None
            try:
                await self.add_public_key(None, public_key, private_key)
            except DuplicateError as exc:
                logger.debug("provision.skip_duplicate", extra={"key_id": exc.key_id})
                continue
            inserted += 1
        logger.info("provisioned public keys", extra={"inserted": inserted})
        return inserted
