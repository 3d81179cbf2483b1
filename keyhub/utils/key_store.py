from __future__ import annotations

"""Persistence for public key records (Supabase ``public_keys`` table).

Rows are addressed by SHA-256 lookup hashes of the key id, the owner and the
key material; the table carries two unique constraints:

* ``public_keys_id_hash_key`` on ``id_hash``
* ``public_keys_owner_material_key`` on ``(owner_hash, material_hash)``,
  partial: ``where material_hash is not null``

Every write touches exactly one row, so the store relies on PostgREST's
single-statement atomicity and never needs a transaction.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Protocol

from supabase import AsyncClient

from keyhub.errors import DuplicateError
from keyhub.models import KeyCapability, KeyStatus, PrivateKey, PublicKey, PublicKeyRecord, PublicKeyRow
from keyhub.utils.database import DuplicateRowError, insert_data, query_many, query_one, update_data
from keyhub.utils.logger import logger
from keyhub.utils.security_utils import lookup_hash

__all__ = [
    "PUBLIC_KEYS_TABLE",
    "ID_CONSTRAINT",
    "OWNER_MATERIAL_CONSTRAINT",
    "DESCRIPTIVE_COLUMNS",
    "IdGenerator",
    "UuidIdGenerator",
    "KeyRecordStore",
]

PUBLIC_KEYS_TABLE = "public_keys"
ID_CONSTRAINT = "public_keys_id_hash_key"
OWNER_MATERIAL_CONSTRAINT = "public_keys_owner_material_key"

# Only these columns may change after insert (besides the revoke transition).
DESCRIPTIVE_COLUMNS = frozenset({"label", "type"})


class IdGenerator(Protocol):
    async def generate_id(self) -> str: ...


class UuidIdGenerator:
    """Unique opaque ids; monotonicity is not required."""

    async def generate_id(self) -> str:
        return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


class KeyRecordStore:
    def __init__(self, supabase: AsyncClient, table_name: str = PUBLIC_KEYS_TABLE):
        self._supabase = supabase
        self._table = table_name

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert(self, public_key: PublicKey) -> PublicKeyRecord:
        """Insert a fully populated public key and return the stored record.

        Raises :class:`DuplicateError` on an id collision, or when the owner
        already registered the same key material.
        """
        material = public_key.material
        row = PublicKeyRow.from_public_key(
            public_key,
            id_hash=lookup_hash(public_key.id),
            owner_hash=lookup_hash(public_key.owner),
            material_hash=lookup_hash(material) if material is not None else None,
            now=_now(),
        )
        try:
            stored = await insert_data(self._supabase, self._table, row.model_dump(mode="json"))
        except DuplicateRowError as exc:
            if exc.constraint == OWNER_MATERIAL_CONSTRAINT:
                raise DuplicateError(
                    "Duplicate public key. The owner already registered this key material.",
                    key_id=public_key.id,
                    constraint="owner_material",
                ) from exc
            raise DuplicateError(
                "Duplicate public key id.", key_id=public_key.id, constraint="id"
            ) from exc
        return PublicKeyRow.model_validate(stored).to_record()

    async def update_descriptive(
        self,
        key_id: str,
        fields: dict[str, Any],
        exclude: Iterable[str] = (),
    ) -> int:
        """Apply a partial update of descriptive columns; return rows matched.

        Status, owner, ids and key material are never written here, whatever
        *fields* contains.
        """
        excluded = set(exclude)
        values = {
            k: v for k, v in fields.items()
            if k in DESCRIPTIVE_COLUMNS and k not in excluded and v is not None
        }
        dropped = sorted(set(fields) - set(values))
        if dropped:
            logger.debug("key_store.update_descriptive.dropped", extra={"fields": dropped})
        values["updated_at"] = _now().isoformat()
        rows = await update_data(
            self._supabase,
            self._table,
            update_values=values,
            filters={"id_hash": lookup_hash(key_id)},
            error_message="public_key_update_failed",
        )
        return len(rows)

    async def update_status(
        self,
        key_id: str,
        from_status: KeyStatus,
        to_status: KeyStatus,
        revoked_at: Optional[datetime],
        private_key: Optional[PrivateKey] = None,
    ) -> int:
        """Compare-and-set the status column; return rows matched (0 or 1).

        The ``status == from_status`` filter makes concurrent transitions of
        the same key resolve to exactly one winner.
        """
        values: dict[str, Any] = {
            "status": to_status.value,
            "revoked_at": revoked_at.isoformat() if revoked_at else None,
            "updated_at": _now().isoformat(),
        }
        if private_key is not None:
            values["private_key"] = private_key.model_dump(mode="json", exclude_none=True)
        rows = await update_data(
            self._supabase,
            self._table,
            update_values=values,
            filters={"id_hash": lookup_hash(key_id), "status": from_status.value},
            error_message="public_key_status_update_failed",
        )
        return len(rows)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_by_id(self, key_id: str) -> Optional[PublicKeyRecord]:
        row = await query_one(self._supabase, self._table, match={"id_hash": lookup_hash(key_id)})
        return PublicKeyRow.model_validate(row).to_record() if row else None

    async def find_by_owner_and_material(self, owner: str, material: str) -> Optional[PublicKeyRecord]:
        row = await query_one(
            self._supabase,
            self._table,
            match={"owner_hash": lookup_hash(owner), "material_hash": lookup_hash(material)},
        )
        return PublicKeyRow.model_validate(row).to_record() if row else None

    async def find_all_by_owner(
        self,
        owner: str,
        capability: Optional[KeyCapability] = None,
    ) -> List[PublicKeyRecord]:
        filters: dict[str, Any] = {"owner_hash": lookup_hash(owner)}
        if capability == KeyCapability.sign:
            # only keys whose private half is stored server-side can sign
            filters["private_key"] = ("not_is", "null")
        rows = await query_many(self._supabase, self._table, match=filters, order_by=("created_at", False))
        return [PublicKeyRow.model_validate(row).to_record() for row in rows]
