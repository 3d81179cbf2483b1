"""Public key lifecycle endpoints.

Keys are addressed by their slug, the last path segment of the key id
(``{SERVER_BASE_URI}{KEY_BASE_PATH}/{slug}``).  Reads work anonymously;
writes need a ``kh_`` API token whose identity passes the permission check.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status

from keyhub.main import limiter
from keyhub.errors import PermissionDenied
from keyhub.models import (
    AddPublicKeyRequest,
    AuditAction,
    AuditStatus,
    ErrorResponse,
    KeyCapability,
    KeyListOptions,
    PublicKey,
    PublicKeyQuery,
    PublicKeyRecord,
    PublicKeyResult,
    actor_id,
)
from keyhub.utils.audit import log_audit_event
from keyhub.utils.auth import require_actor
from keyhub.utils.dependencies import get_key_service, get_supabase_async
from keyhub.utils.key_service import KeyLifecycleService

router = APIRouter(prefix="/v1/keys", tags=["keys"])

_ERRORS = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


def _public_only(record: PublicKeyRecord) -> PublicKeyRecord:
    return record.model_copy(update={"public_key": record.public_key.without_private_key()})


@router.post(
    "",
    response_model=PublicKeyRecord,
    status_code=status.HTTP_201_CREATED,
    responses=_ERRORS,
)
async def add_public_key(
    payload: AddPublicKeyRequest,
    actor=Depends(require_actor),
    service: KeyLifecycleService = Depends(get_key_service),
    supabase=Depends(get_supabase_async),
):
    explicit_id = payload.public_key.id is not None
    try:
        record = await service.add_public_key(actor, payload.public_key, payload.private_key)
    except PermissionDenied:
        await log_audit_event(
            supabase,
            action=AuditAction.key_create,
            actor_id=actor_id(actor),
            status=AuditStatus.denied,
            token_id=getattr(actor, "token_id", None),
            key_id=payload.public_key.id,
        )
        raise

    await log_audit_event(
        supabase,
        action=AuditAction.key_create,
        actor_id=actor_id(actor),
        status=AuditStatus.success,
        token_id=getattr(actor, "token_id", None),
        key_id=record.public_key.id,
        metadata={
            "algorithm": record.public_key.algorithm.value,
            "explicit_id": explicit_id,
            "private_key_stored": payload.private_key is not None,
        },
    )
    # the stored private key is never echoed back on create
    return _public_only(record)


@router.get("", response_model=List[PublicKeyRecord])
async def list_public_keys(
    owner: str = Query(..., min_length=1),
    capability: Optional[KeyCapability] = Query(None),
    actor=Depends(require_actor),
    service: KeyLifecycleService = Depends(get_key_service),
):
    return await service.get_public_keys(owner, actor, KeyListOptions(capability=capability))


@router.get("/{slug}", response_model=PublicKeyResult, responses={404: {"model": ErrorResponse}})
@limiter.limit("60/minute")
async def get_public_key(
    request: Request,
    slug: str,
    actor=Depends(require_actor),
    service: KeyLifecycleService = Depends(get_key_service),
):
    key_id = service.create_public_key_id(slug)
    return await service.get_public_key(actor, PublicKeyQuery(id=key_id))


@router.patch("/{slug}", status_code=status.HTTP_204_NO_CONTENT, responses=_ERRORS)
async def update_public_key(
    slug: str,
    payload: PublicKey,
    actor=Depends(require_actor),
    service: KeyLifecycleService = Depends(get_key_service),
    supabase=Depends(get_supabase_async),
):
    key_id = service.create_public_key_id(slug)
    # owner comes from the stored record, never from the payload
    public_key = payload.model_copy(update={"id": key_id, "owner": None})
    try:
        await service.update_public_key(actor, public_key)
    except PermissionDenied:
        await log_audit_event(
            supabase,
            action=AuditAction.key_update,
            actor_id=actor_id(actor),
            status=AuditStatus.denied,
            token_id=getattr(actor, "token_id", None),
            key_id=key_id,
        )
        raise

    await log_audit_event(
        supabase,
        action=AuditAction.key_update,
        actor_id=actor_id(actor),
        token_id=getattr(actor, "token_id", None),
        key_id=key_id,
        metadata={"fields": sorted(k for k in ("label", "type") if getattr(payload, k) is not None)},
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete(
    "/{slug}",
    response_model=PublicKey,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_ERRORS,
)
async def revoke_public_key(
    slug: str,
    actor=Depends(require_actor),
    service: KeyLifecycleService = Depends(get_key_service),
    supabase=Depends(get_supabase_async),
):
    key_id = service.create_public_key_id(slug)
    try:
        revoked = await service.revoke_public_key(actor, key_id)
    except PermissionDenied:
        await log_audit_event(
            supabase,
            action=AuditAction.key_revoke,
            actor_id=actor_id(actor),
            status=AuditStatus.denied,
            token_id=getattr(actor, "token_id", None),
            key_id=key_id,
        )
        raise

    await log_audit_event(
        supabase,
        action=AuditAction.key_revoke,
        actor_id=actor_id(actor),
        token_id=getattr(actor, "token_id", None),
        key_id=key_id,
        metadata={"revoked_at": revoked.revoked_at.isoformat()},
    )
    return revoked.without_private_key()
