"""Request authentication for the key API.

Callers present ``Authorization: Bearer kh_…``.  A request without the
header is served as ``ANONYMOUS``; a header with a bad token is rejected.
"""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status

from keyhub.models import ANONYMOUS, Actor
from keyhub.utils import security_utils
from keyhub.utils.dependencies import get_supabase_async


def _bearer_token(authorization: str) -> str:
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid_authorization_header",
        )
    return token.strip()


async def require_actor(
    request: Request,
    authorization: str | None = Header(None),
    supabase=Depends(get_supabase_async),
):
    """Resolve the caller to an :class:`Actor`, or ``ANONYMOUS``.

    Permission decisions are left to the key service; this only proves who
    the caller is.
    """
    if authorization is None:
        request.state.identity_id = None
        return ANONYMOUS

    token = _bearer_token(authorization)
    # looked up at call time so tests can monkeypatch security_utils
    actor: Actor = await security_utils.verify_api_token(token, supabase)

    request.state.identity_id = actor.identity_id
    request.state.token_id = actor.token_id
    return actor
