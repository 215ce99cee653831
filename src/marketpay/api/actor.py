"""Caller identity from upstream auth headers.

Authentication happens in front of this service; it forwards the verified
user as X-Actor-Id / X-Actor-Role. The system role is internal only and
cannot be asserted over HTTP.
"""

from __future__ import annotations

from fastapi import Header, HTTPException

from marketpay.domain.models import Actor, ActorRole

ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"

_HTTP_ROLES = {ActorRole.REQUESTER, ActorRole.PROVIDER, ActorRole.ADMIN}


def get_actor(
    actor_id: str | None = Header(None, alias=ACTOR_ID_HEADER),
    actor_role: str | None = Header(None, alias=ACTOR_ROLE_HEADER),
) -> Actor:
    """FastAPI dependency returning the calling Actor.

    Raises:
        HTTPException 401: Missing actor id.
        HTTPException 403: Unknown or non-assignable role.
    """
    if not actor_id or not actor_id.strip():
        raise HTTPException(status_code=401, detail="Missing actor identity")

    try:
        role = ActorRole((actor_role or ActorRole.REQUESTER.value).strip().lower())
    except ValueError:
        raise HTTPException(status_code=403, detail="Unknown actor role") from None
    if role not in _HTTP_ROLES:
        raise HTTPException(status_code=403, detail="Role not allowed")

    return Actor(id=actor_id.strip(), role=role)
