from typing import Optional

from fastapi import Depends, Header, Request

from backend import StoreBackend
from errors import AuthFailure, Forbidden
from identity import ROLE_MENTOR, Identity, IdentityService, bearer_token
from realtime.channel import RealtimeHub


def get_backend(request: Request) -> StoreBackend:
    return request.app.state.backend


def get_identity_service(request: Request) -> IdentityService:
    return request.app.state.identity


def get_hub(request: Request) -> RealtimeHub:
    return request.app.state.hub

def token_identity(
    authorization: Optional[str] = Header(default=None),
    identity_service: IdentityService = Depends(get_identity_service),
) -> Identity:
    token = bearer_token(authorization)
    if not token:
        raise AuthFailure("Authorization header missing or invalid")
    return identity_service.verify_token(token)


def stored_identity(backend: StoreBackend, identity: Identity) -> Identity:
    """Rebuild a token identity from the user row so role changes and deletions apply at once."""
    user = backend.get_user(identity.user_id)
    if not user:
        raise AuthFailure("User no longer exists")
    return Identity(user_id=user["id"], role=user["role"])


def current_user(
    identity: Identity = Depends(token_identity),
    backend: StoreBackend = Depends(get_backend),
) -> dict:
    user = backend.get_user(identity.user_id)
    if not user:
        raise AuthFailure("User no longer exists")
    return user


def current_identity(
    identity: Identity = Depends(token_identity),
    backend: StoreBackend = Depends(get_backend),
) -> Identity:
    return stored_identity(backend, identity)


def require_mentor(identity: Identity = Depends(current_identity)) -> Identity:
    if identity.role != ROLE_MENTOR:
        raise Forbidden("Only mentors can perform this action")
    return identity


def require_staff(identity: Identity = Depends(current_identity)) -> Identity:
    if not identity.is_staff:
        raise Forbidden("Only support staff can perform this action")
    return identity
