from typing import List

from fastapi import APIRouter, Depends

from backend import StoreBackend
from errors import Conflict
from identity import Identity, hash_password
from logging_config import get_logger
from routers.deps import get_backend, require_mentor, require_staff
from schemas.requests import SuccessResponse
from schemas.users import CreateUserRequest, UpdateUserRequest, UserOut

logger = get_logger(__name__)

users_router = APIRouter(prefix="/api/users", tags=["users"])


@users_router.get("", response_model=List[UserOut])
async def list_users(
    identity: Identity = Depends(require_staff),
    backend: StoreBackend = Depends(get_backend),
):
    return backend.list_users()


@users_router.post("", response_model=UserOut, status_code=201)
async def create_user(
    body: CreateUserRequest,
    identity: Identity = Depends(require_mentor),
    backend: StoreBackend = Depends(get_backend),
):
    user = backend.create_user(
        username=body.username,
        password_hash=hash_password(body.password),
        name=body.name,
        role=body.role,
    )
    logger.info(f"Mentor {identity.user_id} created user {user['id']} ({body.role})")
    return user


@users_router.patch("/{user_id}", response_model=UserOut)
async def update_user(
    user_id: str,
    body: UpdateUserRequest,
    identity: Identity = Depends(require_mentor),
    backend: StoreBackend = Depends(get_backend),
):
    return backend.update_user(
        user_id,
        name=body.name,
        role=body.role,
        password_hash=hash_password(body.password) if body.password else None,
    )


@users_router.delete("/{user_id}", response_model=SuccessResponse)
async def delete_user(
    user_id: str,
    identity: Identity = Depends(require_mentor),
    backend: StoreBackend = Depends(get_backend),
):
    if user_id == identity.user_id:
        raise Conflict("You cannot delete your own account")
    backend.delete_user(user_id)
    return SuccessResponse()
