import uuid

from fastapi import APIRouter, Depends, Request

from backend import StoreBackend
from errors import AuthFailure
from identity import ROLE_GUEST, IdentityService, check_password, hash_password
from logging_config import get_logger
from routers.deps import current_user, get_backend, get_identity_service
from schemas.auth import GuestLoginRequest, LoginRequest, MeResponse, TokenResponse

logger = get_logger(__name__)

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])


@auth_router.post("/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    request: Request,
    backend: StoreBackend = Depends(get_backend),
    identity_service: IdentityService = Depends(get_identity_service),
):
    client_host = request.client.host if request.client else "unknown"
    credentials = backend.get_user_credentials(body.username)
    if not credentials or not check_password(body.password, credentials.get("password_hash")):
        logger.warning(f"Login failed for {body.username!r} from {client_host}")
        raise AuthFailure("Invalid credentials")

    token, expires_at = identity_service.issue_token(credentials["id"], credentials["role"])
    logger.info(f"User {credentials['id']} ({body.username}) logged in from {client_host}")
    return TokenResponse(token=token, expires_at=expires_at, user=backend.get_user(credentials["id"]))


@auth_router.post("/guest", response_model=TokenResponse)
async def login_guest(
    body: GuestLoginRequest,
    backend: StoreBackend = Depends(get_backend),
    identity_service: IdentityService = Depends(get_identity_service),
):
    # Guests never log in again with a password; the hash only fills the column
    user = backend.create_user(
        username=f"guest_{uuid.uuid4().hex[:8]}",
        password_hash=hash_password(uuid.uuid4().hex),
        name=body.name,
        role=ROLE_GUEST,
    )
    token, expires_at = identity_service.issue_token(user["id"], user["role"])
    logger.info(f"Guest session created for {user['id']} ({body.name})")
    return TokenResponse(token=token, expires_at=expires_at, user=user)


@auth_router.get("/me", response_model=MeResponse)
async def me(user: dict = Depends(current_user)):
    return MeResponse(user=user)
