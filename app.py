import functools
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from backend import RedisBackend, StoreBackend, create_redis_client, get_backend
from constants import DEV_JWT_SECRET, EVENT_BUS, FRONTEND_URL, LOG_FILE, LOG_LEVEL, OUTBOUND_QUEUE_SIZE, SEED_DEFAULT_USERS
from errors import AuthFailure, register_exception_handlers
from identity import ROLE_MENTOR, ROLE_SUPPORT, IdentityService, hash_password
from logging_config import get_logger, setup_logging
from realtime.bus import LocalEventBus, RedisEventBus
from realtime.channel import RealtimeHub
from routers.auth import auth_router
from routers.deps import stored_identity
from routers.requests import can_follow, requests_router
from routers.users import users_router

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)

DEFAULT_USERS = (
    {"user_id": "user-sarah", "username": "sarah", "name": "Sarah Wilson", "role": ROLE_SUPPORT, "password": "agent123"},
    {"user_id": "user-mike", "username": "mike", "name": "Mike Johnson", "role": ROLE_SUPPORT, "password": "agent123"},
    {"user_id": "user-emma", "username": "emma", "name": "Emma Davis", "role": ROLE_MENTOR, "password": "mentor123"},
)


def seed_default_users(backend: StoreBackend) -> int:
    if backend.count_users() > 0:
        return 0
    logger.info("Seeding default staff users")
    for user in DEFAULT_USERS:
        backend.create_user(
            username=user["username"],
            password_hash=hash_password(user["password"]),
            name=user["name"],
            role=user["role"],
            user_id=user["user_id"],
        )
    return len(DEFAULT_USERS)


def _bus_factory(kind: str, backend: StoreBackend):
    if kind == "local":
        return LocalEventBus
    if kind == "redis":
        client = backend.redis_client if isinstance(backend, RedisBackend) else create_redis_client()
        return functools.partial(RedisEventBus, redis_client=client)
    raise ValueError(f"Unknown EVENT_BUS {kind!r}")


def create_app(
    backend: Optional[StoreBackend] = None,
    identity_service: Optional[IdentityService] = None,
    event_bus: str = EVENT_BUS,
    queue_size: int = OUTBOUND_QUEUE_SIZE,
    seed: bool = SEED_DEFAULT_USERS,
) -> FastAPI:
    backend = backend or get_backend()
    identity_service = identity_service or IdentityService()

    def join_policy(identity, request_id):
        try:
            identity = stored_identity(backend, identity)
        except AuthFailure:
            return False
        return can_follow(identity, backend.get_request(request_id))

    hub = RealtimeHub(
        identity_service,
        queue_size=queue_size,
        bus_factory=_bus_factory(event_bus, backend),
        join_policy=join_policy,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if identity_service.secret == DEV_JWT_SECRET:
            logger.warning("JWT_SECRET is not set, using the development secret")
        if seed:
            seed_default_users(backend)
        await hub.start()
        logger.info(f"Support desk started (store={backend.name}, bus={hub.bus.name})")
        yield
        await hub.stop()
        logger.info("Support desk stopped")

    app = FastAPI(title="Support Desk", lifespan=lifespan)
    app.state.backend = backend
    app.state.identity = identity_service
    app.state.hub = hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[FRONTEND_URL] if FRONTEND_URL != "*" else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    app.include_router(auth_router)
    app.include_router(requests_router)
    app.include_router(users_router)

    @app.get("/health")
    async def health():
        return {
            "status": "ok" if backend.ping() else "degraded",
            "store": backend.name,
            "bus": hub.bus.name,
            "connections": len(hub.sessions),
            "rooms": hub.rooms.room_count(),
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Persistent channel. Credential via `Authorization` header, `?token=` or
        the `bearer, <token>` subprotocol pair."""
        await hub.serve(websocket)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
