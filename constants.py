import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

REDIS_URL = os.getenv(
    "REDIS_URL",
    f"redis://:{REDIS_PASSWORD}@{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}" if REDIS_PASSWORD
    else f"redis://{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}",
)

# "memory" keeps everything in-process, "redis" persists rows in Redis
STORE_BACKEND = os.getenv("STORE_BACKEND", "memory")
# "local" fans out in-process, "redis" relays events between instances over pub/sub
EVENT_BUS = os.getenv("EVENT_BUS", "local")

DEV_JWT_SECRET = "dev-secret-change-me"
JWT_SECRET = os.getenv("JWT_SECRET", DEV_JWT_SECRET)
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
STAFF_TOKEN_TTL_SECONDS = int(os.getenv("STAFF_TOKEN_TTL_SECONDS", 7 * 24 * 3600))
GUEST_TOKEN_TTL_SECONDS = int(os.getenv("GUEST_TOKEN_TTL_SECONDS", 24 * 3600))

OUTBOUND_QUEUE_SIZE = int(os.getenv("OUTBOUND_QUEUE_SIZE", 256))

FRONTEND_URL = os.getenv("FRONTEND_URL", "*")
SEED_DEFAULT_USERS = os.getenv("SEED_DEFAULT_USERS", "1").lower() in ("1", "true", "yes", "on")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))
RELOAD = os.getenv("RELOAD", "0").lower() in ("1", "true", "yes", "on")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)
