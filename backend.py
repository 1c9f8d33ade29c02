import itertools
import json
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

import redis

from constants import REDIS_URL, STORE_BACKEND
from errors import Conflict, NotFound, ValidationFailure
from identity import ROLES, STAFF_ROLES
from logging_config import get_logger
from redis_keys import (
    REDIS_GUEST_REQUESTS_KEY,
    REDIS_MESSAGE_KEY,
    REDIS_REQUEST_KEY,
    REDIS_REQUEST_MESSAGES_KEY,
    REDIS_REQUESTS_INDEX,
    REDIS_USER_ASSIGNED_KEY,
    REDIS_USER_KEY,
    REDIS_USER_MESSAGES_KEY,
    REDIS_USERNAME_KEY,
    REDIS_USERS_INDEX,
)

logger = get_logger(__name__)

PRIORITIES = ("LOW", "MEDIUM", "HIGH", "URGENT")
STATUSES = ("PENDING", "IN_PROGRESS", "RESOLVED", "CLOSED")

USER = "user"
REQUEST = "request"
MESSAGE = "message"


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def user_summary(user: Optional[dict]) -> Optional[dict]:
    if not user:
        return None
    return {k: user.get(k) for k in ("id", "username", "name", "role")}


class StoreBackend:
    """Persistence store for users, support requests and chat messages.

    Subclasses only provide row and index primitives; every rule about the
    rows (validation, referential integrity, cascade, ordering) lives here so
    the Redis and in-memory stores behave the same.
    """

    name = "base"

    # -- primitives ---------------------------------------------------------

    def _save(self, kind: str, row: dict) -> None:
        raise NotImplementedError

    def _load(self, kind: str, row_id: str) -> Optional[dict]:
        raise NotImplementedError

    def _remove(self, kind: str, row_id: str) -> None:
        raise NotImplementedError

    def _index_add(self, index: str, row_id: str) -> None:
        raise NotImplementedError

    def _index_remove(self, index: str, row_id: str) -> None:
        raise NotImplementedError

    def _index_ids(self, index: str) -> List[str]:
        """Ids in insertion order (oldest first)."""
        raise NotImplementedError

    def _index_drop(self, index: str) -> None:
        raise NotImplementedError

    def _claim_username(self, username: str, user_id: str) -> bool:
        raise NotImplementedError

    def _lookup_username(self, username: str) -> Optional[str]:
        raise NotImplementedError

    def _release_username(self, username: str) -> None:
        raise NotImplementedError

    def ping(self) -> bool:
        return True

    # -- users --------------------------------------------------------------

    def create_user(self, username: str, password_hash: str, name: str, role: str, user_id: Optional[str] = None) -> dict:
        if role not in ROLES:
            raise ValidationFailure(f"Invalid role. Must be one of: {', '.join(ROLES)}")
        user_id = user_id or str(uuid.uuid4())
        if not self._claim_username(username, user_id):
            raise Conflict("Username already exists")
        row = {
            "id": user_id,
            "username": username,
            "password_hash": password_hash,
            "name": name,
            "role": role,
            "created_at": utcnow(),
        }
        self._save(USER, row)
        self._index_add(REDIS_USERS_INDEX, user_id)
        logger.info(f"Created {role} user {user_id} ({username})")
        return self._public_user(row)

    def get_user(self, user_id: str) -> Optional[dict]:
        row = self._load(USER, user_id)
        return self._public_user(row) if row else None

    def get_user_credentials(self, username: str) -> Optional[dict]:
        user_id = self._lookup_username(username)
        if not user_id:
            return None
        return self._load(USER, user_id)

    def list_users(self) -> List[dict]:
        users = []
        for user_id in self._index_ids(REDIS_USERS_INDEX):
            row = self._load(USER, user_id)
            if row:
                users.append(self._public_user(row))
        return users

    def count_users(self) -> int:
        return len(self._index_ids(REDIS_USERS_INDEX))

    def update_user(self, user_id: str, name: Optional[str] = None, role: Optional[str] = None,
                    password_hash: Optional[str] = None) -> dict:
        row = self._load(USER, user_id)
        if not row:
            raise NotFound("User not found")
        if role is not None and role not in ROLES:
            raise ValidationFailure(f"Invalid role. Must be one of: {', '.join(ROLES)}")
        if name:
            row["name"] = name
        if role:
            row["role"] = role
        if password_hash:
            row["password_hash"] = password_hash
        self._save(USER, row)
        logger.info(f"Updated user {user_id}")
        return self._public_user(row)

    def delete_user(self, user_id: str) -> None:
        row = self._load(USER, user_id)
        if not row:
            raise NotFound("User not found")
        if self._index_ids(REDIS_GUEST_REQUESTS_KEY.format(user_id=user_id)):
            raise Conflict("User still owns support requests")
        if self._index_ids(REDIS_USER_ASSIGNED_KEY.format(user_id=user_id)):
            raise Conflict("User is still assigned to support requests")
        if self._index_ids(REDIS_USER_MESSAGES_KEY.format(user_id=user_id)):
            raise Conflict("User still has messages in support requests")
        self._remove(USER, user_id)
        self._index_remove(REDIS_USERS_INDEX, user_id)
        self._release_username(row["username"])
        logger.info(f"Deleted user {user_id}")

    @staticmethod
    def _public_user(row: dict) -> dict:
        return {k: v for k, v in row.items() if k != "password_hash"}

    # -- requests -----------------------------------------------------------

    def create_request(self, guest_id: str, email: str, issue: str, description: str, category: str,
                       priority: Optional[str] = None) -> dict:
        priority = priority or "MEDIUM"
        if priority not in PRIORITIES:
            raise ValidationFailure(f"Invalid priority. Must be one of: {', '.join(PRIORITIES)}")
        guest = self._load(USER, guest_id)
        if not guest:
            raise NotFound("User not found")
        now = utcnow()
        row = {
            "id": str(uuid.uuid4()),
            "guest_id": guest_id,
            "email": email,
            "issue": issue,
            "description": description,
            "priority": priority,
            "status": "PENDING",
            "category": category,
            "assigned_agent": None,
            "resolved_at": None,
            "created_at": now,
            "updated_at": now,
        }
        self._save(REQUEST, row)
        self._index_add(REDIS_REQUESTS_INDEX, row["id"])
        self._index_add(REDIS_GUEST_REQUESTS_KEY.format(user_id=guest_id), row["id"])
        logger.info(f"Created request {row['id']} for guest {guest_id} (priority={priority})")
        return self._expand_request(row)

    def get_request(self, request_id: str, with_messages: bool = False) -> Optional[dict]:
        row = self._load(REQUEST, request_id)
        if not row:
            return None
        request = self._expand_request(row)
        if with_messages:
            request["messages"] = self.list_messages(request_id)
        return request

    def list_requests(self, status: Optional[str] = None, priority: Optional[str] = None) -> List[dict]:
        requests = []
        for request_id in reversed(self._index_ids(REDIS_REQUESTS_INDEX)):
            row = self._load(REQUEST, request_id)
            if not row:
                continue
            if status and row.get("status") != status:
                continue
            if priority and row.get("priority") != priority:
                continue
            request = self._expand_request(row)
            message_ids = self._index_ids(REDIS_REQUEST_MESSAGES_KEY.format(request_id=request_id))
            last = self._load(MESSAGE, message_ids[-1]) if message_ids else None
            request["last_message"] = self._expand_message(last) if last else None
            requests.append(request)
        return requests

    def update_request(self, request_id: str, patch: Dict[str, Optional[str]]) -> dict:
        row = self._load(REQUEST, request_id)
        if not row:
            raise NotFound("Request not found")
        status = patch.get("status")
        priority = patch.get("priority")
        assigned_agent = patch.get("assigned_agent")
        if status and status not in STATUSES:
            raise ValidationFailure(f"Invalid status. Must be one of: {', '.join(STATUSES)}")
        if priority and priority not in PRIORITIES:
            raise ValidationFailure(f"Invalid priority. Must be one of: {', '.join(PRIORITIES)}")
        if assigned_agent:
            agent = self._load(USER, assigned_agent)
            if not agent:
                raise NotFound("Assigned agent not found")
            if agent.get("role") not in STAFF_ROLES:
                raise ValidationFailure("Assigned agent must be a support or mentor user")

        if status:
            row["status"] = status
            if status == "RESOLVED":
                row["resolved_at"] = utcnow()
        if priority:
            row["priority"] = priority
        if assigned_agent and assigned_agent != row.get("assigned_agent"):
            if row.get("assigned_agent"):
                self._index_remove(REDIS_USER_ASSIGNED_KEY.format(user_id=row["assigned_agent"]), request_id)
            row["assigned_agent"] = assigned_agent
            self._index_add(REDIS_USER_ASSIGNED_KEY.format(user_id=assigned_agent), request_id)
        row["updated_at"] = utcnow()
        self._save(REQUEST, row)
        logger.info(f"Updated request {request_id}: {patch}")
        return self._expand_request(row)

    def delete_request(self, request_id: str) -> None:
        row = self._load(REQUEST, request_id)
        if not row:
            raise NotFound("Request not found")
        self._purge_request(row)
        logger.info(f"Deleted request {request_id} and its messages")

    def delete_all_requests(self) -> int:
        request_ids = self._index_ids(REDIS_REQUESTS_INDEX)
        for request_id in request_ids:
            row = self._load(REQUEST, request_id)
            if row:
                self._purge_request(row)
        self._index_drop(REDIS_REQUESTS_INDEX)
        logger.info(f"Deleted all requests ({len(request_ids)})")
        return len(request_ids)

    def _purge_request(self, row: dict) -> None:
        request_id = row["id"]
        messages_index = REDIS_REQUEST_MESSAGES_KEY.format(request_id=request_id)
        for message_id in self._index_ids(messages_index):
            message = self._load(MESSAGE, message_id)
            if message:
                self._index_remove(REDIS_USER_MESSAGES_KEY.format(user_id=message["sender_id"]), message_id)
            self._remove(MESSAGE, message_id)
        self._index_drop(messages_index)
        self._index_remove(REDIS_GUEST_REQUESTS_KEY.format(user_id=row["guest_id"]), request_id)
        if row.get("assigned_agent"):
            self._index_remove(REDIS_USER_ASSIGNED_KEY.format(user_id=row["assigned_agent"]), request_id)
        self._index_remove(REDIS_REQUESTS_INDEX, request_id)
        self._remove(REQUEST, request_id)

    def _expand_request(self, row: dict) -> dict:
        request = dict(row)
        request["guest"] = user_summary(self._load(USER, row["guest_id"]))
        return request

    # -- messages -----------------------------------------------------------

    def create_message(self, request_id: str, sender_id: str, content: str) -> dict:
        if not self._load(REQUEST, request_id):
            raise NotFound("Request not found")
        if not self._load(USER, sender_id):
            raise NotFound("User not found")
        row = {
            "id": str(uuid.uuid4()),
            "request_id": request_id,
            "sender_id": sender_id,
            "content": content,
            "read": False,
            "created_at": utcnow(),
        }
        self._save(MESSAGE, row)
        self._index_add(REDIS_REQUEST_MESSAGES_KEY.format(request_id=request_id), row["id"])
        self._index_add(REDIS_USER_MESSAGES_KEY.format(user_id=sender_id), row["id"])
        logger.debug(f"Created message {row['id']} in request {request_id} from {sender_id}")
        return self._expand_message(row)

    def get_message(self, message_id: str) -> Optional[dict]:
        row = self._load(MESSAGE, message_id)
        return self._expand_message(row) if row else None

    def list_messages(self, request_id: str) -> List[dict]:
        messages = []
        for message_id in self._index_ids(REDIS_REQUEST_MESSAGES_KEY.format(request_id=request_id)):
            row = self._load(MESSAGE, message_id)
            if row:
                messages.append(self._expand_message(row))
        return messages

    def mark_messages_read(self, request_id: str) -> int:
        updated = 0
        for message_id in self._index_ids(REDIS_REQUEST_MESSAGES_KEY.format(request_id=request_id)):
            row = self._load(MESSAGE, message_id)
            if row and not row.get("read"):
                row["read"] = True
                self._save(MESSAGE, row)
                updated += 1
        logger.debug(f"Marked {updated} messages read in request {request_id}")
        return updated

    def _expand_message(self, row: dict) -> dict:
        message = dict(row)
        message["sender"] = user_summary(self._load(USER, row["sender_id"]))
        return message


class MemoryBackend(StoreBackend):
    """Single-process store. Useful for local dev and tests."""

    name = "memory"

    def __init__(self):
        self._rows: Dict[str, Dict[str, dict]] = {USER: {}, REQUEST: {}, MESSAGE: {}}
        self._indexes: Dict[str, Dict[str, int]] = {}
        self._usernames: Dict[str, str] = {}
        self._seq = itertools.count(1)

    def _save(self, kind, row):
        self._rows[kind][row["id"]] = dict(row)

    def _load(self, kind, row_id):
        row = self._rows[kind].get(row_id)
        return dict(row) if row else None

    def _remove(self, kind, row_id):
        self._rows[kind].pop(row_id, None)

    def _index_add(self, index, row_id):
        self._indexes.setdefault(index, {}).setdefault(row_id, next(self._seq))

    def _index_remove(self, index, row_id):
        self._indexes.get(index, {}).pop(row_id, None)

    def _index_ids(self, index):
        members = self._indexes.get(index, {})
        return sorted(members, key=members.get)

    def _index_drop(self, index):
        self._indexes.pop(index, None)

    def _claim_username(self, username, user_id):
        if username in self._usernames:
            return False
        self._usernames[username] = user_id
        return True

    def _lookup_username(self, username):
        return self._usernames.get(username)

    def _release_username(self, username):
        self._usernames.pop(username, None)


class RedisBackend(StoreBackend):
    """Rows as Redis hashes, ordering through sorted sets scored by a global sequence."""

    name = "redis"
    SEQUENCE_KEY = "store:seq"

    def __init__(self, redis_client: redis.Redis):
        self.redis_client = redis_client
        logger.info("Initializing RedisBackend")

    @staticmethod
    def _key(kind: str, row_id: str) -> str:
        if kind == USER:
            return REDIS_USER_KEY.format(user_id=row_id)
        if kind == REQUEST:
            return REDIS_REQUEST_KEY.format(request_id=row_id)
        return REDIS_MESSAGE_KEY.format(message_id=row_id)

    def ping(self):
        return bool(self.redis_client.ping())

    def _save(self, kind, row):
        key = self._key(kind, row["id"])
        # Every value is JSON encoded so types survive the round trip; None fields are left out
        mapping = {k: json.dumps(v) for k, v in row.items() if v is not None}
        cleared = [k for k, v in row.items() if v is None]
        pipe = self.redis_client.pipeline()
        pipe.hset(key, mapping=mapping)
        if cleared:
            pipe.hdel(key, *cleared)
        pipe.execute()

    def _load(self, kind, row_id):
        data = self.redis_client.hgetall(self._key(kind, row_id))
        if not data:
            return None
        result = {}
        for k, v in data.items():
            try:
                result[k] = json.loads(v)
            except (json.JSONDecodeError, TypeError):
                result[k] = v
        if kind == REQUEST:
            result.setdefault("assigned_agent", None)
            result.setdefault("resolved_at", None)
        return result

    def _remove(self, kind, row_id):
        self.redis_client.delete(self._key(kind, row_id))

    def _index_add(self, index, row_id):
        score = self.redis_client.incr(self.SEQUENCE_KEY)
        self.redis_client.zadd(index, {row_id: score}, nx=True)

    def _index_remove(self, index, row_id):
        self.redis_client.zrem(index, row_id)

    def _index_ids(self, index):
        return list(self.redis_client.zrange(index, 0, -1))

    def _index_drop(self, index):
        self.redis_client.delete(index)

    def _claim_username(self, username, user_id):
        return bool(self.redis_client.set(REDIS_USERNAME_KEY.format(username=username), user_id, nx=True))

    def _lookup_username(self, username):
        return self.redis_client.get(REDIS_USERNAME_KEY.format(username=username))

    def _release_username(self, username):
        self.redis_client.delete(REDIS_USERNAME_KEY.format(username=username))


def create_redis_client(url: str = REDIS_URL) -> redis.Redis:
    try:
        client = redis.Redis.from_url(url, decode_responses=True)
        client.ping()
        logger.info(f"Redis client connected successfully to {url.rsplit('@', 1)[-1]}")
        return client
    except Exception as e:
        logger.error(f"Failed to connect to Redis: {e}", exc_info=True)
        raise


def get_backend(kind: str = STORE_BACKEND) -> StoreBackend:
    if kind == "redis":
        return RedisBackend(create_redis_client())
    if kind == "memory":
        return MemoryBackend()
    raise ValueError(f"Unknown STORE_BACKEND {kind!r}")
