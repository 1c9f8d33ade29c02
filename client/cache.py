"""Client-side mirror of support requests and the open conversation.

The cache merges two sources: snapshots fetched over HTTP and events pushed
over the channel. Every merge is by entity id, never by content, so the same
message arriving from both the create response and the push is kept once.

States::

    UNINITIALIZED --load_requests--> INITIALIZED --open_conversation--> ACTIVE
    INITIALIZED/ACTIVE --transport_lost--> RECONNECTING --transport_restored--> (previous)

Events missed while the transport is down are never replayed; a re-fetch
after `transport_restored` is the only way they are recovered.
"""
import time
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set, Union

from pydantic import BaseModel, ValidationError

from logging_config import get_logger
from realtime.events import (
    AllRequestsDeleted,
    NewMessage,
    NewRequest,
    RequestDeleted,
    RequestUpdated,
    UserTyping,
    decode_event,
)
from schemas.requests import MessageOut, RequestOut

logger = get_logger(__name__)

RawEntity = Union[dict, BaseModel]


class CacheState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    ACTIVE = "active"
    RECONNECTING = "reconnecting"


def _as_request(value: RawEntity) -> RequestOut:
    if isinstance(value, RequestOut):
        return value
    return RequestOut.model_validate(value.model_dump() if isinstance(value, BaseModel) else value)


def _as_message(value: RawEntity) -> MessageOut:
    if isinstance(value, MessageOut):
        return value
    return MessageOut.model_validate(value.model_dump() if isinstance(value, BaseModel) else value)


class ReconcilingCache:
    def __init__(self, typing_ttl: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.state = CacheState.UNINITIALIZED
        self.open_request_id: Optional[str] = None
        self.typing_ttl = typing_ttl
        self._clock = clock
        self._requests: List[RequestOut] = []
        self._messages: List[MessageOut] = []
        self._deleted: Set[str] = set()
        self._typing: Dict[str, float] = {}
        self._listeners: List[Callable[[str], None]] = []

    # -- views ----------------------------------------------------------------

    @property
    def requests(self) -> List[RequestOut]:
        return list(self._requests)

    @property
    def messages(self) -> List[MessageOut]:
        return list(self._messages)

    @property
    def initialized(self) -> bool:
        return self.state != CacheState.UNINITIALIZED

    def get_request(self, request_id: str) -> Optional[RequestOut]:
        index = self._request_index(request_id)
        return self._requests[index] if index is not None else None

    def typing_users(self) -> List[str]:
        if self.typing_ttl is not None:
            cutoff = self._clock() - self.typing_ttl
            for user_id in [u for u, since in self._typing.items() if since < cutoff]:
                del self._typing[user_id]
        return sorted(self._typing)

    def subscribe(self, listener: Callable[[str], None]) -> None:
        """Register a callback invoked with the change kind after every mutation."""
        self._listeners.append(listener)

    # -- snapshots ------------------------------------------------------------

    def load_requests(self, requests: Iterable[RawEntity]) -> None:
        """Replace the request list wholesale with a fresh full fetch."""
        loaded: List[RequestOut] = []
        seen: Set[str] = set()
        for raw in requests:
            try:
                request = _as_request(raw)
            except (ValidationError, TypeError) as e:
                logger.warning(f"Skipping malformed request in snapshot: {e}")
                continue
            if request.id in seen:
                continue
            seen.add(request.id)
            loaded.append(request)

        self._requests = loaded
        self._deleted -= seen
        if self.open_request_id and self.open_request_id not in seen:
            logger.info(f"Open request {self.open_request_id} is gone after refetch, closing it")
            self._close()
        if self.state == CacheState.UNINITIALIZED:
            self.state = CacheState.INITIALIZED
        self._changed("requests_loaded")

    def open_conversation(self, request_id: str, messages: Iterable[RawEntity]) -> None:
        if self.state == CacheState.UNINITIALIZED:
            raise RuntimeError("load_requests() must run before a conversation is opened")
        history: Dict[str, MessageOut] = {}
        for raw in messages:
            try:
                message = _as_message(raw)
            except (ValidationError, TypeError) as e:
                logger.warning(f"Skipping malformed message in history of {request_id}: {e}")
                continue
            if message.request_id == request_id:
                history.setdefault(message.id, message)
        self.open_request_id = request_id
        self._messages = sorted(history.values(), key=lambda m: m.created_at)
        self._typing.clear()
        if self.state != CacheState.RECONNECTING:
            self.state = CacheState.ACTIVE
        self._changed("conversation_opened")

    def close_conversation(self) -> None:
        if self.open_request_id is None:
            return
        self._close()
        self._changed("conversation_closed")

    # -- events ---------------------------------------------------------------

    def apply(self, event) -> bool:
        """Merge one pushed event; returns True when the cache changed.

        Accepts a decoded event or a raw frame. Malformed frames are logged and
        dropped without touching any state.
        """
        if not isinstance(event, BaseModel):
            try:
                event = decode_event(event)
            except ValueError as e:
                logger.warning(f"Dropping malformed event: {e}")
                return False

        if self.state == CacheState.UNINITIALIZED:
            logger.debug(f"Ignoring {getattr(event, 'type', event)!r} before the first fetch")
            return False

        if isinstance(event, NewMessage):
            changed = self._add_message(event.data)
            if changed:
                self._typing.pop(event.data.sender_id, None)
        elif isinstance(event, NewRequest):
            changed = self._add_request(event.data)
        elif isinstance(event, RequestUpdated):
            changed = self._replace_request(event.data)
        elif isinstance(event, RequestDeleted):
            changed = self._delete_request(event.data)
        elif isinstance(event, AllRequestsDeleted):
            changed = self._delete_all()
        elif isinstance(event, UserTyping):
            changed = self._set_typing(event.data.request_id, event.data.user_id, event.data.is_typing)
        else:
            logger.warning(f"Unhandled event {event!r}")
            return False

        if changed:
            self._changed(event.type)
        return changed

    # -- synchronous write results -------------------------------------------

    def merge_request(self, request: RawEntity) -> bool:
        """Merge the server's response to a create/update: replace by id, or insert."""
        try:
            request = _as_request(request)
        except (ValidationError, TypeError) as e:
            logger.warning(f"Dropping malformed request response: {e}")
            return False
        changed = self._replace_request(request) or self._add_request(request)
        if changed:
            self._changed("request_merged")
        return changed

    def merge_message(self, message: RawEntity) -> bool:
        try:
            message = _as_message(message)
        except (ValidationError, TypeError) as e:
            logger.warning(f"Dropping malformed message response: {e}")
            return False
        changed = self._add_message(message)
        if changed:
            self._changed("message_merged")
        return changed

    def remove_request(self, request_id: str) -> bool:
        changed = self._delete_request(request_id)
        if changed:
            self._changed("request_deleted")
        return changed

    def clear_requests(self) -> bool:
        changed = self._delete_all()
        if changed:
            self._changed("all_requests_deleted")
        return changed

    def apply_local_patch(self, request_id: str, patch: dict) -> Optional[RequestOut]:
        """Optimistically patch a cached request; returns the previous entity.

        The server's response or the following `request_updated` replaces the
        whole entity by id, so a local patch never outlives the authoritative copy.
        """
        index = self._request_index(request_id)
        if index is None:
            return None
        previous = self._requests[index]
        self._requests[index] = previous.model_copy(update=patch)
        self._changed("request_patched")
        return previous

    def restore_request(self, previous: Optional[RequestOut]) -> None:
        """Undo an optimistic patch whose write was rejected."""
        if previous is None:
            return
        index = self._request_index(previous.id)
        if index is not None:
            self._requests[index] = previous
            self._changed("request_restored")

    # -- transport ------------------------------------------------------------

    def transport_lost(self) -> None:
        if self.state in (CacheState.INITIALIZED, CacheState.ACTIVE):
            self.state = CacheState.RECONNECTING
            logger.info("Transport lost, cache frozen until reconnect")

    def transport_restored(self) -> Optional[str]:
        """Leave RECONNECTING; returns the room to re-join, if any."""
        if self.state != CacheState.RECONNECTING:
            return self.open_request_id
        self.state = CacheState.ACTIVE if self.open_request_id else CacheState.INITIALIZED
        self._typing.clear()
        logger.info(f"Transport restored, rejoining {self.open_request_id or 'no room'}")
        return self.open_request_id

    # -- internals ------------------------------------------------------------

    def _request_index(self, request_id: str) -> Optional[int]:
        for index, request in enumerate(self._requests):
            if request.id == request_id:
                return index
        return None

    def _add_request(self, request: RequestOut) -> bool:
        if request.id in self._deleted:
            logger.debug(f"Ignoring late new_request for deleted request {request.id}")
            return False
        if self._request_index(request.id) is not None:
            return False
        self._requests.insert(0, request)
        return True

    def _replace_request(self, request: RequestOut) -> bool:
        index = self._request_index(request.id)
        if index is None:
            return False
        self._requests[index] = request
        return True

    def _delete_request(self, request_id: str) -> bool:
        self._deleted.add(request_id)
        index = self._request_index(request_id)
        changed = False
        if index is not None:
            del self._requests[index]
            changed = True
        if self.open_request_id == request_id:
            self._close()
            changed = True
        return changed

    def _delete_all(self) -> bool:
        changed = bool(self._requests) or self.open_request_id is not None
        self._deleted.update(r.id for r in self._requests)
        if self.open_request_id:
            self._deleted.add(self.open_request_id)
        self._requests = []
        self._close()
        return changed

    def _add_message(self, message: MessageOut) -> bool:
        if message.request_id != self.open_request_id:
            return False
        if any(m.id == message.id for m in self._messages):
            return False
        self._messages.append(message)
        index = self._request_index(message.request_id)
        if index is not None:
            self._requests[index] = self._requests[index].model_copy(update={"last_message": message})
        return True

    def _set_typing(self, request_id: str, user_id: str, is_typing: bool) -> bool:
        if request_id != self.open_request_id:
            return False
        if is_typing:
            self._typing[user_id] = self._clock()
            return True
        return self._typing.pop(user_id, None) is not None

    def _close(self) -> None:
        self.open_request_id = None
        self._messages = []
        self._typing.clear()
        if self.state == CacheState.ACTIVE:
            self.state = CacheState.INITIALIZED

    def _changed(self, kind: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind)
            except Exception as e:
                logger.error(f"Cache listener failed on {kind}: {e}", exc_info=True)
