"""Wire types for the persistent channel.

Every frame is JSON `{"type": ..., "data": ...}`. Outbound frames are domain
events pushed by the server; inbound frames are the three client commands.
Both sides are closed unions decoded once, at the channel boundary.
"""
import json
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from schemas.requests import MessageOut, RequestOut


class TypingSignal(BaseModel):
    request_id: str
    is_typing: bool


class UserTypingData(BaseModel):
    user_id: str
    request_id: str
    is_typing: bool


# -- outbound (server -> client) ----------------------------------------------

class NewRequest(BaseModel):
    type: Literal["new_request"] = "new_request"
    data: RequestOut


class RequestUpdated(BaseModel):
    type: Literal["request_updated"] = "request_updated"
    data: RequestOut


class RequestDeleted(BaseModel):
    type: Literal["request_deleted"] = "request_deleted"
    data: str


class AllRequestsDeleted(BaseModel):
    type: Literal["all_requests_deleted"] = "all_requests_deleted"
    data: None = None


class NewMessage(BaseModel):
    type: Literal["new_message"] = "new_message"
    data: MessageOut


class UserTyping(BaseModel):
    type: Literal["user_typing"] = "user_typing"
    data: UserTypingData


Event = Annotated[
    Union[NewRequest, RequestUpdated, RequestDeleted, AllRequestsDeleted, NewMessage, UserTyping],
    Field(discriminator="type"),
]
_event_adapter = TypeAdapter(Event)


# -- inbound (client -> server) -----------------------------------------------

class JoinRequest(BaseModel):
    type: Literal["join_request"] = "join_request"
    data: str


class LeaveRequest(BaseModel):
    type: Literal["leave_request"] = "leave_request"
    data: str


class Typing(BaseModel):
    type: Literal["typing"] = "typing"
    data: TypingSignal


Command = Annotated[Union[JoinRequest, LeaveRequest, Typing], Field(discriminator="type")]
_command_adapter = TypeAdapter(Command)


def _as_obj(raw: Union[str, bytes, dict]) -> Any:
    if isinstance(raw, (str, bytes, bytearray)):
        return json.loads(raw)
    return raw


def decode_event(raw: Union[str, bytes, dict]) -> Event:
    """Raises ValueError (json or pydantic) on anything that is not a known event."""
    return _event_adapter.validate_python(_as_obj(raw))


def decode_command(raw: Union[str, bytes, dict]) -> Command:
    return _command_adapter.validate_python(_as_obj(raw))


def encode(frame: BaseModel) -> str:
    return frame.model_dump_json()


def new_request(request: dict) -> NewRequest:
    return NewRequest(data=RequestOut.model_validate(request))


def request_updated(request: dict) -> RequestUpdated:
    return RequestUpdated(data=RequestOut.model_validate(request))


def request_deleted(request_id: str) -> RequestDeleted:
    return RequestDeleted(data=request_id)


def all_requests_deleted() -> AllRequestsDeleted:
    return AllRequestsDeleted()


def new_message(message: dict) -> NewMessage:
    return NewMessage(data=MessageOut.model_validate(message))


def user_typing(user_id: str, request_id: str, is_typing: bool) -> UserTyping:
    return UserTyping(data=UserTypingData(user_id=user_id, request_id=request_id, is_typing=is_typing))


# -- audience -----------------------------------------------------------------

@dataclass(frozen=True)
class Broadcast:
    pass


@dataclass(frozen=True)
class Room:
    request_id: str


Audience = Union[Broadcast, Room]
BROADCAST = Broadcast()


@dataclass(frozen=True)
class Envelope:
    event: Event
    audience: Audience
    exclude: Optional[str] = None

    def to_json(self) -> str:
        if isinstance(self.audience, Room):
            audience = {"kind": "room", "request_id": self.audience.request_id}
        else:
            audience = {"kind": "broadcast"}
        return json.dumps({
            "audience": audience,
            "exclude": self.exclude,
            "event": self.event.model_dump(mode="json"),
        })

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "Envelope":
        data = json.loads(raw)
        audience_data = data.get("audience") or {}
        if audience_data.get("kind") == "room":
            audience: Audience = Room(audience_data["request_id"])
        elif audience_data.get("kind") == "broadcast":
            audience = BROADCAST
        else:
            raise ValueError(f"Unknown audience {audience_data!r}")
        return cls(event=decode_event(data["event"]), audience=audience, exclude=data.get("exclude"))
