from typing import Callable, Optional

from fastapi import APIRouter, Depends, Query

from backend import StoreBackend
from errors import Forbidden, NotFound
from identity import ROLE_MENTOR, ROLE_SUPPORT, Identity
from logging_config import get_logger
from realtime import events
from realtime.channel import RealtimeHub
from routers.deps import current_identity, get_backend, get_hub, require_mentor
from schemas.requests import (
    CreateMessageBody,
    CreateRequestBody,
    MarkReadResponse,
    MessageListResponse,
    MessageResponse,
    Priority,
    RequestListResponse,
    RequestResponse,
    Status,
    SuccessResponse,
    UpdateRequestBody,
)

logger = get_logger(__name__)

requests_router = APIRouter(prefix="/api/requests", tags=["requests"])


def can_follow(identity: Identity, request: Optional[dict]) -> bool:
    """Whether this identity may read a request's conversation."""
    if not request:
        return False
    return identity.is_staff or request["guest_id"] == identity.user_id


def can_post_message(identity: Identity, request: dict) -> bool:
    # Checked against the persisted assignment at write time, not at room join
    if identity.role == ROLE_MENTOR:
        return True
    if identity.user_id == request["guest_id"]:
        return True
    if identity.role == ROLE_SUPPORT:
        assigned = request.get("assigned_agent")
        return not assigned or assigned == identity.user_id
    return False


def _load_request(backend: StoreBackend, request_id: str) -> dict:
    request = backend.get_request(request_id)
    if not request:
        raise NotFound("Request not found")
    return request


async def _notify(hub: RealtimeHub, factory: Callable, payload, request_id: Optional[str] = None) -> None:
    try:
        event = factory(payload) if payload is not None else factory()
    except ValueError as e:
        logger.error(f"Could not build {factory.__name__} event: {e}", exc_info=True)
        return
    await hub.publish(event, request_id=request_id)


@requests_router.get("", response_model=RequestListResponse)
async def list_requests(
    status: Optional[Status] = Query(None),
    priority: Optional[Priority] = Query(None),
    identity: Identity = Depends(current_identity),
    backend: StoreBackend = Depends(get_backend),
):
    requests = backend.list_requests(status=status, priority=priority)
    logger.debug(f"Listed {len(requests)} requests for {identity.user_id} (status={status}, priority={priority})")
    return RequestListResponse(requests=requests)


@requests_router.post("", response_model=RequestResponse, status_code=201)
async def create_request(
    body: CreateRequestBody,
    identity: Identity = Depends(current_identity),
    backend: StoreBackend = Depends(get_backend),
    hub: RealtimeHub = Depends(get_hub),
):
    request = backend.create_request(
        guest_id=identity.user_id,
        email=body.email,
        issue=body.issue,
        description=body.description,
        category=body.category,
        priority=body.priority,
    )
    await _notify(hub, events.new_request, request)
    return RequestResponse(request=request)


@requests_router.delete("", response_model=SuccessResponse)
async def delete_all_requests(
    identity: Identity = Depends(require_mentor),
    backend: StoreBackend = Depends(get_backend),
    hub: RealtimeHub = Depends(get_hub),
):
    deleted = backend.delete_all_requests()
    logger.info(f"Mentor {identity.user_id} deleted all {deleted} requests")
    await _notify(hub, events.all_requests_deleted, None)
    return SuccessResponse()


@requests_router.get("/{request_id}", response_model=RequestResponse)
async def get_request(
    request_id: str,
    identity: Identity = Depends(current_identity),
    backend: StoreBackend = Depends(get_backend),
):
    request = backend.get_request(request_id, with_messages=True)
    if not request:
        raise NotFound("Request not found")
    if not can_follow(identity, request):
        raise Forbidden("You cannot view this request")
    return RequestResponse(request=request)


@requests_router.patch("/{request_id}", response_model=RequestResponse)
async def update_request(
    request_id: str,
    body: UpdateRequestBody,
    identity: Identity = Depends(current_identity),
    backend: StoreBackend = Depends(get_backend),
    hub: RealtimeHub = Depends(get_hub),
):
    _load_request(backend, request_id)
    if not identity.is_staff:
        raise Forbidden("Only support staff can update a request")
    request = backend.update_request(request_id, body.patch())
    await _notify(hub, events.request_updated, request)
    return RequestResponse(request=request)


@requests_router.delete("/{request_id}", response_model=SuccessResponse)
async def delete_request(
    request_id: str,
    identity: Identity = Depends(current_identity),
    backend: StoreBackend = Depends(get_backend),
    hub: RealtimeHub = Depends(get_hub),
):
    request = _load_request(backend, request_id)
    if not can_follow(identity, request):
        raise Forbidden("You cannot delete this request")
    backend.delete_request(request_id)
    await _notify(hub, events.request_deleted, request_id)
    return SuccessResponse()


@requests_router.post("/{request_id}/messages", response_model=MessageResponse, status_code=201)
async def create_message(
    request_id: str,
    body: CreateMessageBody,
    identity: Identity = Depends(current_identity),
    backend: StoreBackend = Depends(get_backend),
    hub: RealtimeHub = Depends(get_hub),
):
    request = _load_request(backend, request_id)
    if not can_post_message(identity, request):
        raise Forbidden("You are not a participant of this request")
    message = backend.create_message(request_id, identity.user_id, body.content)
    await _notify(hub, events.new_message, message, request_id=request_id)
    return MessageResponse(message=message)


@requests_router.get("/{request_id}/messages", response_model=MessageListResponse)
async def list_messages(
    request_id: str,
    identity: Identity = Depends(current_identity),
    backend: StoreBackend = Depends(get_backend),
):
    request = _load_request(backend, request_id)
    if not can_follow(identity, request):
        raise Forbidden("You cannot view this request")
    return MessageListResponse(messages=backend.list_messages(request_id))


@requests_router.patch("/{request_id}/messages/read", response_model=MarkReadResponse)
async def mark_messages_read(
    request_id: str,
    identity: Identity = Depends(current_identity),
    backend: StoreBackend = Depends(get_backend),
):
    request = _load_request(backend, request_id)
    if not can_follow(identity, request):
        raise Forbidden("You cannot view this request")
    return MarkReadResponse(updated=backend.mark_messages_read(request_id))
