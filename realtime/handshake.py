from dataclasses import dataclass
from typing import Optional, Tuple

from fastapi import WebSocket

from errors import AuthFailure
from identity import Identity, IdentityService, bearer_token
from logging_config import get_logger

logger = get_logger(__name__)

POLICY_VIOLATION = 1008
TOKEN_SUBPROTOCOLS = ("bearer", "jwt", "token")


@dataclass(frozen=True)
class HandshakeResult:
    identity: Identity
    subprotocol: Optional[str] = None


def extract_token(websocket: WebSocket) -> Tuple[Optional[str], Optional[str]]:
    """Find the credential on an incoming websocket.

    Looked up in order: `Authorization: Bearer <token>`, the `?token=` query
    parameter, then a `Sec-WebSocket-Protocol: bearer, <token>` pair (browsers
    cannot set headers on websockets). Returns `(token, subprotocol_to_echo)`.
    """
    token = bearer_token(websocket.headers.get("authorization"))
    if token:
        return token, None

    token = (websocket.query_params.get("token") or "").strip()
    if token:
        return token, None

    protocols = [p.strip() for p in (websocket.headers.get("sec-websocket-protocol") or "").split(",") if p.strip()]
    if len(protocols) > 1 and protocols[0].lower() in TOKEN_SUBPROTOCOLS:
        return protocols[1], protocols[0]
    return None, None


class ChannelHandshake:
    def __init__(self, identity_service: IdentityService):
        self.identity_service = identity_service

    async def authenticate(self, websocket: WebSocket) -> Optional[HandshakeResult]:
        """Verify the credential before the socket is accepted.

        On failure the socket is closed with a policy-violation code and None
        is returned; the connection never reaches the session store.
        """
        client = websocket.client.host if websocket.client else "unknown"
        token, subprotocol = extract_token(websocket)
        try:
            identity = self.identity_service.verify_token(token)
        except AuthFailure as e:
            logger.warning(f"WebSocket connection rejected for {client}: {e.message}")
            await websocket.close(code=POLICY_VIOLATION, reason=e.message)
            return None
        logger.info(f"WebSocket handshake ok for user {identity.user_id} ({identity.role}) from {client}")
        return HandshakeResult(identity=identity, subprotocol=subprotocol)
