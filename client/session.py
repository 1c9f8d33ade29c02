import asyncio
import json
from typing import Callable, Optional
from urllib.parse import quote

import websockets
from websockets.exceptions import ConnectionClosed, InvalidStatus

from client.api import SupportDeskAPI
from client.cache import CacheState, ReconcilingCache
from errors import AuthFailure, Forbidden, NotFound
from logging_config import get_logger

logger = get_logger(__name__)

POLICY_VIOLATION = 1008


def ws_url_for(base_url: str, token: str) -> str:
    base = base_url.rstrip("/")
    if base.endswith("/api"):
        base = base[: -len("/api")]
    base = base.replace("https://", "wss://").replace("http://", "ws://")
    return f"{base}/ws?token={quote(token)}"


class SupportDeskClient:
    """A logged-in client: REST writes plus the live channel feeding one cache.

    Every write goes over HTTP and its response is merged into the cache by id;
    the pushed event for the same write then merges as a no-op. When the
    channel drops, the cache is frozen in RECONNECTING, the client reconnects
    with backoff, re-joins the open room and re-fetches to cover missed events.
    """

    def __init__(
        self,
        api: SupportDeskAPI,
        cache: Optional[ReconcilingCache] = None,
        ws_url: Optional[str] = None,
        reconnect_delay: float = 1.0,
        reconnect_delay_max: float = 5.0,
        max_attempts: int = 5,
        connect: Callable = websockets.connect,
    ):
        self.api = api
        self.cache = cache or ReconcilingCache()
        self.ws_url = ws_url
        self.reconnect_delay = reconnect_delay
        self.reconnect_delay_max = reconnect_delay_max
        self.max_attempts = max_attempts
        self.error: Optional[str] = None
        self.connected = asyncio.Event()
        self._connect = connect
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False

    async def start(self) -> None:
        await self.refresh()
        self._closing = False
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._closing = True
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug(f"Error closing channel: {e}")
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    # -- fetches --------------------------------------------------------------

    async def refresh(self) -> None:
        """Full fetch of the request list, plus the open conversation if any."""
        self.cache.load_requests(await self.api.list_requests())
        request_id = self.cache.open_request_id
        if request_id:
            try:
                messages = await self.api.list_messages(request_id)
            except (NotFound, Forbidden) as e:
                logger.info(f"Open request {request_id} no longer readable: {e.message}")
                self.cache.close_conversation()
                return
            self.cache.open_conversation(request_id, messages)

    async def open_request(self, request_id: str) -> None:
        previous = self.cache.open_request_id
        messages = await self.api.list_messages(request_id)
        if previous and previous != request_id:
            await self._send("leave_request", previous)
        self.cache.open_conversation(request_id, messages)
        await self._send("join_request", request_id)

    async def close_request(self) -> None:
        request_id = self.cache.open_request_id
        if not request_id:
            return
        self.cache.close_conversation()
        await self._send("leave_request", request_id)

    # -- writes ---------------------------------------------------------------

    async def create_request(self, **fields) -> dict:
        request = await self.api.create_request(**fields)
        self.cache.merge_request(request)
        return request

    async def update_request(self, request_id: str, **patch) -> dict:
        previous = self.cache.apply_local_patch(request_id, patch)
        try:
            request = await self.api.update_request(request_id, **patch)
        except Exception:
            self.cache.restore_request(previous)
            raise
        self.cache.merge_request(request)
        return request

    async def delete_request(self, request_id: str) -> None:
        await self.api.delete_request(request_id)
        self.cache.remove_request(request_id)

    async def delete_all_requests(self) -> None:
        await self.api.delete_all_requests()
        self.cache.clear_requests()

    async def send_message(self, content: str) -> dict:
        request_id = self.cache.open_request_id
        if not request_id:
            raise RuntimeError("No conversation is open")
        message = await self.api.send_message(request_id, content)
        self.cache.merge_message(message)
        return message

    async def set_typing(self, is_typing: bool) -> None:
        request_id = self.cache.open_request_id
        if request_id:
            await self._send("typing", {"request_id": request_id, "is_typing": is_typing})

    # -- channel --------------------------------------------------------------

    async def _send(self, frame_type: str, data) -> bool:
        if self._ws is None:
            # Not connected: join/typing is dropped, the reconnect path re-joins the open room
            logger.debug(f"Channel down, not sending {frame_type}")
            return False
        try:
            await self._ws.send(json.dumps({"type": frame_type, "data": data}))
        except ConnectionClosed as e:
            logger.debug(f"Channel closed while sending {frame_type}: {e}")
            return False
        return True

    async def _run(self) -> None:
        url = self.ws_url or ws_url_for(self.api.base_url, self.api.token or "")
        attempts = 0
        first = True
        while not self._closing:
            try:
                async with self._connect(url) as ws:
                    self._ws = ws
                    attempts = 0
                    self.error = None
                    logger.info("Channel connected")
                    if first:
                        if self.cache.open_request_id:
                            await self._send("join_request", self.cache.open_request_id)
                    else:
                        await self._resync()
                    first = False
                    self.connected.set()
                    async for frame in ws:
                        self.cache.apply(frame)
                    close_code = getattr(ws, "close_code", None)
                if close_code == POLICY_VIOLATION:
                    raise AuthFailure("Channel rejected the credential")
            except AuthFailure as e:
                self.error = e.message
                logger.error(f"Channel authentication failed: {e.message}")
                break
            except InvalidStatus as e:
                status = e.response.status_code
                if status in (401, 403):
                    self.error = "Channel rejected the credential"
                    logger.error(f"Channel handshake rejected with HTTP {status}, not retrying")
                    break
                logger.warning(f"Channel handshake failed with HTTP {status}")
            except (OSError, ConnectionClosed, asyncio.TimeoutError) as e:
                logger.warning(f"Channel lost: {e!r}")
            finally:
                self._ws = None
                self.connected.clear()

            if self._closing:
                break
            self.cache.transport_lost()
            attempts += 1
            if attempts > self.max_attempts:
                self.error = "Lost connection to server. Please refresh the page."
                logger.error(f"Giving up after {self.max_attempts} reconnect attempts")
                break
            delay = min(self.reconnect_delay * (2 ** (attempts - 1)), self.reconnect_delay_max)
            logger.info(f"Reconnecting in {delay:.1f}s (attempt {attempts}/{self.max_attempts})")
            await asyncio.sleep(delay)

    async def _resync(self) -> None:
        room = self.cache.transport_restored()
        if room:
            await self._send("join_request", room)
        try:
            await self.refresh()
        except Exception as e:
            logger.warning(f"Re-fetch after reconnect failed, cache may be stale: {e}")

    @property
    def reconnecting(self) -> bool:
        return self.cache.state == CacheState.RECONNECTING
