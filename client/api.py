from typing import Any, Dict, List, Optional

import httpx

from errors import error_from_response
from logging_config import get_logger

logger = get_logger(__name__)


class SupportDeskAPI:
    """Async client for the synchronous endpoints.

    Error responses are raised as the matching `errors.SupportDeskError`
    subclass, carrying the server's message and field details.
    """

    def __init__(self, base_url: str, token: Optional[str] = None, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 10.0):
        base_url = base_url.rstrip("/")
        self.base_url = base_url if base_url.endswith("/api") else f"{base_url}/api"
        self.token = token
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _call(self, method: str, path: str, **kwargs) -> Any:
        headers = kwargs.pop("headers", {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        response = await self._client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {"error": response.text or response.reason_phrase}
            logger.warning(f"{method} {path} failed with {response.status_code}: {body}")
            raise error_from_response(response.status_code, body)
        return response.json()

    # -- auth -----------------------------------------------------------------

    async def login(self, username: str, password: str) -> dict:
        data = await self._call("POST", "/auth/login", json={"username": username, "password": password})
        self.token = data["token"]
        return data

    async def login_guest(self, name: str) -> dict:
        data = await self._call("POST", "/auth/guest", json={"name": name})
        self.token = data["token"]
        return data

    async def me(self) -> dict:
        return (await self._call("GET", "/auth/me"))["user"]

    # -- requests -------------------------------------------------------------

    async def list_requests(self, status: Optional[str] = None, priority: Optional[str] = None) -> List[dict]:
        params = {k: v for k, v in (("status", status), ("priority", priority)) if v}
        return (await self._call("GET", "/requests", params=params))["requests"]

    async def get_request(self, request_id: str) -> dict:
        return (await self._call("GET", f"/requests/{request_id}"))["request"]

    async def create_request(self, email: str, issue: str, description: str, category: str,
                             priority: Optional[str] = None) -> dict:
        body: Dict[str, Any] = {"email": email, "issue": issue, "description": description, "category": category}
        if priority:
            body["priority"] = priority
        return (await self._call("POST", "/requests", json=body))["request"]

    async def update_request(self, request_id: str, **patch) -> dict:
        return (await self._call("PATCH", f"/requests/{request_id}", json=patch))["request"]

    async def delete_request(self, request_id: str) -> None:
        await self._call("DELETE", f"/requests/{request_id}")

    async def delete_all_requests(self) -> None:
        await self._call("DELETE", "/requests")

    async def list_messages(self, request_id: str) -> List[dict]:
        return (await self._call("GET", f"/requests/{request_id}/messages"))["messages"]

    async def send_message(self, request_id: str, content: str) -> dict:
        return (await self._call("POST", f"/requests/{request_id}/messages", json={"content": content}))["message"]

    async def mark_read(self, request_id: str) -> int:
        return (await self._call("PATCH", f"/requests/{request_id}/messages/read"))["updated"]

    # -- users ----------------------------------------------------------------

    async def list_users(self) -> List[dict]:
        return await self._call("GET", "/users")

    async def create_user(self, username: str, password: str, name: str, role: str) -> dict:
        return await self._call("POST", "/users", json={
            "username": username, "password": password, "name": name, "role": role,
        })

    async def update_user(self, user_id: str, **fields) -> dict:
        return await self._call("PATCH", f"/users/{user_id}", json=fields)

    async def delete_user(self, user_id: str) -> None:
        await self._call("DELETE", f"/users/{user_id}")
