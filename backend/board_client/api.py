# board_client/api.py — Async HTTP client for the KanbanFlow REST API
import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger("kanbanflow.client")


class ApiError(Exception):
    """Non-2xx response (or transport failure, with status 0)."""

    def __init__(self, status_code: int, message: str, errors: Optional[list] = None):
        self.status_code = status_code
        self.message = message
        self.errors = errors or []
        super().__init__(f"{status_code}: {message}")


class KanbanApiClient:

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        connection_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.token = token
        self.connection_id = connection_id
        self._client = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if self.connection_id:
            headers["X-Connection-ID"] = self.connection_id
        return headers

    async def _request(self, method: str, path: str, json: Any = None, params: Optional[dict] = None) -> Any:
        try:
            resp = await self._client.request(method, path, json=json, params=params, headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise ApiError(0, str(e)) from e

        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            raise ApiError(resp.status_code, body.get("message", resp.reason_phrase), body.get("errors"))
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    # ---------------- auth ----------------

    async def signup(self, name: str, email: str, password: str) -> dict:
        data = await self._request("POST", "/api/auth/signup", {"name": name, "email": email, "password": password})
        self.token = data["token"]
        return data["user"]

    async def login(self, email: str, password: str) -> dict:
        data = await self._request("POST", "/api/auth/login", {"email": email, "password": password})
        self.token = data["token"]
        return data["user"]

    async def me(self) -> dict:
        return await self._request("GET", "/api/auth/me")

    # ---------------- boards ----------------

    async def list_boards(self) -> List[dict]:
        return await self._request("GET", "/api/boards")

    async def get_board(self, board_id: str) -> dict:
        return await self._request("GET", f"/api/boards/{board_id}")

    async def create_board(self, title: str, description: Optional[str] = None, color: str = "#3B82F6") -> dict:
        return await self._request("POST", "/api/boards", {"title": title, "description": description, "color": color})

    async def update_board(self, board_id: str, changes: dict) -> dict:
        return await self._request("PUT", f"/api/boards/{board_id}", changes)

    async def delete_board(self, board_id: str) -> None:
        await self._request("DELETE", f"/api/boards/{board_id}")

    async def activity(self, board_id: str, limit: int = 50) -> List[dict]:
        return await self._request("GET", f"/api/boards/{board_id}/activity", params={"limit": limit})

    # ---------------- lists ----------------

    async def create_list(self, board_id: str, title: str, position: Optional[int] = None) -> dict:
        return await self._request("POST", f"/api/boards/{board_id}/lists", {"title": title, "position": position})

    async def update_list(self, list_id: str, changes: dict) -> dict:
        return await self._request("PUT", f"/api/boards/lists/{list_id}", changes)

    async def delete_list(self, list_id: str) -> None:
        await self._request("DELETE", f"/api/boards/lists/{list_id}")

    # ---------------- cards ----------------

    async def create_card(self, board_id: str, list_id: str, title: str, position: Optional[int] = None, **fields) -> dict:
        body = {"title": title, "listId": list_id, "position": position, **fields}
        return await self._request("POST", f"/api/boards/{board_id}/cards", body)

    async def update_card(self, card_id: str, changes: dict) -> dict:
        return await self._request("PUT", f"/api/boards/cards/{card_id}", changes)

    async def move_card(self, card_id: str, list_id: str, position: int) -> dict:
        return await self._request("PUT", f"/api/boards/cards/{card_id}/move", {"listId": list_id, "position": position})

    async def delete_card(self, card_id: str) -> None:
        await self._request("DELETE", f"/api/boards/cards/{card_id}")

    async def add_comment(self, card_id: str, content: str) -> dict:
        return await self._request("POST", f"/api/boards/cards/{card_id}/comments", {"content": content})

    # ---------------- invitations ----------------

    async def invite(self, board_id: str, email: str) -> dict:
        return await self._request("POST", f"/api/boards/{board_id}/invite", {"email": email, "role": "collaborator"})

    async def invitation_details(self, token: str) -> dict:
        return await self._request("GET", f"/api/boards/invitation/{token}/details")

    async def accept_invitation(self, token: str) -> dict:
        return await self._request("POST", f"/api/boards/invitation/{token}/accept")

    async def reject_invitation(self, token: str) -> dict:
        return await self._request("POST", f"/api/boards/invitation/{token}/reject")
