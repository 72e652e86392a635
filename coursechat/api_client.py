"""
HTTP client for the course chat API.

Wraps an ``httpx.AsyncClient`` that keeps the session cookie between calls.
Error responses are mapped back onto the shared error taxonomy
(ValidationError, UnauthorizedError, ForbiddenError, NotFoundError); anything
else, including transport failures, raises ApiError.
"""

import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError as SchemaError

from coursechat.config import get_client_settings
from coursechat.errors import ApiError, error_for_status
from coursechat.schemas import Message, Preference, UserResponse

logger = logging.getLogger(__name__)


class ChatApiClient:
    """
    Client for the course chat HTTP API.

    Example:
        ```python
        async with ChatApiClient("http://localhost:3000/api") as api:
            await api.login("user1", "password1")
            messages = await api.list_messages("mathematik")
        ```
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: API root, e.g. http://localhost:3000/api
            timeout: Request timeout in seconds
            transport: Custom httpx transport (e.g. ASGITransport in tests)
        """
        client_settings = get_client_settings()
        self.base_url = (base_url or client_settings.API_BASE_URL).rstrip("/")
        self._client = httpx.AsyncClient(
            timeout=timeout or client_settings.REQUEST_TIMEOUT,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> Any:
        try:
            response = await self._client.request(method, f"{self.base_url}{path}", json=json)
        except httpx.RequestError as e:
            raise ApiError(f"Chat API unavailable: {e}") from e

        logger.debug(f"{method} {path} -> {response.status_code}")

        if response.is_error:
            detail = None
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                detail = body.get("detail")
            raise error_for_status(response.status_code, str(detail or f"HTTP error {response.status_code}"))

        try:
            return response.json()
        except ValueError as e:
            raise ApiError(f"Malformed response from {method} {path}: {e}", status_code=response.status_code) from e

    @staticmethod
    def _parse(model, data: Any):
        """Validate a response payload, mapping schema mismatches to ApiError."""
        try:
            return model.model_validate(data)
        except SchemaError as e:
            raise ApiError(f"Unexpected {model.__name__} payload: {e.error_count()} validation errors") from e

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------

    async def login(self, username: str, password: str) -> UserResponse:
        data = await self._request("POST", "/login", json={"username": username, "password": password})
        return self._parse(UserResponse, data)

    async def logout(self) -> None:
        await self._request("POST", "/logout")

    async def current_user(self) -> UserResponse:
        return self._parse(UserResponse, await self._request("GET", "/user"))

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def list_messages(self, course_id: str) -> list[Message]:
        """Messages of a course, oldest first."""
        data = await self._request("GET", f"/messages/{course_id}")
        if not isinstance(data, list):
            raise ApiError(f"Expected a list of messages for {course_id}")
        messages = [self._parse(Message, item) for item in data]
        return sorted(messages, key=lambda message: message.timestamp)

    async def create_message(self, course_id: str, text: str) -> Message:
        data = await self._request("POST", "/messages", json={"courseId": course_id, "text": text})
        return self._parse(Message, data)

    async def update_message(self, message_id: str, **changes) -> Message:
        """
        Send a partial update.

        Args:
            message_id: Message to update
            **changes: text, is_deleted and/or original_text
        """
        body = {}
        if "text" in changes:
            body["text"] = changes["text"]
        if "is_deleted" in changes:
            body["isDeleted"] = changes["is_deleted"]
        if "original_text" in changes:
            body["originalText"] = changes["original_text"]
        data = await self._request("PUT", f"/messages/{message_id}", json=body)
        return self._parse(Message, data)

    async def delete_message(self, message_id: str) -> None:
        await self._request("DELETE", f"/messages/{message_id}")

    # -------------------------------------------------------------------------
    # Preferences
    # -------------------------------------------------------------------------

    async def get_preference(self) -> Preference:
        return self._parse(Preference, await self._request("GET", "/preferences"))

    async def set_preference(self, course_id: str) -> None:
        await self._request("POST", "/preferences", json={"selectedCourse": course_id})
