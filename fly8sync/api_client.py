"""
Fly8 Admin REST Client
======================

Thin async wrapper over the admin backend:
  - Bearer credential read from the session on every request
  - Bounded timeout (30s default)
  - 401 ends the session and fires the "unauthenticated" hook
  - Non-2xx answers raise ApiError with the server's message

Usage:
    async with ApiClient(config, session) as api:
        page = await api.students.list(page=1, limit=10, search="ana")
        await api.messages.send(student_id, "Hello")
"""

import time
from typing import Any, Dict, List, Optional

import httpx

from fly8sync.config import SyncConfig
from fly8sync.exceptions import (
    ApiError,
    ForbiddenError,
    NetworkError,
    NotFoundError,
    RequestTimeoutError,
    UnauthenticatedError,
)
from fly8sync.logging_config import get_logger
from fly8sync.models import Conversation, Notification
from fly8sync.session import SessionStore

logger = get_logger("api")


def _clean(params: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not params:
        return None
    return {k: v for k, v in params.items() if v is not None}


def _server_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return response.text or None
    if isinstance(body, dict):
        return body.get("message") or body.get("detail") or body.get("error")
    return None


class ApiClient:
    """HTTP client for the admin backend"""

    def __init__(
        self,
        config: SyncConfig,
        session: SessionStore,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.session = session
        self._client = httpx.AsyncClient(
            base_url=config.api_base_url.rstrip("/"),
            timeout=config.request_timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

        self.auth = AuthAPI(self)
        self.students = StudentAPI(self)
        self.messages = MessageAPI(self)
        self.notifications = NotificationAPI(self)
        self.appointments = AppointmentAPI(self)
        self.feedback = FeedbackAPI(self)

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    def _get_headers(self) -> Dict[str, str]:
        token = self.session.token
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
    ) -> Any:
        """Make an HTTP request and return the decoded JSON body"""
        started = time.perf_counter()
        try:
            response = await self._client.request(
                method,
                path,
                params=_clean(params),
                json=json,
                headers=self._get_headers(),
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(self.config.request_timeout, f"{method} {path}") from e
        except httpx.TransportError as e:
            logger.warning(f"No response for {method} {path}: {e}")
            raise NetworkError() from e

        duration_ms = (time.perf_counter() - started) * 1000
        logger.log_request(method, path, response.status_code, duration_ms)

        if response.status_code == 401:
            message = _server_message(response) or "Session expired. Please login again."
            self.session.notify_unauthenticated(message)
            raise UnauthenticatedError(message)

        if response.status_code == 403:
            message = _server_message(response) or "Access forbidden"
            logger.error(f"Access forbidden: {message}")
            raise ForbiddenError(message)

        if response.status_code == 404:
            raise NotFoundError(_server_message(response) or f"{path} not found")

        if not response.is_success:
            raise ApiError(
                response.status_code,
                _server_message(response) or "An error occurred",
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ApiError(response.status_code, "Response was not valid JSON") from e

    async def get(self, path: str, **params: Any) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Optional[Any] = None) -> Any:
        return await self.request("POST", path, json=json)

    async def put(self, path: str, json: Optional[Any] = None) -> Any:
        return await self.request("PUT", path, json=json)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)


class _Resource:
    def __init__(self, client: ApiClient):
        self.client = client


class AuthAPI(_Resource):

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        """Returns ``{"token": ..., "admin": {...}}``"""
        return await self.client.post("/admin/auth/login", {"email": email, "password": password})

    async def get_profile(self) -> Dict[str, Any]:
        body = await self.client.get("/admin/auth/profile")
        return body.get("admin", body)

    async def update_profile(self, data: Dict[str, Any]) -> Dict[str, Any]:
        body = await self.client.put("/admin/auth/profile", data)
        return body.get("admin", body)


class StudentAPI(_Resource):

    async def list(
        self,
        page: int = 1,
        limit: int = 10,
        search: Optional[str] = None,
        status: Optional[str] = None,
        **filters: Any,
    ) -> Dict[str, Any]:
        return await self.client.get(
            "/admin/students", page=page, limit=limit, search=search or None, status=status, **filters
        )

    async def get(self, student_id: str) -> Dict[str, Any]:
        body = await self.client.get(f"/admin/students/{student_id}")
        return body.get("student", body)

    async def update(self, student_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self.client.put(f"/admin/students/{student_id}", data)

    async def update_profile(self, student_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self.client.put(f"/admin/students/{student_id}/profile", data)

    async def update_status(
        self, student_id: str, active: Optional[bool] = None, approved: Optional[bool] = None
    ) -> Dict[str, Any]:
        data = {k: v for k, v in {"active": active, "approved": approved}.items() if v is not None}
        return await self.client.put(f"/admin/students/{student_id}/status", data)

    async def deactivate(self, student_id: str) -> Dict[str, Any]:
        return await self.client.delete(f"/admin/students/{student_id}")

    async def restore(self, student_id: str) -> Dict[str, Any]:
        return await self.client.post(f"/admin/students/{student_id}/restore")

    async def stats(self) -> Dict[str, Any]:
        body = await self.client.get("/admin/students/stats")
        return body.get("stats", body)


class MessageAPI(_Resource):

    async def conversations(self) -> List[Conversation]:
        body = await self.client.get("/admin/messages/conversations")
        return [Conversation.model_validate(c) for c in body.get("conversations", [])]

    async def thread(self, conversation_id: str, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        return await self.client.get(f"/admin/messages/{conversation_id}", page=page, limit=limit)

    async def send(self, student_id: str, content: str) -> Dict[str, Any]:
        return await self.client.post("/admin/messages/send", {"studentId": student_id, "content": content})

    async def mark_as_read(self, message_id: str) -> Dict[str, Any]:
        return await self.client.put(f"/admin/messages/{message_id}/read")

    async def delete(self, message_id: str) -> Dict[str, Any]:
        return await self.client.delete(f"/admin/messages/{message_id}")

    async def stats(self) -> Dict[str, Any]:
        body = await self.client.get("/admin/messages/stats")
        return body.get("stats", body)

    async def search(self, query: str, conversation_id: Optional[str] = None) -> Dict[str, Any]:
        return await self.client.get("/admin/messages/search", query=query, conversationId=conversation_id)


class NotificationAPI(_Resource):

    async def list(
        self,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        status: Optional[str] = None,
        type: Optional[str] = None,
    ) -> Dict[str, Any]:
        body = await self.client.get("/admin/notifications", page=page, limit=limit, status=status, type=type)
        body["notifications"] = [Notification.model_validate(n) for n in body.get("notifications", [])]
        return body

    async def send(self, student_id: str, title: str, message: str, **extra: Any) -> Dict[str, Any]:
        return await self.client.post(
            "/admin/notifications/send",
            {"studentId": student_id, "title": title, "message": message, **extra},
        )

    async def send_bulk(self, student_ids: List[str], title: str, message: str, **extra: Any) -> Dict[str, Any]:
        return await self.client.post(
            "/admin/notifications/send-bulk",
            {"studentIds": student_ids, "title": title, "message": message, **extra},
        )

    async def send_all(self, title: str, message: str, **extra: Any) -> Dict[str, Any]:
        return await self.client.post(
            "/admin/notifications/send-all", {"title": title, "message": message, **extra}
        )

    async def mark_as_read(self, notification_id: str) -> Dict[str, Any]:
        return await self.client.put(f"/admin/notifications/{notification_id}/read")

    async def mark_all_as_read(self) -> Dict[str, Any]:
        return await self.client.put("/admin/notifications/mark-all-read")

    async def delete(self, notification_id: str) -> Dict[str, Any]:
        return await self.client.delete(f"/admin/notifications/{notification_id}")

    async def stats(self) -> Dict[str, Any]:
        body = await self.client.get("/admin/notifications/stats")
        return body.get("stats", body)


class AppointmentAPI(_Resource):

    async def list(self, page: int = 1, limit: int = 10, **filters: Any) -> Dict[str, Any]:
        return await self.client.get("/admin/appointments", page=page, limit=limit, **filters)

    async def get(self, appointment_id: str) -> Dict[str, Any]:
        body = await self.client.get(f"/admin/appointments/{appointment_id}")
        return body.get("appointment", body)

    async def update_status(self, appointment_id: str, status: str, admin_notes: Optional[str] = None) -> Dict[str, Any]:
        return await self.client.put(
            f"/admin/appointments/{appointment_id}/status", {"status": status, "adminNotes": admin_notes}
        )

    async def cancel(self, appointment_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        return await self.client.put(f"/admin/appointments/{appointment_id}/cancel", {"reason": reason})

    async def stats(self) -> Dict[str, Any]:
        body = await self.client.get("/admin/appointments/stats")
        return body.get("stats", body)

    async def today(self) -> Dict[str, Any]:
        return await self.client.get("/admin/appointments/today")


class FeedbackAPI(_Resource):

    async def list(self, page: int = 1, limit: int = 10, **filters: Any) -> Dict[str, Any]:
        return await self.client.get("/admin/feedback", page=page, limit=limit, **filters)

    async def respond(self, feedback_id: str, response: str) -> Dict[str, Any]:
        return await self.client.post(f"/admin/feedback/{feedback_id}/respond", {"response": response})

    async def update_status(
        self, feedback_id: str, status: Optional[str] = None, priority: Optional[str] = None
    ) -> Dict[str, Any]:
        data = {k: v for k, v in {"status": status, "priority": priority}.items() if v is not None}
        return await self.client.put(f"/admin/feedback/{feedback_id}/status", data)
