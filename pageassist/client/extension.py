"""
Extension Bridge - the background worker's message boundary.

Each message type is one request/response against the API. Errors are
returned as {"error": ...} payloads instead of raised, matching what the
content script expects.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx
from structlog import get_logger

from pageassist.models.api import ChatResponse, OriginDomain, PageSnapshot
from pageassist.services.origin import classify_origin
from pageassist.services.prompt import metric_key

logger = get_logger(__name__)

MAX_SNAPSHOT_METRICS = 100
MAX_SNAPSHOT_TABLES = 10
DEFAULT_SELLER_CONSOLE_HOST = "seller.ozon.ru"
DEFAULT_PUBLIC_SITE_HOST = "ozon.ru"


class ExtensionMessageType(str, Enum):
    """Messages the content script and popup send to the background worker."""

    SEND_MESSAGE = "SEND_MESSAGE"
    GET_BALANCE = "GET_BALANCE"
    GET_HISTORY = "GET_HISTORY"
    GET_SESSION = "GET_SESSION"
    GET_API_KEY = "GET_API_KEY"
    SAVE_API_KEY = "SAVE_API_KEY"
    CLEAR_SESSION = "CLEAR_SESSION"


class ExtensionError(Exception):
    """A bridge request failed; the message is shown to the user."""

    pass


def cap_snapshot(snapshot: PageSnapshot) -> PageSnapshot:
    """Apply producer caps: deduplicated metrics, at most 100, and at most 10 tables."""
    seen: set[str] = set()
    metrics = []
    for metric in snapshot.metrics:
        key = metric_key(metric)
        if key in seen:
            continue
        seen.add(key)
        metrics.append(metric)
        if len(metrics) >= MAX_SNAPSHOT_METRICS:
            break

    return snapshot.model_copy(
        update={"metrics": metrics, "tables": snapshot.tables[:MAX_SNAPSHOT_TABLES]}
    )


@dataclass
class ExtensionStorage:
    """Extension-local state: the saved API key and one session id per domain."""

    api_key: str = ""
    sessions: dict[OriginDomain, str] = field(default_factory=dict)


class ExtensionBridge:
    """Handles extension messages by calling the PageAssist API."""

    def __init__(
        self,
        base_url: str,
        storage: ExtensionStorage | None = None,
        http_client: httpx.AsyncClient | None = None,
        seller_console_host: str = DEFAULT_SELLER_CONSOLE_HOST,
        public_site_host: str = DEFAULT_PUBLIC_SITE_HOST,
    ):
        self.base_url = base_url.rstrip("/")
        self.storage = storage or ExtensionStorage()
        self.seller_console_host = seller_console_host
        self.public_site_host = public_site_host
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def domain_for(self, value: str | None) -> OriginDomain:
        """Accept an origin domain name, a host or a page URL."""
        if not value:
            return OriginDomain.UNKNOWN
        try:
            return OriginDomain(value)
        except ValueError:
            return classify_origin(value, self.seller_console_host, self.public_site_host)

    async def handle(self, message: dict[str, Any]) -> dict[str, Any]:
        """Dispatch one extension message and build its response payload."""
        try:
            message_type = ExtensionMessageType(message.get("type"))
        except ValueError:
            return {"error": f"Unknown message type: {message.get('type')}"}

        if message_type is ExtensionMessageType.SEND_MESSAGE:
            try:
                response = await self.send_message(
                    message.get("message", ""),
                    PageSnapshot.model_validate(message.get("pageData") or {}),
                    message.get("sessionId"),
                )
            except (ExtensionError, httpx.HTTPError) as e:
                return {"error": str(e) or type(e).__name__}
            return response.model_dump(
                by_alias=True, mode="json", include={"answer", "session_id", "usage"}
            )

        if message_type is ExtensionMessageType.GET_BALANCE:
            try:
                return await self.get_balance()
            except (ExtensionError, httpx.HTTPError) as e:
                return {"error": str(e) or type(e).__name__, "balance": 0}

        if message_type is ExtensionMessageType.GET_HISTORY:
            return await self.get_history(message.get("sessionId"))

        if message_type is ExtensionMessageType.GET_SESSION:
            return {"sessionId": self.get_session(message.get("domain"))}

        if message_type is ExtensionMessageType.GET_API_KEY:
            return {"apiKey": self.storage.api_key}

        if message_type is ExtensionMessageType.SAVE_API_KEY:
            self.save_api_key(message.get("apiKey") or "")
            return {"success": True}

        self.clear_session(message.get("domain") or self.seller_console_host)
        return {"success": True}

    async def send_message(
        self, text: str, snapshot: PageSnapshot, session_id: str | None = None
    ) -> ChatResponse:
        """Send one chat turn and remember the session it landed in."""
        domain = self.domain_for(snapshot.url)
        current_session = session_id or self.storage.sessions.get(domain)

        payload: dict[str, Any] = {
            "message": text,
            "pageData": cap_snapshot(snapshot).model_dump(by_alias=True, mode="json"),
        }
        if current_session:
            payload["sessionId"] = current_session

        data = await self._request("POST", "/chat/message", json=payload)
        response = ChatResponse.model_validate(data)
        self.storage.sessions[domain] = str(response.session_id)
        return response

    async def get_balance(self) -> dict[str, Any]:
        return await self._request("GET", "/billing/balance")

    async def get_history(self, session_id: str | None) -> dict[str, Any]:
        """History for a session. Any failure degrades to an empty history."""
        if not self.storage.api_key or not session_id:
            return {"messages": []}
        try:
            return await self._request("GET", f"/chat/history/{session_id}")
        except (ExtensionError, httpx.HTTPError) as e:
            logger.warning("extension_history_unavailable", session_id=session_id, error=str(e))
            return {"messages": []}

    def get_session(self, domain: str | None) -> str | None:
        return self.storage.sessions.get(self.domain_for(domain))

    def save_api_key(self, api_key: str) -> None:
        self.storage.api_key = api_key.strip()

    def clear_session(self, domain: str | None) -> None:
        """Forget the remembered session; the next turn starts a fresh one."""
        self.storage.sessions.pop(self.domain_for(domain), None)

    async def _request(
        self, method: str, path: str, json: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        if not self.storage.api_key:
            raise ExtensionError("API key is not configured. Open the extension settings.")

        response = await self.http_client.request(
            method,
            f"{self.base_url}{path}",
            json=json,
            headers={"X-API-Key": self.storage.api_key},
        )
        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.is_error:
            message = data.get("message") or data.get("error") if isinstance(data, dict) else None
            logger.warning(
                "extension_request_failed",
                path=path,
                status=response.status_code,
                error=data.get("error") if isinstance(data, dict) else None,
            )
            raise ExtensionError(message or f"Server error: {response.status_code}")
        return data
