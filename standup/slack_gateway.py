"""
Slack Web API Gateway

httpx implementation of MessagingGateway. Every call goes through with_retry:
HTTP 400/401/403/404 and known permanent API errors fail immediately, other
failures (timeouts, 5xx, transient API errors) are retried with backoff.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from .collaborators import ChatMessage, MessagingGateway, PostedMessage
from .errors import GatewayError, TerminalClientError
from .retry import DEFAULT_INITIAL_DELAY, DEFAULT_MAX_ATTEMPTS, with_retry

logger = logging.getLogger("standup.slack_gateway")

# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------
SLACK_API_BASE_URL = "https://slack.com/api"
API_TIMEOUT_DEFAULT = 10.0  # seconds

# API-level errors that will never succeed on retry
PERMANENT_API_ERRORS = frozenset([
    "channel_not_found",
    "invalid_auth",
    "not_authed",
    "account_inactive",
    "missing_scope",
    "not_in_channel",
    "thread_not_found",
    "user_not_found",
])


class SlackGateway(MessagingGateway):
    """Thin wrapper over the Slack Web API methods the orchestrator needs."""

    def __init__(
        self,
        token: str,
        base_url: str = SLACK_API_BASE_URL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        timeout: float = API_TIMEOUT_DEFAULT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._max_attempts = max_attempts
        self._initial_delay = initial_delay
        self._timeout = timeout
        self._client = client

    async def _send(self, client: httpx.AsyncClient, method: str, body: Dict[str, Any], read: bool) -> httpx.Response:
        url = f"{self._base_url}/{method}"
        headers = {"Authorization": f"Bearer {self._token}"}
        if read:
            return await client.get(url, params=_to_query(body), headers=headers)
        headers["Content-Type"] = "application/json; charset=utf-8"
        return await client.post(url, json=body, headers=headers)

    async def _call_once(self, method: str, body: Dict[str, Any], read: bool = False) -> Dict[str, Any]:
        if self._client is not None:
            response = await self._send(self._client, method, body, read)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await self._send(client, method, body, read)

        response.raise_for_status()
        data = response.json()
        if not data.get("ok"):
            error = data.get("error") or "unknown"
            if error in PERMANENT_API_ERRORS:
                raise TerminalClientError(f"Gateway error [{method}]: {error}")
            raise GatewayError(method, error)
        return data

    async def call(self, method: str, body: Dict[str, Any], read: bool = False) -> Dict[str, Any]:
        """Invoke a Web API method; read methods go out as GET with query parameters."""
        return await with_retry(
            lambda: self._call_once(method, body, read),
            max_attempts=self._max_attempts,
            initial_delay=self._initial_delay,
            label=f"Slack {method}",
        )

    async def post_message(
        self,
        channel: str,
        text: str,
        thread_id: Optional[str] = None,
        blocks: Optional[List[Dict[str, Any]]] = None,
    ) -> PostedMessage:
        body: Dict[str, Any] = {"channel": channel, "text": text}
        if thread_id:
            body["thread_ts"] = thread_id
        if blocks:
            body["blocks"] = blocks
        data = await self.call("chat.postMessage", body)
        return PostedMessage(channel=data.get("channel") or channel, message_id=data.get("ts") or "")

    async def update_message(
        self,
        channel: str,
        message_id: str,
        text: str,
        blocks: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        body: Dict[str, Any] = {"channel": channel, "ts": message_id, "text": text}
        if blocks is not None:
            body["blocks"] = blocks
        await self.call("chat.update", body)

    async def open_direct_conversation(self, user_id: str) -> Optional[str]:
        data = await self.call("conversations.open", {"users": user_id})
        channel = data.get("channel") or {}
        return channel.get("id")

    async def fetch_thread(self, channel: str, thread_id: str, limit: int = 100) -> List[ChatMessage]:
        data = await self.call(
            "conversations.replies",
            {"channel": channel, "ts": thread_id, "limit": limit, "inclusive": True},
            read=True,
        )
        return [_to_chat_message(m) for m in data.get("messages") or []]

    async def fetch_channel_history(self, channel: str, limit: int = 50) -> List[ChatMessage]:
        data = await self.call("conversations.history", {"channel": channel, "limit": limit}, read=True)
        return [_to_chat_message(m) for m in data.get("messages") or []]


def _to_query(body: Dict[str, Any]) -> Dict[str, str]:
    query = {}
    for key, value in body.items():
        if isinstance(value, bool):
            query[key] = "true" if value else "false"
        else:
            query[key] = str(value)
    return query


def _to_chat_message(raw: Dict[str, Any]) -> ChatMessage:
    return ChatMessage(
        user=raw.get("user") or "",
        text=raw.get("text") or "",
        message_id=raw.get("ts") or "",
        thread_id=raw.get("thread_ts"),
        reply_count=raw.get("reply_count") or 0,
    )
