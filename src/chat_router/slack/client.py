from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import anyio
import httpx

from ..errors import AdapterError
from ..logging import get_logger

logger = get_logger(__name__)

SLACK_API_BASE_URL = "https://slack.com/api"


class SlackApiError(AdapterError):
    def __init__(
        self,
        message: str,
        *,
        error: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message,
            error_code=error,
            metadata={"status_code": status_code} if status_code else None,
        )
        self.error = error
        self.status_code = status_code


@dataclass(frozen=True, slots=True)
class SlackAuth:
    user_id: str
    user_name: str | None = None
    team_id: str | None = None
    bot_id: str | None = None


@dataclass(frozen=True, slots=True)
class UploadTarget:
    upload_url: str
    file_id: str


class SlackClient:
    """Thin async wrapper over the Slack Web API.

    Every call raises ``SlackApiError`` when Slack answers ``ok: false`` or
    an HTTP error; 429 responses are retried after ``Retry-After``.
    """

    def __init__(
        self,
        token: str,
        *,
        base_url: str = SLACK_API_BASE_URL,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token = token
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout_s,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return await _request_with_client(
            self._client,
            method,
            endpoint,
            params=params,
            json=json,
        )

    async def call(self, api_method: str, data: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", f"/{api_method}", json=data)

    async def query(self, api_method: str, params: dict[str, Any]) -> dict[str, Any]:
        return await self._request("GET", f"/{api_method}", params=params)

    async def auth_test(self) -> SlackAuth:
        payload = await self._request("POST", "/auth.test")
        user_id = payload.get("user_id")
        if not isinstance(user_id, str) or not user_id:
            raise SlackApiError("Missing user_id in auth.test response")
        user_name = payload.get("user")
        if not isinstance(user_name, str) or not user_name.strip():
            user_name = None
        return SlackAuth(
            user_id=user_id,
            user_name=user_name,
            team_id=payload.get("team_id"),
            bot_id=payload.get("bot_id"),
        )

    async def post_message(
        self,
        *,
        channel_id: str,
        text: str,
        blocks: list[dict[str, Any]] | None = None,
        thread_ts: str | None = None,
    ) -> dict[str, Any]:
        data: dict[str, Any] = {"channel": channel_id, "text": text, "mrkdwn": True}
        if blocks is not None:
            data["blocks"] = blocks
        if thread_ts:
            data["thread_ts"] = thread_ts
        return await self.call("chat.postMessage", data)

    async def update_message(
        self,
        *,
        channel_id: str,
        ts: str,
        text: str,
        blocks: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        data: dict[str, Any] = {
            "channel": channel_id,
            "ts": ts,
            "text": text,
            "mrkdwn": True,
        }
        if blocks is not None:
            data["blocks"] = blocks
        return await self.call("chat.update", data)

    async def delete_message(self, *, channel_id: str, ts: str) -> None:
        await self.call("chat.delete", {"channel": channel_id, "ts": ts})

    async def post_ephemeral(
        self,
        *,
        channel_id: str,
        user_id: str,
        text: str,
        blocks: list[dict[str, Any]] | None = None,
        thread_ts: str | None = None,
    ) -> dict[str, Any]:
        data: dict[str, Any] = {"channel": channel_id, "user": user_id, "text": text}
        if blocks is not None:
            data["blocks"] = blocks
        if thread_ts:
            data["thread_ts"] = thread_ts
        return await self.call("chat.postEphemeral", data)

    async def add_reaction(self, *, channel_id: str, ts: str, name: str) -> None:
        await self.call(
            "reactions.add", {"channel": channel_id, "timestamp": ts, "name": name}
        )

    async def remove_reaction(self, *, channel_id: str, ts: str, name: str) -> None:
        await self.call(
            "reactions.remove", {"channel": channel_id, "timestamp": ts, "name": name}
        )

    async def pin(self, *, channel_id: str, ts: str) -> None:
        await self.call("pins.add", {"channel": channel_id, "timestamp": ts})

    async def unpin(self, *, channel_id: str, ts: str) -> None:
        await self.call("pins.remove", {"channel": channel_id, "timestamp": ts})

    async def set_thread_status(
        self, *, channel_id: str, thread_ts: str, status: str
    ) -> None:
        await self.call(
            "assistant.threads.setStatus",
            {"channel_id": channel_id, "thread_ts": thread_ts, "status": status},
        )

    async def conversation_replies(
        self,
        *,
        channel_id: str,
        ts: str,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"channel": channel_id, "ts": ts}
        if limit is not None:
            params["limit"] = limit
        if cursor:
            params["cursor"] = cursor
        return await self.query("conversations.replies", params)

    async def conversation_history(
        self,
        *,
        channel_id: str,
        limit: int | None = None,
        cursor: str | None = None,
        latest: str | None = None,
        inclusive: bool | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"channel": channel_id}
        if limit is not None:
            params["limit"] = limit
        if cursor:
            params["cursor"] = cursor
        if latest is not None:
            params["latest"] = latest
        if inclusive is not None:
            params["inclusive"] = "true" if inclusive else "false"
        return await self.query("conversations.history", params)

    async def conversation_info(self, *, channel_id: str) -> dict[str, Any]:
        return await self.query("conversations.info", {"channel": channel_id})

    async def open_conversation(self, *, user_id: str) -> dict[str, Any]:
        return await self.call("conversations.open", {"users": user_id})

    async def open_view(self, *, trigger_id: str, view: Any) -> dict[str, Any]:
        return await self.call("views.open", {"trigger_id": trigger_id, "view": view})

    async def get_upload_url(self, *, filename: str, length: int) -> UploadTarget:
        payload = await self.query(
            "files.getUploadURLExternal", {"filename": filename, "length": length}
        )
        upload_url = payload.get("upload_url")
        file_id = payload.get("file_id")
        if not isinstance(upload_url, str) or not isinstance(file_id, str):
            raise SlackApiError("Slack upload url missing")
        return UploadTarget(upload_url=upload_url, file_id=file_id)

    async def upload_content(
        self, target: UploadTarget, content: bytes, mime_type: str
    ) -> None:
        try:
            response = await self._client.post(
                target.upload_url,
                content=content,
                headers={"Content-Type": mime_type},
            )
        except httpx.HTTPError as exc:
            logger.warning("slack.upload_failed", error=str(exc))
            raise SlackApiError("Slack upload failed") from exc
        if response.status_code >= 400:
            raise SlackApiError(
                f"Slack upload HTTP {response.status_code}",
                status_code=response.status_code,
            )

    async def complete_uploads(
        self,
        *,
        files: list[dict[str, str]],
        channel_id: str | None = None,
        thread_ts: str | None = None,
    ) -> list[dict[str, Any]]:
        data: dict[str, Any] = {"files": files}
        if channel_id:
            data["channel_id"] = channel_id
        if thread_ts:
            data["thread_ts"] = thread_ts
        payload = await self.call("files.completeUploadExternal", data)
        uploaded = payload.get("files")
        return uploaded if isinstance(uploaded, list) else []


async def _request_with_client(
    client: httpx.AsyncClient,
    method: str,
    endpoint: str,
    *,
    params: dict[str, Any] | None = None,
    json: dict[str, Any] | None = None,
) -> dict[str, Any]:
    while True:
        try:
            response = await client.request(
                method, endpoint, params=params, json=json
            )
        except httpx.HTTPError as exc:
            logger.warning("slack.network_error", error=str(exc))
            raise SlackApiError("Slack request failed") from exc

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                delay = int(retry_after) if retry_after is not None else 1
            except ValueError:
                delay = 1
            logger.info("slack.rate_limited", endpoint=endpoint, retry_after=delay)
            await anyio.sleep(delay)
            continue

        if response.status_code >= 400:
            raise SlackApiError(
                f"Slack HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise SlackApiError("Slack response was not JSON") from exc

        if payload.get("ok") is not True:
            error = payload.get("error")
            raise SlackApiError(
                f"Slack API error: {error}",
                error=error,
                status_code=response.status_code,
            )

        return payload


async def open_socket_url(
    app_token: str,
    *,
    base_url: str = SLACK_API_BASE_URL,
    timeout_s: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    token = app_token.strip()
    if not token:
        raise SlackApiError("Missing Slack app token")
    async with httpx.AsyncClient(
        base_url=base_url,
        headers={"Authorization": f"Bearer {token}"},
        timeout=timeout_s,
        transport=transport,
    ) as client:
        payload = await _request_with_client(
            client,
            "POST",
            "/apps.connections.open",
        )
    url = payload.get("url")
    if not isinstance(url, str) or not url.strip():
        raise SlackApiError("Slack socket url missing")
    return url.strip()
