from __future__ import annotations

import json
from typing import Any, Protocol

import anyio
import websockets
from websockets.exceptions import WebSocketException

from ..errors import ConfigError
from ..logging import get_logger
from .adapter import SlackAdapter, parse_form_payload
from .client import SLACK_API_BASE_URL, SlackApiError, open_socket_url

logger = get_logger(__name__)


class SocketConnection(Protocol):
    async def recv(self) -> str | bytes: ...

    async def send(self, message: str) -> None: ...


def coerce_socket_payload(payload: object) -> dict[str, Any] | None:
    if isinstance(payload, dict):
        return payload
    if isinstance(payload, str):
        raw = payload.strip()
        if raw.startswith("{") and raw.endswith("}"):
            try:
                value = json.loads(raw)
            except json.JSONDecodeError:
                value = None
            if isinstance(value, dict):
                return value
        parsed = parse_form_payload(raw)
        if "payload" in parsed:
            try:
                decoded = json.loads(parsed["payload"])
            except json.JSONDecodeError:
                decoded = None
            if isinstance(decoded, dict):
                return decoded
        return parsed
    return None


def envelope_payload(envelope: dict[str, Any]) -> dict[str, Any] | None:
    msg_type = envelope.get("type")
    if msg_type == "events_api":
        payload = envelope.get("payload")
        return payload if isinstance(payload, dict) else None
    if msg_type in {"interactive", "slash_commands"}:
        return coerce_socket_payload(envelope.get("payload"))
    return None


async def _ack(
    ws: SocketConnection, envelope_id: object, payload: dict[str, Any] | None = None
) -> None:
    if not isinstance(envelope_id, str) or not envelope_id:
        return
    message: dict[str, Any] = {"envelope_id": envelope_id}
    if payload:
        message["payload"] = payload
    await ws.send(json.dumps(message))


async def _handle_payload_safely(
    adapter: SlackAdapter, payload: dict[str, Any]
) -> None:
    try:
        await adapter.handle_payload(payload)
    except Exception as exc:  # noqa: BLE001
        logger.exception(
            "slack.socket.handler_failed",
            payload_type=payload.get("type"),
            error=str(exc),
            error_type=exc.__class__.__name__,
        )


async def _answer_view_submission(
    ws: SocketConnection,
    adapter: SlackAdapter,
    envelope_id: object,
    payload: dict[str, Any],
) -> None:
    body: dict[str, Any] | None = None
    try:
        response = await adapter.handle_payload(payload)
        body = response.body if isinstance(response.body, dict) else None
    except Exception as exc:  # noqa: BLE001
        logger.exception(
            "slack.socket.handler_failed",
            payload_type="view_submission",
            error=str(exc),
            error_type=exc.__class__.__name__,
        )
    await _ack(ws, envelope_id, body)


async def serve_socket(ws: SocketConnection, adapter: SlackAdapter) -> None:
    """Consume envelopes from one Socket Mode connection until Slack disconnects.

    Envelopes are acknowledged before their handlers run, except modal
    submissions whose handler result has to travel back in the ack.
    """
    async with anyio.create_task_group() as tg:
        while True:
            raw = await ws.recv()
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", "ignore")
            try:
                envelope = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("slack.socket.bad_payload")
                continue
            if not isinstance(envelope, dict):
                logger.warning("slack.socket.bad_payload")
                continue

            if envelope.get("type") == "disconnect":
                logger.info("slack.socket.disconnect", reason=envelope.get("reason"))
                return

            envelope_id = envelope.get("envelope_id")
            payload = envelope_payload(envelope)
            if payload is not None and payload.get("type") == "view_submission":
                tg.start_soon(
                    _answer_view_submission, ws, adapter, envelope_id, payload
                )
                continue
            await _ack(ws, envelope_id)
            if payload is not None:
                tg.start_soon(_handle_payload_safely, adapter, payload)


async def run_socket_mode(
    adapter: SlackAdapter,
    app_token: str | None,
    *,
    base_url: str = SLACK_API_BASE_URL,
    backoff_s: float = 1.0,
) -> None:
    if not app_token:
        raise ConfigError("Missing `chat.slack.app_token` for Socket Mode.")

    while True:
        try:
            socket_url = await open_socket_url(app_token, base_url=base_url)
        except SlackApiError as exc:
            logger.warning("slack.socket.open_failed", error=str(exc))
            await anyio.sleep(backoff_s)
            continue

        try:
            async with websockets.connect(
                socket_url,
                ping_interval=10,
                ping_timeout=10,
            ) as ws:
                await serve_socket(ws, adapter)
        except WebSocketException as exc:
            logger.warning("slack.socket_failed", error=str(exc))
        except OSError as exc:
            logger.warning("slack.socket_failed", error=str(exc))

        await anyio.sleep(backoff_s)
