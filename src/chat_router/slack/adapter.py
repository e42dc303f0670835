from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs

import httpx

from ..adapter import BaseAdapter, WebhookResponse
from ..errors import ValidationError
from ..events import (
    ActionEvent,
    MessageDeletedEvent,
    MessageEditedEvent,
    ModalCloseEvent,
    ModalResponse,
    ModalSubmitEvent,
    ReactionEvent,
    SlashCommandEvent,
)
from ..logging import get_logger
from ..messages import (
    Attachment,
    Author,
    FileUpload,
    Message,
    PostableMessage,
    PostableMode,
    SentMessage,
)
from ..types import (
    ChannelInfo,
    FetchOptions,
    FetchResult,
    ListThreadsOptions,
    ListThreadsResult,
    ThreadInfo,
    ThreadSummary,
)
from .client import SlackClient
from .crypto import verify_signature
from .format import from_markdown, to_markdown

if TYPE_CHECKING:
    from ..chat import Chat

logger = get_logger(__name__)

SLACK_ADAPTER_NAME = "slack"


def _iso_from_ts(ts: str) -> str | None:
    try:
        seconds = int(float(ts))
    except ValueError:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime(
        "%Y-%m-%dT%H:%M:%SZ"
    )


def _attachment_type(mime_type: str) -> str:
    for prefix in ("image", "video", "audio"):
        if mime_type.startswith(f"{prefix}/"):
            return prefix
    return "file"


def parse_form_payload(raw: str) -> dict[str, str]:
    parsed = parse_qs(raw, keep_blank_values=True)
    return {key: values[-1] if values else "" for key, values in parsed.items()}


def modal_response_body(result: Any) -> dict[str, Any] | None:
    """Translate a modal-submit handler result into a Slack response body."""
    if result is None:
        return None
    if not isinstance(result, ModalResponse):
        return result if isinstance(result, dict) else None
    if result.action == "close":
        return {"response_action": "clear"}
    if result.action == "errors":
        return {"response_action": "errors", "errors": dict(result.errors or {})}
    return {"response_action": result.action, "view": result.modal}


class SlackAdapter(BaseAdapter):
    def __init__(
        self,
        client: SlackClient,
        *,
        signing_secret: str | None = None,
        bot_user_id: str | None = None,
        user_name: str = "bot",
        name: str = SLACK_ADAPTER_NAME,
    ) -> None:
        self.client = client
        self._signing_secret = signing_secret
        self._bot_user_id = bot_user_id
        self._user_name = user_name
        self._name = name
        self._chat: Chat | None = None

    def name(self) -> str:
        return self._name

    def user_name(self) -> str:
        return self._user_name

    def bot_user_id(self) -> str | None:
        return self._bot_user_id

    def initialize(self, chat: "Chat") -> None:
        self._chat = chat

    async def identify(self) -> None:
        """Fill in the bot user id from ``auth.test`` when it was not configured."""
        auth = await self.client.auth_test()
        if self._bot_user_id is None:
            self._bot_user_id = auth.user_id
        if auth.user_name and self._user_name == "bot":
            self._user_name = auth.user_name

    @property
    def chat(self) -> "Chat":
        if self._chat is None:
            raise RuntimeError("slack adapter is not attached to a chat")
        return self._chat

    # thread ids

    def encode_thread_id(self, fields: dict[str, Any]) -> str:
        channel = fields.get("channel") or ""
        thread_ts = fields.get("thread_ts") or ""
        return f"{self._name}:{channel}:{thread_ts}"

    def decode_thread_id(self, thread_id: str) -> dict[str, Any]:
        if not thread_id or ":" not in thread_id:
            raise ValidationError(f"Invalid Slack thread ID: {thread_id!r}")
        parts = thread_id.split(":")
        if parts[0] != self._name:
            raise ValidationError(f"Invalid Slack thread ID prefix: {parts[0]!r}")
        if len(parts) > 3:
            raise ValidationError(f"Invalid Slack thread ID format: {thread_id!r}")
        if not parts[1]:
            raise ValidationError("Invalid Slack thread ID: missing channel")
        return {"channel": parts[1], "thread_ts": parts[2] if len(parts) == 3 else ""}

    def channel_id_from_thread_id(self, thread_id: str) -> str | None:
        return self.decode_thread_id(thread_id)["channel"]

    def is_dm(self, thread_id: str) -> bool:
        return self.decode_thread_id(thread_id)["channel"].startswith("D")

    def render_formatted(self, markdown: str) -> str:
        return from_markdown(markdown)

    # parsing

    def parse_message(self, payload: Any) -> Message:
        event = payload if isinstance(payload, dict) else {}
        user_id = event.get("user") or event.get("bot_id") or "unknown"
        ts = str(event.get("ts") or "")
        text = event.get("text") or ""
        thread_id = self.encode_thread_id(
            {"channel": event.get("channel"), "thread_ts": event.get("thread_ts")}
        )

        metadata: dict[str, Any] = {}
        if ts and (sent := _iso_from_ts(ts)):
            metadata["dateSent"] = sent
        edited = event.get("edited")
        if isinstance(edited, dict):
            metadata["edited"] = True
            edited_ts = str(edited.get("ts") or "")
            if edited_ts and (edited_at := _iso_from_ts(edited_ts)):
                metadata["editedAt"] = edited_at

        attachments: list[Attachment] = []
        for item in event.get("files") or []:
            if not isinstance(item, dict):
                continue
            mime_type = item.get("mimetype") or ""
            attachments.append(
                Attachment(
                    type=_attachment_type(mime_type),
                    name=item.get("name") or "",
                    url=item.get("url_private") or "",
                    file_id=item.get("id"),
                    mime_type=mime_type,
                    size=item.get("size"),
                    width=item.get("original_w"),
                    height=item.get("original_h"),
                )
            )

        return Message(
            id=ts,
            thread_id=thread_id,
            text=to_markdown(text),
            formatted=text,
            raw=event,
            author=Author(
                user_id=user_id,
                user_name=event.get("username") or "",
                is_bot="bot_id" in event or event.get("subtype") == "bot_message",
                is_me=user_id == self._bot_user_id,
            ),
            metadata=metadata,
            attachments=tuple(attachments),
            is_mention=event.get("type") == "app_mention",
        )

    def _author_from_payload(self, payload: dict[str, Any]) -> Author:
        user = payload.get("user")
        data = user if isinstance(user, dict) else {}
        user_id = data.get("id") or "unknown"
        return Author(
            user_id=user_id,
            user_name=data.get("username") or "",
            full_name=data.get("name") or "",
            is_bot=False,
            is_me=user_id == self._bot_user_id,
        )

    # inbound

    async def handle_webhook(
        self, body: bytes, headers: Mapping[str, str]
    ) -> WebhookResponse:
        header_map = httpx.Headers(dict(headers))
        timestamp = header_map.get("X-Slack-Request-Timestamp")
        signature = header_map.get("X-Slack-Signature")
        if self._signing_secret is None or not verify_signature(
            body, signature, timestamp, self._signing_secret
        ):
            logger.warning("slack.webhook.bad_signature")
            return WebhookResponse(401, "Unauthorized")

        raw = body.decode("utf-8", "replace")
        content_type = header_map.get("Content-Type", "")
        if "application/x-www-form-urlencoded" in content_type:
            form = parse_form_payload(raw)
            if "payload" in form:
                try:
                    payload = json.loads(form["payload"])
                except json.JSONDecodeError:
                    return WebhookResponse(400, "Invalid payload")
                if not isinstance(payload, dict):
                    return WebhookResponse(400, "Invalid payload")
                return await self.handle_payload(payload)
            if "command" in form:
                return await self.handle_payload(form)
            return WebhookResponse(400, "Bad request")

        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return WebhookResponse(400, "Invalid JSON")
        if not isinstance(data, dict):
            return WebhookResponse(400, "Invalid JSON")
        return await self.handle_payload(data)

    async def handle_payload(self, payload: dict[str, Any]) -> WebhookResponse:
        """Route one decoded Slack payload into the chat.

        Accepts Events API bodies, interactive payloads and slash command
        form fields, whether they came over HTTP or Socket Mode.
        """
        payload_type = payload.get("type") or ""
        if payload_type == "url_verification":
            return WebhookResponse(
                200,
                {"challenge": payload.get("challenge") or ""},
                {"Content-Type": "application/json"},
            )
        if payload_type == "event_callback":
            event = payload.get("event")
            if isinstance(event, dict):
                await self._handle_event(event)
            return WebhookResponse(200, "")
        if payload_type == "block_actions":
            await self._handle_block_actions(payload)
            return WebhookResponse(200, "")
        if payload_type == "view_submission":
            result = await self._handle_view_submission(payload)
            body = modal_response_body(result)
            if body is not None:
                return WebhookResponse(200, body, {"Content-Type": "application/json"})
            return WebhookResponse(200, "")
        if payload_type == "view_closed":
            await self._handle_view_closed(payload)
            return WebhookResponse(200, "")
        if "command" in payload:
            await self._handle_slash_command(payload)
            return WebhookResponse(200, "")
        logger.debug("slack.payload.ignored", payload_type=payload_type)
        return WebhookResponse(200, "")

    async def _handle_event(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")
        if event_type in {"message", "app_mention"}:
            await self._handle_message_event(event, event_type == "app_mention")
        elif event_type in {"reaction_added", "reaction_removed"}:
            await self._handle_reaction_event(event, event_type == "reaction_added")

    async def _handle_message_event(
        self, event: dict[str, Any], is_app_mention: bool
    ) -> None:
        subtype = event.get("subtype")
        if subtype == "message_changed":
            await self._handle_message_changed(event)
            return
        if subtype == "message_deleted":
            await self._handle_message_deleted(event)
            return

        message = self.parse_message(event)
        channel = event.get("channel") or ""
        is_dm = event.get("channel_type") == "im" or channel.startswith("D")
        if (is_app_mention or is_dm) and not message.is_mention:
            message = Message(
                id=message.id,
                thread_id=message.thread_id,
                text=message.text,
                author=message.author,
                formatted=message.formatted,
                raw=message.raw,
                metadata=message.metadata,
                attachments=message.attachments,
                is_mention=True,
            )
        await self.chat.dispatch_incoming_message(self, message.thread_id, message)

    async def _handle_message_changed(self, event: dict[str, Any]) -> None:
        channel = event.get("channel") or ""
        inner = event.get("message")
        inner = inner if isinstance(inner, dict) else {}
        thread_id = self.encode_thread_id(
            {"channel": channel, "thread_ts": inner.get("thread_ts") or inner.get("ts")}
        )
        previous = event.get("previous_message")
        message = self.parse_message({**inner, "channel": channel})
        await self.chat.dispatch_message_edited(
            MessageEditedEvent(
                adapter=self,
                thread_id=thread_id,
                message=message,
                previous_text=previous.get("text") if isinstance(previous, dict) else None,
                raw=event,
            )
        )

    async def _handle_message_deleted(self, event: dict[str, Any]) -> None:
        channel = event.get("channel") or ""
        deleted_ts = event.get("deleted_ts") or ""
        previous = event.get("previous_message")
        thread_ts = previous.get("thread_ts") if isinstance(previous, dict) else None
        await self.chat.dispatch_message_deleted(
            MessageDeletedEvent(
                adapter=self,
                thread_id=self.encode_thread_id(
                    {"channel": channel, "thread_ts": thread_ts or deleted_ts}
                ),
                message_id=deleted_ts,
                raw=event,
            )
        )

    async def _handle_reaction_event(self, event: dict[str, Any], added: bool) -> None:
        user_id = event.get("user") or "unknown"
        emoji = event.get("reaction") or ""
        item = event.get("item")
        item = item if isinstance(item, dict) else {}
        message_ts = item.get("ts") or ""
        await self.chat.dispatch_reaction(
            ReactionEvent(
                adapter=self,
                emoji=emoji,
                raw_emoji=emoji,
                added=added,
                user=Author(
                    user_id=user_id,
                    is_bot=False,
                    is_me=user_id == self._bot_user_id,
                ),
                thread_id=self.encode_thread_id(
                    {"channel": item.get("channel"), "thread_ts": message_ts}
                ),
                message_id=message_ts,
                raw=event,
            )
        )

    async def _handle_block_actions(self, payload: dict[str, Any]) -> None:
        user = self._author_from_payload(payload)
        channel_data = payload.get("channel")
        container = payload.get("container")
        message_data = payload.get("message")
        channel_data = channel_data if isinstance(channel_data, dict) else {}
        container = container if isinstance(container, dict) else {}
        message_data = message_data if isinstance(message_data, dict) else {}

        channel = channel_data.get("id") or container.get("channel_id")
        message_ts = message_data.get("ts") or container.get("message_ts")
        thread_ts = message_data.get("thread_ts") or message_ts
        thread_id = (
            self.encode_thread_id({"channel": channel, "thread_ts": thread_ts})
            if channel
            else None
        )
        for action in payload.get("actions") or []:
            if not isinstance(action, dict):
                continue
            selected = action.get("selected_option")
            value = action.get("value")
            if value is None and isinstance(selected, dict):
                value = selected.get("value")
            values = tuple(
                option.get("value")
                for option in action.get("selected_options") or []
                if isinstance(option, dict) and option.get("value") is not None
            )
            await self.chat.dispatch_action(
                ActionEvent(
                    adapter=self,
                    action_id=action.get("action_id") or "",
                    user=user,
                    thread_id=thread_id,
                    value=value,
                    values=values,
                    trigger_id=payload.get("trigger_id"),
                    raw=payload,
                )
            )

    async def _handle_view_submission(self, payload: dict[str, Any]) -> Any:
        view = payload.get("view")
        view = view if isinstance(view, dict) else {}
        state = view.get("state")
        values = state.get("values") if isinstance(state, dict) else None
        return await self.chat.process_modal_submit(
            ModalSubmitEvent(
                adapter=self,
                callback_id=view.get("callback_id") or "",
                user=self._author_from_payload(payload),
                values=values if isinstance(values, dict) else {},
                private_metadata=view.get("private_metadata"),
                trigger_id=payload.get("trigger_id"),
                view_id=view.get("id") or "",
                raw=payload,
            )
        )

    async def _handle_view_closed(self, payload: dict[str, Any]) -> None:
        view = payload.get("view")
        view = view if isinstance(view, dict) else {}
        await self.chat.process_modal_close(
            ModalCloseEvent(
                adapter=self,
                callback_id=view.get("callback_id") or "",
                user=self._author_from_payload(payload),
                private_metadata=view.get("private_metadata"),
                view_id=view.get("id") or "",
                raw=payload,
            )
        )

    async def _handle_slash_command(self, data: dict[str, Any]) -> None:
        user_id = data.get("user_id") or "unknown"
        await self.chat.dispatch_slash_command(
            SlashCommandEvent(
                adapter=self,
                command=data.get("command") or "",
                text=data.get("text") or "",
                user=Author(
                    user_id=user_id,
                    user_name=data.get("user_name") or "",
                    is_bot=False,
                    is_me=user_id == self._bot_user_id,
                ),
                channel_id=data.get("channel_id") or None,
                trigger_id=data.get("trigger_id"),
                raw=dict(data),
            )
        )

    # outbound

    def _render(self, message: PostableMessage) -> tuple[str, list[dict[str, Any]] | None]:
        mode = message.mode
        content = message.content
        if mode is PostableMode.TEXT:
            return content, None
        if mode in (PostableMode.MARKDOWN, PostableMode.FORMATTED):
            return from_markdown(str(content)), None
        if mode is PostableMode.CARD:
            if isinstance(content, dict):
                blocks = content.get("blocks")
                return content.get("text") or "", blocks if isinstance(blocks, list) else None
            if isinstance(content, list):
                return "", content
            return str(content), None
        if mode is PostableMode.RAW:
            if isinstance(content, dict):
                blocks = content.get("blocks")
                return content.get("text") or "", blocks if isinstance(blocks, list) else None
            return str(content), None
        raise ValidationError("streaming messages must be posted through a thread")

    def _sent_message(self, response: dict[str, Any], thread_id: str) -> SentMessage:
        data = response.get("message")
        data = data if isinstance(data, dict) else response
        return SentMessage(
            id=str(response.get("ts") or data.get("ts") or ""),
            thread_id=thread_id,
            text=data.get("text") or "",
            author=Author(
                user_id=self._bot_user_id or "",
                user_name=self._user_name,
                is_bot=True,
                is_me=True,
            ),
            raw=response,
            adapter=self,
        )

    async def post_message(
        self, thread_id: str, message: PostableMessage
    ) -> SentMessage:
        decoded = self.decode_thread_id(thread_id)
        text, blocks = self._render(message)
        response = await self.client.post_message(
            channel_id=decoded["channel"],
            text=text,
            blocks=blocks,
            thread_ts=decoded["thread_ts"] or None,
        )
        sent = self._sent_message(response, thread_id)
        if message.files:
            await self.upload_files(
                message.files,
                channel_id=decoded["channel"],
                thread_ts=decoded["thread_ts"] or sent.id,
            )
        return sent

    async def upload_files(
        self,
        files: Iterable[FileUpload],
        *,
        channel_id: str,
        thread_ts: str | None = None,
    ) -> list[dict[str, Any]]:
        completed: list[dict[str, str]] = []
        for upload in files:
            content = await upload.read_bytes()
            target = await self.client.get_upload_url(
                filename=upload.filename, length=len(content)
            )
            await self.client.upload_content(target, content, upload.mime_type)
            completed.append({"id": target.file_id, "title": upload.filename})
        if not completed:
            return []
        return await self.client.complete_uploads(
            files=completed, channel_id=channel_id, thread_ts=thread_ts
        )

    async def edit_message(
        self, thread_id: str, message_id: str, message: PostableMessage
    ) -> SentMessage:
        decoded = self.decode_thread_id(thread_id)
        text, blocks = self._render(message)
        response = await self.client.update_message(
            channel_id=decoded["channel"], ts=message_id, text=text, blocks=blocks
        )
        return self._sent_message(response, thread_id)

    async def delete_message(self, thread_id: str, message_id: str) -> None:
        decoded = self.decode_thread_id(thread_id)
        await self.client.delete_message(channel_id=decoded["channel"], ts=message_id)

    async def add_reaction(self, thread_id: str, message_id: str, emoji: str) -> None:
        decoded = self.decode_thread_id(thread_id)
        await self.client.add_reaction(
            channel_id=decoded["channel"], ts=message_id, name=emoji
        )

    async def remove_reaction(
        self, thread_id: str, message_id: str, emoji: str
    ) -> None:
        decoded = self.decode_thread_id(thread_id)
        await self.client.remove_reaction(
            channel_id=decoded["channel"], ts=message_id, name=emoji
        )

    async def pin_message(self, thread_id: str, message_id: str) -> None:
        decoded = self.decode_thread_id(thread_id)
        await self.client.pin(channel_id=decoded["channel"], ts=message_id)

    async def unpin_message(self, thread_id: str, message_id: str) -> None:
        decoded = self.decode_thread_id(thread_id)
        await self.client.unpin(channel_id=decoded["channel"], ts=message_id)

    async def start_typing(self, thread_id: str, status: str | None = None) -> None:
        if status is None:
            return
        decoded = self.decode_thread_id(thread_id)
        await self.client.set_thread_status(
            channel_id=decoded["channel"],
            thread_ts=decoded["thread_ts"],
            status=status,
        )

    def _fetch_result(self, response: dict[str, Any], channel: str) -> FetchResult:
        messages = [
            self.parse_message({**item, "channel": channel})
            for item in response.get("messages") or []
            if isinstance(item, dict)
        ]
        metadata = response.get("response_metadata")
        next_cursor = metadata.get("next_cursor") if isinstance(metadata, dict) else None
        return FetchResult(
            messages=messages,
            next_cursor=next_cursor or None,
            has_more=bool(next_cursor),
        )

    async def fetch_messages(
        self, thread_id: str, options: FetchOptions | None = None
    ) -> FetchResult:
        decoded = self.decode_thread_id(thread_id)
        response = await self.client.conversation_replies(
            channel_id=decoded["channel"],
            ts=decoded["thread_ts"],
            limit=options.limit if options else None,
            cursor=options.cursor if options else None,
        )
        return self._fetch_result(response, decoded["channel"])

    async def fetch_message(self, thread_id: str, message_id: str) -> Message | None:
        decoded = self.decode_thread_id(thread_id)
        response = await self.client.conversation_history(
            channel_id=decoded["channel"], latest=message_id, inclusive=True, limit=1
        )
        result = self._fetch_result(response, decoded["channel"])
        return result.messages[0] if result.messages else None

    async def fetch_thread(self, thread_id: str) -> ThreadInfo:
        decoded = self.decode_thread_id(thread_id)
        return ThreadInfo(
            id=thread_id,
            channel_id=decoded["channel"],
            is_dm=self.is_dm(thread_id),
        )

    async def open_dm(self, user_id: str) -> str | None:
        response = await self.client.open_conversation(user_id=user_id)
        channel = response.get("channel")
        channel_id = channel.get("id") if isinstance(channel, dict) else None
        if not channel_id:
            return None
        return self.encode_thread_id({"channel": channel_id, "thread_ts": ""})

    async def post_ephemeral(
        self, thread_id: str, user_id: str, message: PostableMessage
    ) -> SentMessage | None:
        decoded = self.decode_thread_id(thread_id)
        text, blocks = self._render(message)
        await self.client.post_ephemeral(
            channel_id=decoded["channel"],
            user_id=user_id,
            text=text,
            blocks=blocks,
            thread_ts=decoded["thread_ts"] or None,
        )
        return None

    async def open_modal(
        self, trigger_id: str, modal: Any, context_id: str | None = None
    ) -> dict[str, Any] | None:
        view = dict(modal) if isinstance(modal, Mapping) else modal
        if context_id is not None and isinstance(view, dict):
            view["private_metadata"] = context_id
        response = await self.client.open_view(trigger_id=trigger_id, view=view)
        opened = response.get("view")
        return opened if isinstance(opened, dict) else None

    async def post_channel_message(
        self, channel_id: str, message: PostableMessage
    ) -> SentMessage | None:
        thread_id = self.encode_thread_id({"channel": channel_id, "thread_ts": ""})
        return await self.post_message(thread_id, message)

    async def fetch_channel_messages(
        self, channel_id: str, options: FetchOptions | None = None
    ) -> FetchResult | None:
        response = await self.client.conversation_history(
            channel_id=channel_id,
            limit=options.limit if options else None,
            cursor=options.cursor if options else None,
        )
        return self._fetch_result(response, channel_id)

    async def fetch_channel_info(self, channel_id: str) -> ChannelInfo | None:
        response = await self.client.conversation_info(channel_id=channel_id)
        channel = response.get("channel")
        if not isinstance(channel, dict):
            return None
        topic = channel.get("topic")
        return ChannelInfo(
            id=channel.get("id") or channel_id,
            name=channel.get("name") or "",
            topic=topic.get("value") if isinstance(topic, dict) else None,
            member_count=channel.get("num_members"),
            is_dm=bool(channel.get("is_im") or channel.get("is_mpim")),
        )

    async def list_threads(
        self, channel_id: str, options: ListThreadsOptions | None = None
    ) -> ListThreadsResult | None:
        response = await self.client.conversation_history(
            channel_id=channel_id,
            limit=options.limit if options else None,
            cursor=options.cursor if options else None,
        )
        threads = [
            ThreadSummary(
                id=self.encode_thread_id({"channel": channel_id, "thread_ts": item["ts"]}),
                title=(item.get("text") or "")[:100] or None,
                last_activity=item.get("latest_reply") or item.get("ts"),
                message_count=item.get("reply_count") or 0,
            )
            for item in response.get("messages") or []
            if isinstance(item, dict) and (item.get("reply_count") or 0) > 0
        ]
        metadata = response.get("response_metadata")
        next_cursor = metadata.get("next_cursor") if isinstance(metadata, dict) else None
        return ListThreadsResult(
            threads=threads,
            next_cursor=next_cursor or None,
            has_more=bool(next_cursor),
        )
