from __future__ import annotations

from collections.abc import Callable
from functools import partial
from pathlib import Path

import anyio

from .chat import Chat
from .config import ChatSettings, load_settings
from .errors import ConfigError
from .executors import MemoryJobQueue, QueueExecutor, run_worker
from .logging import get_logger, setup_logging
from .slack.adapter import SlackAdapter
from .slack.client import SlackClient
from .slack.socket import run_socket_mode
from .state import MemoryStateBackend, StateBackend
from .state_file import JsonFileStateBackend, resolve_state_path

logger = get_logger(__name__)


def build_state(settings: ChatSettings, *, config_path: Path | None) -> StateBackend | None:
    if settings.state == "none":
        return None
    if settings.state == "memory":
        return MemoryStateBackend()
    path = settings.state_path
    if path is None:
        if config_path is None:
            raise ConfigError(
                "Invalid `chat.state`; 'file' needs `chat.state_path` "
                "or a config file location."
            )
        path = resolve_state_path(config_path)
    return JsonFileStateBackend(path)


def build_chat(
    settings: ChatSettings,
    *,
    config_path: Path | None = None,
    slack_client: SlackClient | None = None,
) -> Chat:
    chat = Chat(
        settings.name,
        state=build_state(settings, config_path=config_path),
        dedupe_ttl_s=settings.dedupe_ttl_s,
        lock_ttl_s=settings.lock_ttl_s,
        streaming_update_interval_s=settings.streaming_update_interval_s,
    )
    if settings.queued:
        chat.queued(
            executor=QueueExecutor(MemoryJobQueue(), queue_name=settings.queue_name)
        )
    slack = settings.slack
    if slack is not None:
        client = slack_client or SlackClient(slack.bot_token, base_url=slack.api_base_url)
        adapter = SlackAdapter(
            client,
            signing_secret=slack.signing_secret,
            bot_user_id=slack.bot_user_id,
            user_name=slack.user_name,
        )
        chat.add_adapter(adapter.name(), adapter)
    return chat


async def serve(chat: Chat, settings: ChatSettings) -> None:
    """Run the long-lived parts of a chat: queue worker and Socket Mode."""
    async with anyio.create_task_group() as tg:
        if chat.is_queued:
            tg.start_soon(run_worker, chat)
        slack = settings.slack
        adapter = chat.get_adapter("slack")
        if slack is not None and slack.app_token and isinstance(adapter, SlackAdapter):
            if adapter.bot_user_id() is None:
                await adapter.identify()
            tg.start_soon(
                partial(
                    run_socket_mode,
                    adapter,
                    slack.app_token,
                    base_url=slack.api_base_url,
                )
            )
        logger.info(
            "chat.started",
            name=chat.name,
            adapters=sorted(chat.adapters),
            queued=chat.is_queued,
        )


def run(config_path: Path, configure: Callable[[Chat], None]) -> None:
    settings = load_settings(config_path)
    setup_logging(debug=settings.debug, json=settings.log_format == "json")
    chat = build_chat(settings, config_path=config_path)
    configure(chat)
    anyio.run(serve, chat, settings)
