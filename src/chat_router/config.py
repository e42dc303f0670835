from __future__ import annotations

import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from .errors import ConfigError

StateKind = Literal["memory", "file", "none"]
LogFormat = Literal["console", "json"]


@dataclass(frozen=True, slots=True)
class SlackSettings:
    bot_token: str
    signing_secret: str
    app_token: str | None = None
    bot_user_id: str | None = None
    user_name: str = "bot"
    api_base_url: str = "https://slack.com/api"

    @classmethod
    def from_config(cls, config: object, *, config_path: Path) -> "SlackSettings":
        if isinstance(config, SlackSettings):
            return config
        if not isinstance(config, dict):
            raise ConfigError(
                f"Invalid `chat.slack` in {config_path}; expected a table."
            )
        allowed_keys = {
            "bot_token",
            "signing_secret",
            "app_token",
            "bot_user_id",
            "user_name",
            "api_base_url",
        }
        _reject_unknown(config, allowed_keys, "chat.slack", config_path)

        label = "chat.slack"
        bot_token = _require_str(config, "bot_token", config_path, prefix=label)
        signing_secret = _require_str(
            config, "signing_secret", config_path, prefix=label
        )
        app_token = _optional_str(config, "app_token", None, config_path, prefix=label)
        if app_token is not None and not app_token.startswith("xapp-"):
            raise ConfigError(
                f"Invalid `chat.slack.app_token` in {config_path}; "
                "expected an app-level token starting with 'xapp-'."
            )
        bot_user_id = _optional_str(
            config, "bot_user_id", None, config_path, prefix=label
        )
        user_name = _optional_str(config, "user_name", "bot", config_path, prefix=label)
        api_base_url = _optional_str(
            config, "api_base_url", "https://slack.com/api", config_path, prefix=label
        )
        return cls(
            bot_token=bot_token,
            signing_secret=signing_secret,
            app_token=app_token,
            bot_user_id=bot_user_id,
            user_name=user_name or "bot",
            api_base_url=(api_base_url or "https://slack.com/api").rstrip("/"),
        )


@dataclass(frozen=True, slots=True)
class ChatSettings:
    """Settings for one chat instance, usually the ``[chat]`` table of a TOML file."""

    name: str
    dedupe_ttl_s: float = 300.0
    lock_ttl_s: float = 30.0
    queued: bool = False
    queue_name: str | None = None
    state: StateKind = "memory"
    state_path: Path | None = None
    streaming_update_interval_s: float = 0.5
    debug: bool = False
    log_format: LogFormat = "console"
    slack: SlackSettings | None = None

    @classmethod
    def from_config(cls, config: object, *, config_path: Path) -> "ChatSettings":
        if isinstance(config, ChatSettings):
            return config
        if not isinstance(config, dict):
            raise ConfigError(f"Invalid `chat` in {config_path}; expected a table.")
        allowed_keys = {
            "name",
            "dedupe_ttl_s",
            "lock_ttl_s",
            "queued",
            "queue_name",
            "state",
            "state_path",
            "streaming_update_interval_s",
            "debug",
            "log_format",
            "slack",
        }
        _reject_unknown(config, allowed_keys, "chat", config_path)

        name = _require_str(config, "name", config_path)
        dedupe_ttl_s = _require_number(
            config, "dedupe_ttl_s", default=300.0, config_path=config_path, positive=True
        )
        lock_ttl_s = _require_number(
            config, "lock_ttl_s", default=30.0, config_path=config_path, positive=True
        )
        streaming_update_interval_s = _require_number(
            config,
            "streaming_update_interval_s",
            default=0.5,
            config_path=config_path,
            min_value=0.0,
        )
        queued = _optional_bool(config, "queued", False, config_path)
        queue_name = _optional_str(config, "queue_name", None, config_path)
        debug = _optional_bool(config, "debug", False, config_path)

        state = _optional_choice(
            config, "state", "memory", {"memory", "file", "none"}, config_path
        )
        log_format = _optional_choice(
            config, "log_format", "console", {"console", "json"}, config_path
        )

        state_path_value = _optional_str(config, "state_path", None, config_path)
        state_path: Path | None = None
        if state_path_value is not None:
            state_path = Path(state_path_value).expanduser()
            if not state_path.is_absolute():
                state_path = config_path.parent / state_path
        if state_path is not None and state != "file":
            raise ConfigError(
                f"Invalid `chat.state_path` in {config_path}; "
                "only valid when state = 'file'."
            )

        slack_config = config.get("slack")
        slack = (
            SlackSettings.from_config(slack_config, config_path=config_path)
            if slack_config is not None
            else None
        )

        return cls(
            name=name,
            dedupe_ttl_s=dedupe_ttl_s,
            lock_ttl_s=lock_ttl_s,
            queued=queued,
            queue_name=queue_name,
            state=state,  # type: ignore[arg-type]
            state_path=state_path,
            streaming_update_interval_s=streaming_update_interval_s,
            debug=debug,
            log_format=log_format,  # type: ignore[arg-type]
            slack=slack,
        )


def load_settings(path: Path) -> ChatSettings:
    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise ConfigError(f"Could not read config file {path}: {exc}.") from exc
    try:
        data = tomllib.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}.") from exc
    if "chat" not in data:
        raise ConfigError(f"Missing `chat` table in {path}.")
    return ChatSettings.from_config(data["chat"], config_path=path)


def _reject_unknown(
    config: dict[str, Any], allowed: set[str], label: str, config_path: Path
) -> None:
    unknown_keys = set(config) - allowed
    if unknown_keys:
        unknown = ", ".join(sorted(unknown_keys))
        raise ConfigError(
            f"Invalid `{label}` in {config_path}; unknown keys: {unknown}."
        )


def _require_str(
    config: dict[str, Any], key: str, config_path: Path, *, prefix: str = "chat"
) -> str:
    value = config.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(
            f"Invalid `{prefix}.{key}` in {config_path}; expected a non-empty string."
        )
    return value.strip()


def _optional_str(
    config: dict[str, Any],
    key: str,
    default: str | None,
    config_path: Path,
    *,
    prefix: str = "chat",
) -> str | None:
    if key not in config:
        return default
    value = config.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(
            f"Invalid `{prefix}.{key}` in {config_path}; expected a string."
        )
    cleaned = value.strip()
    return cleaned or None


def _optional_bool(
    config: dict[str, Any], key: str, default: bool, config_path: Path
) -> bool:
    if key not in config:
        return default
    value = config.get(key)
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Invalid `chat.{key}` in {config_path}; expected a boolean.")


def _optional_choice(
    config: dict[str, Any],
    key: str,
    default: str,
    choices: set[str],
    config_path: Path,
) -> str:
    value = config.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f"Invalid `chat.{key}` in {config_path}; expected a string.")
    value = value.strip().lower()
    if value not in choices:
        expected = ", ".join(repr(item) for item in sorted(choices))
        raise ConfigError(
            f"Invalid `chat.{key}` in {config_path}; expected one of {expected}."
        )
    return value


def _require_number(
    config: dict[str, Any],
    key: str,
    *,
    default: float,
    config_path: Path,
    min_value: float | None = None,
    positive: bool = False,
) -> float:
    value = config.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(
            f"Invalid `chat.{key}` in {config_path}; expected a number."
        )
    value = float(value)
    if positive and value <= 0:
        raise ConfigError(f"Invalid `chat.{key}` in {config_path}; expected > 0.")
    if min_value is not None and value < min_value:
        raise ConfigError(
            f"Invalid `chat.{key}` in {config_path}; expected >= {min_value}."
        )
    return value
