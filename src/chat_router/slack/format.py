from __future__ import annotations

import re

_MD_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")
_MD_STRIKE_RE = re.compile(r"~~(.+?)~~")
_MD_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
_BARE_MENTION_RE = re.compile(r"(?<!<)@(\w+)")

_USER_LABEL_RE = re.compile(r"<@(\w+)\|([^>]+)>")
_USER_RE = re.compile(r"<@(\w+)>")
_CHANNEL_LABEL_RE = re.compile(r"<#(\w+)\|([^>]+)>")
_CHANNEL_RE = re.compile(r"<#(\w+)>")
_LINK_LABEL_RE = re.compile(r"<([^>@#|]+)\|([^>]+)>")
_LINK_RE = re.compile(r"<([^>@#]+)>")
_ANY_LINK_LABEL_RE = re.compile(r"<([^>|]+)\|([^>]+)>")
_ANY_LINK_RE = re.compile(r"<([^>]+)>")
_BOLD_RE = re.compile(r"(?<!\*)\*(?!\*)([^*]+?)\*(?!\*)")
_ITALIC_RE = re.compile(r"(?<!_)_(?!_)([^_]+?)_(?!_)")
_STRIKE_RE = re.compile(r"(?<!~)~(?!~)([^~]+?)~(?!~)")


def _unwrap_references(text: str) -> str:
    text = _USER_LABEL_RE.sub(r"@\2", text)
    text = _USER_RE.sub(r"@\1", text)
    text = _CHANNEL_LABEL_RE.sub(r"#\2", text)
    return _CHANNEL_RE.sub(r"#\1", text)


def from_markdown(markdown: str) -> str:
    """Render markdown as Slack mrkdwn."""
    text = _MD_BOLD_RE.sub(r"*\1*", markdown)
    text = _MD_STRIKE_RE.sub(r"~\1~", text)
    text = _MD_LINK_RE.sub(r"<\2|\1>", text)
    return _BARE_MENTION_RE.sub(r"<@\1>", text)


def to_markdown(mrkdwn: str) -> str:
    """Turn Slack mrkdwn into markdown; user mentions become ``@<id>``."""
    text = _unwrap_references(mrkdwn)
    text = _LINK_LABEL_RE.sub(r"[\2](\1)", text)
    text = _LINK_RE.sub(r"\1", text)
    text = _BOLD_RE.sub(r"**\1**", text)
    return _STRIKE_RE.sub(r"~~\1~~", text)


def to_plain_text(mrkdwn: str) -> str:
    text = _unwrap_references(mrkdwn)
    text = _ANY_LINK_LABEL_RE.sub(r"\2", text)
    text = _ANY_LINK_RE.sub(r"\1", text)
    text = _BOLD_RE.sub(r"\1", text)
    text = _ITALIC_RE.sub(r"\1", text)
    return _STRIKE_RE.sub(r"\1", text)
