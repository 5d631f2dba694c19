"""
Deep links, notification text shaping and meeting-room naming.

The query parameter names and their percent-encoding are a contract with the
presentation layer, which parses them back.
"""

from __future__ import annotations

import re
from datetime import date
from urllib.parse import parse_qsl, quote, urlsplit, urlunsplit

import structlog

from .errors import MalformedURLError

log = structlog.get_logger()

MESSAGES_PATH = "/messages"
COMMUNITY_PATH = "/community"
NOTIFICATIONS_PATH = "/notifications"

ROOM_PREFIX = "erp_portal"
SANITIZED_ROOM_PREFIX = "teachgrid"

# Same unreserved set as JavaScript's encodeURIComponent.
_COMPONENT_SAFE = "!*'()"


def encode_component(value: str) -> str:
    return quote(value, safe=_COMPONENT_SAFE)


def truncate_body(text: str, max_chars: int = 40, ellipsis: str = "...") -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + ellipsis


def conversation_link(sender_id: str) -> str:
    return f"{MESSAGES_PATH}?chatId={encode_component(str(sender_id))}"


def community_link(group_name: str, topic_name: str) -> str:
    return (
        f"{COMMUNITY_PATH}?batch={encode_component(group_name)}"
        f"&subject={encode_component(topic_name)}"
    )


def notification_link(notification_id: str) -> str:
    return f"{NOTIFICATIONS_PATH}?id={encode_component(str(notification_id))}"


def parse_link(link: str) -> tuple[str, dict[str, str]]:
    """Split a deep link into its path and decoded query parameters."""
    try:
        parts = urlsplit(link)
    except ValueError as exc:
        raise MalformedURLError(f"cannot parse link: {exc}", value=link) from exc
    if not parts.path.startswith("/"):
        raise MalformedURLError("deep link must be an absolute path", value=link)
    return parts.path, dict(parse_qsl(parts.query, keep_blank_values=True))


# --- Meetings ---

def meeting_room_name(group_name: str, topic_name: str, day: date | None = None) -> str:
    """
    Room shared by everyone joining the same (batch, subject) class on a day.
    """
    day = day or date.today()
    clean_group = re.sub(r"[^a-zA-Z0-9]", "", group_name).lower()
    clean_topic = re.sub(r"[^a-zA-Z0-9]", "", topic_name).lower()
    return f"{ROOM_PREFIX}_{clean_group}_{clean_topic}_{day.strftime('%Y%m%d')}"


def sanitize_room_name(room_name: str) -> str:
    return f"{SANITIZED_ROOM_PREFIX}-" + re.sub(r"[^a-zA-Z0-9-]", "-", room_name).lower()


def normalize_subject(subject: str) -> str:
    """Drop a trailing parenthesised suffix, e.g. "Physics (Hindi)" -> "physics"."""
    return re.sub(r"\s*\([^)]*\)\s*$", "", subject).strip().lower()


def subjects_match(a: str, b: str) -> bool:
    na, nb = normalize_subject(a), normalize_subject(b)
    return na == nb or na in nb or nb in na


def parse_meeting_url(url: str) -> tuple[str, str, str, str, str]:
    try:
        parts = urlsplit(url.strip())
    except ValueError as exc:
        raise MalformedURLError(f"cannot parse meeting url: {exc}", value=url) from exc
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise MalformedURLError("meeting url needs an http(s) scheme and host", value=url)
    return parts.scheme, parts.netloc, parts.path, parts.query, parts.fragment


def with_display_name(url: str, display_name: str) -> str:
    """
    Attach a display name to a meeting URL.

    Returns the URL unchanged when it cannot be parsed.
    """
    try:
        scheme, netloc, path, query, fragment = parse_meeting_url(url)
    except MalformedURLError:
        log.warning("deeplinks.malformed_meeting_url", url=url[:200])
        return url

    setting = f'userInfo.displayName="{encode_component(display_name)}"'
    fragment = f"{fragment}&{setting}" if fragment else setting
    return urlunsplit((scheme, netloc, path, query, fragment))
