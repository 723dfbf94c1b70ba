"""
Text helpers shared by the provider handlers when turning a domain event
into a chat message or an issue body.
"""

from __future__ import annotations

import html
import re
from typing import Any, Dict

from utils.schemas import (
    EVENT_CHANGELOG_PUBLISHED,
    EVENT_COMMENT_CREATED,
    EVENT_POST_CREATED,
    EVENT_POST_STATUS_CHANGED,
    EventData,
)

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")

_STATUS_EMOJI = {
    "open": "📥",
    "under_review": "👀",
    "planned": "📅",
    "in_progress": "🚧",
    "complete": "✅",
    "closed": "🔒",
}


def strip_html(text: str) -> str:
    return _WS_RE.sub(" ", html.unescape(_TAG_RE.sub(" ", text or ""))).strip()


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


def capitalize_status(status: str) -> str:
    return " ".join(word.capitalize() for word in re.split(r"[_\s]+", status or "") if word)


def status_emoji(status: str) -> str:
    return _STATUS_EMOJI.get(re.sub(r"\s+", "_", (status or "").lower()), "📌")


def escape_slack(text: str) -> str:
    return (text or "").replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def post_url(event: EventData, base_url: str = "") -> str:
    """Public URL of the post an event refers to (best effort)."""
    post = event.post
    if post.get("url"):
        return post["url"]
    base = base_url.rstrip("/")
    if post.get("boardSlug"):
        return f"{base}/b/{post['boardSlug']}/posts/{post.get('id', '')}"
    return f"{base}/posts/{post.get('id', '')}"


def summarize(event: EventData, base_url: str = "") -> Dict[str, Any]:
    """
    Plain-text title / body / link for an event, used by providers that
    don't have a rich message format of their own.
    """
    post = event.post
    if event.type == EVENT_POST_CREATED:
        return {
            "title": f"New feedback: {post.get('title', '')}",
            "body": truncate(strip_html(post.get("content", "")), 280),
            "url": post_url(event, base_url),
        }
    if event.type == EVENT_POST_STATUS_CHANGED:
        return {
            "title": f"Status updated: {post.get('title', '')}",
            "body": f"{capitalize_status(event.data.get('previousStatus', ''))} → "
            f"{capitalize_status(event.data.get('newStatus', ''))}",
            "url": post_url(event, base_url),
        }
    if event.type == EVENT_COMMENT_CREATED:
        comment = event.data.get("comment") or {}
        return {
            "title": f"New comment on: {post.get('title', '')}",
            "body": truncate(strip_html(comment.get("content", "")), 200),
            "url": post_url(event, base_url),
        }
    if event.type == EVENT_CHANGELOG_PUBLISHED:
        changelog = event.data.get("changelog") or {}
        return {
            "title": f"New changelog: {changelog.get('title', '')}",
            "body": truncate(strip_html(changelog.get("content", "")), 300),
            "url": changelog.get("url") or f"{base_url.rstrip('/')}/changelog/{changelog.get('slug', '')}",
        }
    return {"title": f"Event: {event.type}", "body": "", "url": base_url}


def issue_description(event: EventData) -> str:
    """Body for an issue / ticket created from a new post."""
    post = event.post
    content = strip_html(post.get("content", ""))
    author = post.get("authorEmail") or "Anonymous"
    link = post_url(event)
    return f"{content}\n\n---\nSubmitted by {author}\n{link}".strip()
