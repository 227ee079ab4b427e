"""Shared plumbing for provider capabilities.

Every provider builds a fresh httpx.AsyncClient per call. The transport is
injectable so tests can substitute httpx.MockTransport.
"""

from __future__ import annotations

import re
from typing import Any

import httpx

from src.hub.config import get_settings
from src.hub.integrations.events import PostSummary

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"[ \t]+")


class HttpProvider:
    """Base for capabilities that call a provider API.

    Args:
        transport: Optional httpx transport (MockTransport in tests).
        timeout: Per-request timeout in seconds; defaults to HOOK_TIMEOUT_SECONDS.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
    ) -> None:
        self._transport = transport
        self._timeout = timeout

    def _client(self, timeout: float | None = None, **kwargs: Any) -> httpx.AsyncClient:
        """Create a new httpx client with specified timeout."""
        if timeout is None:
            timeout = self._timeout if self._timeout is not None else get_settings().HOOK_TIMEOUT_SECONDS
        return httpx.AsyncClient(timeout=timeout, transport=self._transport, **kwargs)


def strip_html(text: str) -> str:
    """Plain-text rendering of rich post content for previews."""
    return _WS_RE.sub(" ", _TAG_RE.sub(" ", text or "")).strip()


def portal_url(target: dict[str, Any]) -> str:
    """Public portal base URL for links back to posts."""
    return (target.get("portalUrl") or get_settings().BASE_URL).rstrip("/")


def post_url(target: dict[str, Any], post: PostSummary) -> str:
    board = post.board_slug or post.board_id or "feedback"
    return f"{portal_url(target)}/b/{board}/posts/{post.id}"
