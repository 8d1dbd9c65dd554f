"""Async Slack Web API client and Block Kit builders.

SlackClient wraps the two Web API methods the nudge job needs
(conversations.open and chat.postMessage) with the standard tenacity
retry (3 attempts, exponential backoff 1-10s) on transport and HTTP
errors. Slack reports application errors as ``{"ok": false, "error": ...}``
with a 200 status; those raise SlackAPIError and are not retried.

The block helpers cap every text element below Slack's limits so a long
deal name or note never produces an ``invalid_blocks`` rejection.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.app.reconciliation.matching import CURRENCY_SYMBOLS

logger = structlog.get_logger(__name__)

_slack_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.HTTPStatusError, httpx.ConnectError, httpx.TimeoutException)),
)


class SlackAPIError(Exception):
    """Slack answered with ok=false."""

    def __init__(self, method: str, error: str) -> None:
        super().__init__(f"Slack {method} failed: {error}")
        self.method = method
        self.error = error


class SlackClient:
    """Async client for the Slack Web API using a bot token.

    Args:
        bot_token: xoxb- bot access token for the workspace.
        base_url: Web API base URL.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        bot_token: str,
        base_url: str = "https://slack.com/api",
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = {
            "Authorization": f"Bearer {bot_token}",
            "Content-Type": "application/json; charset=utf-8",
        }

    def _client(self, timeout: float) -> httpx.AsyncClient:
        """Create a new httpx client with specified timeout."""
        return httpx.AsyncClient(
            headers=self._headers,
            timeout=timeout,
        )

    @_slack_retry
    async def _call(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        async with self._client(self._timeout) as client:
            response = await client.post(f"{self._base_url}/{method}", json=payload)
            response.raise_for_status()
            data = response.json()
        if not data.get("ok"):
            raise SlackAPIError(method, data.get("error", "unknown_error"))
        return data

    async def open_dm(self, slack_user_id: str) -> str:
        """Open (or reuse) a direct message channel with a user.

        Returns:
            The DM channel id.
        """
        data = await self._call("conversations.open", {"users": slack_user_id})
        return data["channel"]["id"]

    async def post_message(
        self,
        channel: str,
        text: str,
        blocks: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """Post a message via chat.postMessage.

        Args:
            channel: Channel or DM id.
            text: Notification fallback text.
            blocks: Block Kit blocks.

        Returns:
            ``{"channel": ..., "ts": ...}`` of the posted message.
        """
        payload: dict[str, Any] = {"channel": channel, "text": text}
        if blocks:
            payload["blocks"] = blocks
        data = await self._call("chat.postMessage", payload)
        logger.info("slack.message_posted", channel=data.get("channel"), ts=data.get("ts"))
        return {"channel": data.get("channel"), "ts": data.get("ts")}

    async def send_direct_message(
        self,
        slack_user_id: str,
        text: str,
        blocks: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        channel = await self.open_dm(slack_user_id)
        return await self.post_message(channel, text, blocks)


# ── Block Kit Builders ──────────────────────────────────────────────────────

HEADER_LIMIT = 150
BUTTON_TEXT_LIMIT = 75
MRKDWN_LIMIT = 2800
FIELD_LIMIT = 1900
CONTEXT_LIMIT = 1900
BUTTON_VALUE_LIMIT = 1900


def truncate(value: Any, limit: int) -> str:
    """Cut text to ``limit`` characters, ending with an ellipsis when cut."""
    text = "" if value is None else str(value)
    if len(text) <= limit:
        return text
    if limit <= 1:
        return text[:limit]
    return f"{text[: limit - 1]}…"


def format_money(value: float, currency: str = "GBP") -> str:
    """Whole-unit currency for message text, e.g. ``£12,500``."""
    code = (currency or "GBP").upper()
    symbol = CURRENCY_SYMBOLS.get(code, f"{code} ")
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{abs(value):,.0f}"


def divider() -> dict[str, Any]:
    return {"type": "divider"}


def header(text: str) -> dict[str, Any]:
    return {
        "type": "header",
        "text": {"type": "plain_text", "text": truncate(text, HEADER_LIMIT), "emoji": True},
    }


def section(text: str) -> dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": truncate(text, MRKDWN_LIMIT)}}


def section_with_fields(fields: list[tuple[str, str]]) -> dict[str, Any]:
    """Label/value pairs rendered two per row (Slack allows at most 10)."""
    return {
        "type": "section",
        "fields": [
            {"type": "mrkdwn", "text": truncate(f"*{label}*\n{value}", FIELD_LIMIT)}
            for label, value in fields[:10]
        ],
    }


def context(elements: list[str]) -> dict[str, Any]:
    return {
        "type": "context",
        "elements": [{"type": "mrkdwn", "text": truncate(text, CONTEXT_LIMIT)} for text in elements],
    }


def actions(buttons: list[dict[str, Any]]) -> dict[str, Any]:
    """Actions block of up to 5 buttons.

    Each button dict takes ``text``, ``action_id`` and either ``value`` or
    ``url``; URL buttons carry no value. ``style`` is optional.
    """
    elements = []
    for button in buttons[:5]:
        element: dict[str, Any] = {
            "type": "button",
            "text": {
                "type": "plain_text",
                "text": truncate(button["text"], BUTTON_TEXT_LIMIT),
                "emoji": True,
            },
            "action_id": button["action_id"],
        }
        if button.get("url"):
            element["url"] = button["url"]
        else:
            element["value"] = truncate(button.get("value", ""), BUTTON_VALUE_LIMIT)
        if button.get("style"):
            element["style"] = button["style"]
        elements.append(element)
    return {"type": "actions", "elements": elements}
