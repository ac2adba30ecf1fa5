"""Delivery channels for notification digests (console, Telegram, Feishu)."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, TextIO

import requests

from .errors import ArxivReaderError
from .models import EventKind, NotificationEvent

logger = logging.getLogger(__name__)


class NotificationError(ArxivReaderError):
    """Raised when a notification could not be delivered."""


@dataclass
class NotificationConfig:
    """Notification channel settings (secrets already resolved)."""

    enabled: bool = False
    provider: str = "console"
    max_items: int = 50
    feishu_webhook: Optional[str] = None
    feishu_secret: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    use_rich_format: bool = True


def build_notifier(config: NotificationConfig):
    """Create the notifier for the configured provider, or None if disabled."""

    provider = (config.provider or "").lower()

    if not config.enabled or not provider:
        logger.info("Notification disabled or provider missing, skipping delivery")
        return None

    if provider == "console":
        return ConsoleNotifier(max_items=config.max_items)

    if provider == "feishu":
        if not config.feishu_webhook:
            raise NotificationError("Feishu delivery needs a webhook_url")
        return FeishuNotifier(
            config.feishu_webhook,
            config.feishu_secret,
            config.max_items,
            use_card=config.use_rich_format,
        )

    if provider == "telegram":
        if not config.telegram_bot_token or not config.telegram_chat_id:
            raise NotificationError("Telegram delivery needs bot_token and chat_id")
        return TelegramNotifier(
            bot_token=config.telegram_bot_token,
            chat_id=config.telegram_chat_id,
            max_items=config.max_items,
            use_markdown=config.use_rich_format,
        )

    raise NotificationError(f"Unknown notification provider: {config.provider}")


_SECTION_TITLES = {
    EventKind.NEW_ARTICLE: "New articles",
    EventKind.NEW_VERSION: "New versions",
    EventKind.NEW_JOURNAL_REF: "Published",
}


def _group_events(events: Iterable[NotificationEvent]) -> Dict[EventKind, List[NotificationEvent]]:
    """Group events by kind, keeping discovery order inside each group."""
    groups: Dict[EventKind, List[NotificationEvent]] = {kind: [] for kind in EventKind}
    for event in events:
        groups[event.kind].append(event)
    return groups


def _abs_url(article_id: str) -> str:
    return f"https://arxiv.org/abs/{article_id}"


def _format_digest(events: List[NotificationEvent], part: str = "") -> str:
    """Render events as a plain-text digest."""

    if not events:
        return "No new articles or updates."

    lines = [f"Part {part}", ""] if part else []
    for kind, group in _group_events(events).items():
        if not group:
            continue
        lines.append(f"{_SECTION_TITLES[kind]} ({len(group)}):")
        for event in group:
            lines.append(f"  - {event.describe()}")
            lines.append(f"    {_abs_url(event.article_id)}")
        lines.append("")
    return "\n".join(lines).rstrip()


def _chunks(events: List[NotificationEvent], size: int) -> List[List[NotificationEvent]]:
    size = max(1, size)
    return [events[i:i + size] for i in range(0, len(events), size)]


def _escape_telegram_markdown(text: str) -> str:
    """Escape the MarkdownV2 special characters."""
    special_chars = r'_*[]()~`>#+-=|{}.!\\'
    return "".join(f"\\{char}" if char in special_chars else char for char in text)


class BaseNotifier:
    """
    Common base: renders the digest and hands it to ``_send_message``.

    A digest longer than ``max_items`` is split into several messages, so
    every event is delivered once ``send`` returns.
    """

    provider_name: str = "base"

    def __init__(self, max_items: int = 50):
        self.max_items = max_items

    def send(self, events: Iterable[NotificationEvent]) -> None:
        events_list = list(events)
        if not events_list:
            self._send_message(_format_digest([]), [])
            return

        chunks = _chunks(events_list, self.max_items)
        for index, chunk in enumerate(chunks, start=1):
            part = f"{index}/{len(chunks)}" if len(chunks) > 1 else ""
            self._send_message(_format_digest(chunk, part), chunk)
        logger.info(
            "%s delivery finished (%d events, %d messages)",
            self.provider_name,
            len(events_list),
            len(chunks),
        )

    def _send_message(self, message: str, events: List[NotificationEvent]) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class ConsoleNotifier(BaseNotifier):
    """Print the digest to a text stream."""

    provider_name = "Console"

    def __init__(self, max_items: int = 50, stream: Optional[TextIO] = None):
        super().__init__(max_items)
        self.stream = stream

    def _send_message(self, message: str, events: List[NotificationEvent]) -> None:
        stream = self.stream or sys.stdout
        stream.write(message + "\n")
        stream.flush()


class FeishuNotifier(BaseNotifier):
    """Feishu group bot webhook, as an interactive card or plain text."""

    provider_name = "Feishu"

    def __init__(
        self,
        webhook: str,
        secret: Optional[str],
        max_items: int = 50,
        use_card: bool = True,
    ):
        super().__init__(max_items)
        self.webhook = webhook
        self.secret = secret
        self.use_card = use_card

    def _build_sign(self) -> tuple[str, str]:
        timestamp = str(int(time.time()))
        if not self.secret:
            return timestamp, ""

        key = f"{timestamp}\n{self.secret}".encode("utf-8")
        hmac_code = hmac.new(key, b"", digestmod=hashlib.sha256).digest()
        sign = base64.b64encode(hmac_code).decode("utf-8")
        return timestamp, sign

    def _build_card_payload(self, events: List[NotificationEvent]) -> dict:
        today = datetime.now().strftime("%Y-%m-%d")
        elements = []

        for kind, group in _group_events(events).items():
            if not group:
                continue
            content = f"**{_SECTION_TITLES[kind]} ({len(group)})**\n"
            for event in group:
                content += f"- [{event.article_id}]({_abs_url(event.article_id)}) {event.describe()}\n"
            elements.append({"tag": "div", "text": {"tag": "lark_md", "content": content}})
            elements.append({"tag": "hr"})

        elements.append({
            "tag": "note",
            "elements": [{"tag": "plain_text", "content": f"arxiv-reader | {today}"}],
        })

        return {
            "header": {
                "template": "blue",
                "title": {"tag": "plain_text", "content": f"arXiv updates ({today})"},
            },
            "elements": elements,
        }

    def _send_message(self, message: str, events: List[NotificationEvent]) -> None:
        timestamp, sign = self._build_sign()

        if self.use_card and events:
            payload = {
                "timestamp": timestamp,
                "sign": sign,
                "msg_type": "interactive",
                "card": self._build_card_payload(events),
            }
        else:
            payload = {
                "timestamp": timestamp,
                "sign": sign,
                "msg_type": "text",
                "content": {"text": message},
            }

        data = _post_json(self.webhook, payload)
        if data.get("code") != 0:
            raise NotificationError(f"Feishu delivery failed: {data}")


class TelegramNotifier(BaseNotifier):
    """Telegram bot message, MarkdownV2 or plain text."""

    provider_name = "Telegram"

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        max_items: int = 50,
        use_markdown: bool = True,
    ):
        super().__init__(max_items)
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.use_markdown = use_markdown

    def _build_markdown_message(self, events: List[NotificationEvent]) -> str:
        today = _escape_telegram_markdown(datetime.now().strftime("%Y-%m-%d"))
        lines = [f"*arXiv updates* \\({today}\\)", ""]

        for kind, group in _group_events(events).items():
            if not group:
                continue
            lines.append(f"*{_escape_telegram_markdown(_SECTION_TITLES[kind])}*")
            for event in group:
                text = _escape_telegram_markdown(event.describe())
                lines.append(f"• [{_escape_telegram_markdown(event.article_id)}]({_abs_url(event.article_id)}) {text}")
            lines.append("")

        return "\n".join(lines).rstrip()

    def _send_message(self, message: str, events: List[NotificationEvent]) -> None:
        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"

        if self.use_markdown and events:
            payload = {
                "chat_id": self.chat_id,
                "text": self._build_markdown_message(events),
                "parse_mode": "MarkdownV2",
                "disable_web_page_preview": True,
            }
        else:
            payload = {
                "chat_id": self.chat_id,
                "text": message,
                "disable_web_page_preview": True,
            }

        data = _post_json(url, payload)
        if not data.get("ok"):
            raise NotificationError(f"Telegram delivery failed: {data}")


def _post_json(url: str, payload: dict) -> dict:
    try:
        response = requests.post(url, json=payload, timeout=10)
        response.raise_for_status()
        return response.json()
    except requests.RequestException as exc:
        raise NotificationError(f"HTTP request failed: {exc}") from exc
    except ValueError as exc:
        raise NotificationError(f"Invalid JSON response: {exc}") from exc
