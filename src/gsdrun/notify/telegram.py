"""Best-effort lifecycle notifications.

Telegram is the only channel. Delivery problems are logged and dropped so a
flaky network never changes how a run ends. ``send_test_message`` is the
exception: it raises so an operator can see why delivery fails.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import Protocol

import httpx

from gsdrun.config.settings import RunnerConfig
from gsdrun.util.errors import NotificationError

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
DEFAULT_TIMEOUT_SEC = 10.0

_MARKDOWN_SPECIAL = re.compile(r"([_*`\[])")


def escape_markdown(text: str) -> str:
    """Escape legacy Markdown entity characters in text placed outside an entity."""
    return _MARKDOWN_SPECIAL.sub(r"\\\1", text)


class EventKind(str, enum.Enum):
    STEP_COMPLETED = "step-completed"
    RUN_COMPLETED = "run-completed"
    BUDGET_EXCEEDED = "budget-exceeded"
    STUCK = "stuck"


@dataclass(frozen=True, slots=True)
class NotificationEvent:
    kind: EventKind
    message: str
    step_id: str | None = None


class Notifier(Protocol):
    async def notify(self, event: NotificationEvent) -> None: ...

    async def aclose(self) -> None: ...


class NullNotifier:
    """Used when no channel is configured."""

    async def notify(self, event: NotificationEvent) -> None:
        logger.debug("notification (no channel): %s %s", event.kind.value, event.message)

    async def aclose(self) -> None:
        return None


class TelegramNotifier:
    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        *,
        project_name: str = "sandbox",
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.chat_id = chat_id
        self.project_name = project_name
        self._url = f"{TELEGRAM_API_BASE}/bot{bot_token}/sendMessage"
        self._client = client or httpx.AsyncClient(timeout=timeout_sec)

    def format(self, message: str) -> str:
        return f"[{escape_markdown(self.project_name)}] {message}"

    async def _post(self, text: str, *, markdown: bool) -> httpx.Response:
        data = {"chat_id": self.chat_id, "text": text}
        if markdown:
            data["parse_mode"] = "Markdown"
        return await self._client.post(self._url, data=data)

    async def send(self, message: str) -> None:
        """Deliver a message, raising NotificationError on any failure.

        A message Telegram cannot parse as Markdown (HTTP 400) is sent once
        more as plain text.
        """
        text = self.format(message)
        try:
            response = await self._post(text, markdown=True)
            if response.status_code == 400:
                logger.debug("telegram rejected markdown, resending as plain text")
                response = await self._post(text, markdown=False)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise NotificationError(
                f"telegram returned HTTP {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise NotificationError(f"telegram request failed: {exc.__class__.__name__}") from exc
        except ValueError as exc:
            raise NotificationError("telegram returned a non-JSON response") from exc
        if not isinstance(payload, dict) or payload.get("ok") is not True:
            description = payload.get("description") if isinstance(payload, dict) else None
            raise NotificationError(f"telegram rejected message: {description or payload}")

    async def notify(self, event: NotificationEvent) -> None:
        try:
            await self.send(event.message)
        except NotificationError as exc:
            logger.warning("Notification %s not delivered: %s", event.kind.value, exc)

    async def aclose(self) -> None:
        await self._client.aclose()


def build_notifier(config: RunnerConfig) -> Notifier:
    if config.telegram_enabled:
        assert config.telegram_bot_token is not None and config.telegram_chat_id is not None
        return TelegramNotifier(
            config.telegram_bot_token,
            config.telegram_chat_id,
            project_name=config.project_name,
        )
    return NullNotifier()


async def send_test_message(config: RunnerConfig, message: str) -> None:
    if not config.telegram_enabled:
        raise NotificationError(
            "Telegram not configured: set TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID"
        )
    assert config.telegram_bot_token is not None and config.telegram_chat_id is not None
    notifier = TelegramNotifier(
        config.telegram_bot_token,
        config.telegram_chat_id,
        project_name=config.project_name,
    )
    try:
        await notifier.send(message)
    finally:
        await notifier.aclose()
