"""
Discord notifications for detected events.

Posts a single embed to a channel webhook. Delivery is best-effort: failures
are logged and reported through NotifyResult, never raised to the caller.
"""

from __future__ import annotations

import logging
import os
from collections import deque
from dataclasses import dataclass
from typing import Protocol

import discord
import requests
from requests.adapters import HTTPAdapter

logger = logging.getLogger(__name__)

ENV_WEBHOOK_URL = "DISCORD_WEBHOOK_URL"

DEFAULT_USERNAME = "Strawberry"
DEFAULT_COLOR = 0xFF69B4  # pink
DISCORD_EMBED_DESCRIPTION_LIMIT = 4096
DEFAULT_TIMEOUT_SECONDS = 10.0
NULL_NOTIFIER_KEEP = 100


@dataclass(frozen=True)
class NotifyResult:
    ok: bool
    error: str | None = None


class Notifier(Protocol):
    def send(self, message: str) -> NotifyResult: ...


class TimeoutHTTPAdapter(HTTPAdapter):
    """Applies a default timeout to requests sent without one."""

    def __init__(self, *args, timeout: float = DEFAULT_TIMEOUT_SECONDS, **kwargs):
        self.timeout = timeout
        super().__init__(*args, **kwargs)

    def send(self, request, **kwargs):
        if kwargs.get("timeout") is None:
            kwargs["timeout"] = self.timeout
        return super().send(request, **kwargs)


def make_timeout_session(timeout: float) -> requests.Session:
    session = requests.Session()
    adapter = TimeoutHTTPAdapter(timeout=timeout)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


class DiscordNotifier:
    """Sends messages to a Discord channel via webhook."""

    def __init__(
        self,
        webhook_url: str | None = None,
        *,
        username: str = DEFAULT_USERNAME,
        color: int = DEFAULT_COLOR,
        title: str = "Notification",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ):
        """
        Args:
            timeout: Seconds allowed for each webhook request. Ignored when
                an explicit session is given; that session controls its own.
        """
        self.webhook_url = webhook_url if webhook_url is not None else os.environ.get(ENV_WEBHOOK_URL)
        self.username = username
        self.color = color
        self.title = title
        self.timeout = float(timeout)
        self._session = session if session is not None else make_timeout_session(self.timeout)

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url and self.webhook_url.strip())

    def _build_embed(self, message: str) -> discord.Embed:
        description = message
        if len(description) > DISCORD_EMBED_DESCRIPTION_LIMIT:
            description = description[: DISCORD_EMBED_DESCRIPTION_LIMIT - 3] + "..."
        return discord.Embed(title=self.title, description=description, color=self.color)

    def send(self, message: str) -> NotifyResult:
        if not self.is_configured:
            logger.info("[DiscordNotifier] Webhook not configured; skipping message")
            return NotifyResult(ok=False, error="webhook not configured")

        try:
            webhook = discord.SyncWebhook.from_url(self.webhook_url, session=self._session)
            webhook.send(embed=self._build_embed(message), username=self.username)
        except discord.HTTPException as e:
            logger.error(f"[DiscordNotifier] Failed to send message: {e.status} {e.text}")
            return NotifyResult(ok=False, error=f"HTTP {e.status}: {e.text}")
        except Exception as e:
            logger.error(f"[DiscordNotifier] Error sending message: {e}")
            return NotifyResult(ok=False, error=str(e))
        return NotifyResult(ok=True)


class NullNotifier:
    """Keeps the most recent messages in memory instead of sending them."""

    def __init__(self, keep: int = NULL_NOTIFIER_KEEP) -> None:
        self.messages: deque[str] = deque(maxlen=keep)

    def send(self, message: str) -> NotifyResult:
        self.messages.append(message)
        logger.debug(f"[NullNotifier] {message}")
        return NotifyResult(ok=True)


def get_default_notifier() -> Notifier:
    """DiscordNotifier when a webhook URL is configured, else NullNotifier."""
    notifier = DiscordNotifier()
    if notifier.is_configured:
        return notifier
    logger.warning(f"{ENV_WEBHOOK_URL} not set - notifications will only be logged")
    return NullNotifier()
