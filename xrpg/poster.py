"""Outbound posting clients for chapters and voter replies."""
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

import discord

from .errors import PermanentExternalError, TransientExternalError

logger = logging.getLogger(__name__)


class Poster(Protocol):
    def post(
        self,
        text: str,
        *,
        reply_to: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Publish ``text`` and return the remote post id."""


@dataclass
class PostRecord:
    post_id: str
    text: str
    reply_to: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass
class MockPoster:
    """In-memory poster used for local runs and tests.

    ``failures`` is consumed one entry per call before anything is recorded,
    which lets callers script transient outages.
    """

    failures: List[Exception] = field(default_factory=list)
    posts: List[PostRecord] = field(default_factory=list)
    calls: int = 0
    _by_key: Dict[str, PostRecord] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def post(
        self,
        text: str,
        *,
        reply_to: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        with self._lock:
            self.calls += 1
            if self.failures:
                raise self.failures.pop(0)
            if idempotency_key and idempotency_key in self._by_key:
                return self._by_key[idempotency_key].post_id
            record = PostRecord(
                post_id=f"mock-{len(self.posts) + 1}",
                text=text,
                reply_to=reply_to,
                idempotency_key=idempotency_key,
            )
            self.posts.append(record)
            if idempotency_key:
                self._by_key[idempotency_key] = record
        logger.info("[MOCK] posted %s (reply to %s)", record.post_id, reply_to)
        return record.post_id


class DiscordWebhookPoster:
    """Mirrors quest posts into a Discord channel through a webhook.

    Webhook messages cannot thread replies, so ``reply_to`` is only logged.
    Idempotency keys are remembered for the life of the process: a repeated
    key waits for any send still in flight and returns its message id.
    """

    def __init__(self, webhook_url: str, *, username: str = "xRPG", webhook=None) -> None:
        self._webhook = webhook or discord.SyncWebhook.from_url(webhook_url)
        self._username = username
        self._sent: Dict[str, str] = {}
        self._key_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def _key_lock(self, key: str) -> threading.Lock:
        with self._lock:
            return self._key_locks.setdefault(key, threading.Lock())

    def post(
        self,
        text: str,
        *,
        reply_to: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        if not idempotency_key:
            return self._send(text, reply_to, None)
        with self._key_lock(idempotency_key):
            existing = self._sent.get(idempotency_key)
            if existing is not None:
                logger.info("Discord post for key %s already sent as %s", idempotency_key, existing)
                return existing
            message_id = self._send(text, reply_to, idempotency_key)
            self._sent[idempotency_key] = message_id
            return message_id

    def _send(self, text: str, reply_to: Optional[str], idempotency_key: Optional[str]) -> str:
        content = text[:2000]
        try:
            message = self._webhook.send(content, username=self._username, wait=True)
        except discord.RateLimited as exc:
            raise TransientExternalError(f"Discord rate limited: {exc}") from exc
        except discord.DiscordServerError as exc:
            raise TransientExternalError(f"Discord server error: {exc}") from exc
        except discord.HTTPException as exc:
            raise PermanentExternalError(f"Discord rejected post: {exc}") from exc
        logger.info(
            "Posted Discord message %s (key=%s, reply_to=%s)",
            message.id,
            idempotency_key,
            reply_to,
        )
        return str(message.id)


def poster_from_env() -> Poster:
    """Build the poster selected by ``XRPG_POSTER``."""

    kind = os.getenv("XRPG_POSTER", "mock").lower()
    if kind == "discord":
        url = os.getenv("XRPG_DISCORD_WEBHOOK_URL")
        if not url:
            raise ValueError("XRPG_DISCORD_WEBHOOK_URL must be set when XRPG_POSTER=discord")
        return DiscordWebhookPoster(url)
    if kind != "mock":
        raise ValueError(f"Unknown poster backend {kind!r}")
    return MockPoster()


__all__ = ["Poster", "PostRecord", "MockPoster", "DiscordWebhookPoster", "poster_from_env"]
