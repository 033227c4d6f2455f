"""Tests for the outbound posting clients."""

from __future__ import annotations

from types import SimpleNamespace

import discord
import pytest

from xrpg.errors import PermanentExternalError, TransientExternalError
from xrpg.poster import DiscordWebhookPoster, MockPoster, poster_from_env


def test_mock_poster_honours_idempotency_keys():
    poster = MockPoster()

    first = poster.post("chapter one", idempotency_key="q1:1")
    again = poster.post("chapter one (retry)", idempotency_key="q1:1")
    other = poster.post("chapter two", reply_to=first, idempotency_key="q1:2")

    assert first == again == "mock-1"
    assert other == "mock-2"
    assert [post.text for post in poster.posts] == ["chapter one", "chapter two"]
    assert poster.posts[1].reply_to == "mock-1"


def test_mock_poster_scripted_failures():
    poster = MockPoster(failures=[TransientExternalError("flaky")])

    with pytest.raises(TransientExternalError):
        poster.post("hello")
    assert poster.post("hello") == "mock-1"
    assert poster.calls == 2


class FakeWebhook:
    def __init__(self, error=None):
        self.error = error
        self.sent = []

    def send(self, content, **kwargs):
        if self.error is not None:
            raise self.error
        self.sent.append((content, kwargs))
        return SimpleNamespace(id=123456789)


def test_discord_poster_returns_message_id():
    webhook = FakeWebhook()
    poster = DiscordWebhookPoster("https://discord.com/api/webhooks/1/abc", webhook=webhook)

    assert poster.post("x" * 2500, idempotency_key="q1:1") == "123456789"
    content, kwargs = webhook.sent[0]
    assert len(content) == 2000
    assert kwargs["wait"] is True
    assert kwargs["username"] == "xRPG"


def test_discord_errors_are_classified():
    server = discord.DiscordServerError(SimpleNamespace(status=503, reason="Unavailable"), "down")
    rejected = discord.HTTPException(SimpleNamespace(status=400, reason="Bad Request"), "bad")

    with pytest.raises(TransientExternalError):
        DiscordWebhookPoster("unused", webhook=FakeWebhook(server)).post("hi")
    with pytest.raises(PermanentExternalError):
        DiscordWebhookPoster("unused", webhook=FakeWebhook(rejected)).post("hi")


def test_poster_from_env(monkeypatch):
    monkeypatch.delenv("XRPG_POSTER", raising=False)
    assert isinstance(poster_from_env(), MockPoster)

    monkeypatch.setenv("XRPG_POSTER", "discord")
    monkeypatch.delenv("XRPG_DISCORD_WEBHOOK_URL", raising=False)
    with pytest.raises(ValueError):
        poster_from_env()

    monkeypatch.setenv("XRPG_POSTER", "carrier-pigeon")
    with pytest.raises(ValueError):
        poster_from_env()


def test_discord_poster_sends_each_idempotency_key_once():
    webhook = FakeWebhook()
    poster = DiscordWebhookPoster("https://discord.com/api/webhooks/1/abc", webhook=webhook)

    first = poster.post("chapter two", idempotency_key="q1:2")
    again = poster.post("chapter two", idempotency_key="q1:2")
    poster.post("no key")
    poster.post("no key")

    assert first == again == "123456789"
    assert len(webhook.sent) == 3
