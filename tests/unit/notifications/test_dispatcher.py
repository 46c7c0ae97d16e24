"""Unit tests for alert delivery channels."""

from __future__ import annotations

import json
import logging

import httpx
import pytest

from chainwatch.notifications.dispatcher import LogDispatcher, TelegramDispatcher


def _telegram(handler) -> TelegramDispatcher:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return TelegramDispatcher("123:abc", api_base="https://telegram.test/", client=client)


def test_telegram_posts_markdown_message():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 1}})

    assert _telegram(handler).deliver("1001", "hello") is True

    (request,) = requests
    assert str(request.url) == "https://telegram.test/bot123:abc/sendMessage"
    assert json.loads(request.content) == {"chat_id": "1001", "text": "hello", "parse_mode": "Markdown"}


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(403, json={"ok": False, "description": "Forbidden: bot was blocked by the user"}),
        httpx.Response(200, json={"ok": False, "description": "Bad Request: chat not found"}),
        httpx.Response(200, content=b"<html>"),
    ],
)
def test_telegram_failures_return_false(response):
    assert _telegram(lambda request: response).deliver("1001", "hello") is False


def test_telegram_transport_errors_return_false():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    assert _telegram(handler).deliver("1001", "hello") is False


def test_telegram_requires_token():
    with pytest.raises(ValueError):
        TelegramDispatcher("")


def test_log_dispatcher_always_succeeds(caplog):
    with caplog.at_level(logging.INFO, logger="chainwatch.notifications.dispatcher"):
        assert LogDispatcher().deliver("1001", "hello") is True
    assert "Alert for 1001" in caplog.text
