"""Tests for the Telegram glue: reply keyboards, send order and retries."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from telegram import ReplyKeyboardMarkup
from telegram.constants import ParseMode
from telegram.error import Conflict, TimedOut

import app
from conversation import MAIN_MENU, Reply


def test_reply_markup_builds_one_time_keyboard():
    markup = app.reply_markup(Reply("Choose", keyboard=MAIN_MENU))

    assert isinstance(markup, ReplyKeyboardMarkup)
    assert markup.one_time_keyboard
    assert markup.resize_keyboard
    assert [[button.text for button in row] for row in markup.keyboard] == MAIN_MENU


def test_reply_without_keyboard_has_no_markup():
    assert app.reply_markup(Reply("plain")) is None


@pytest.mark.asyncio
async def test_send_replies_in_order_with_parse_mode():
    message = MagicMock()
    message.reply_text = AsyncMock()

    await app.send_replies(message, [Reply("*bold*", markdown=True), Reply("plain")])

    calls = message.reply_text.await_args_list
    assert [c.args[0] for c in calls] == ["*bold*", "plain"]
    assert calls[0].kwargs["parse_mode"] == ParseMode.MARKDOWN_V2
    assert calls[1].kwargs["parse_mode"] is None


@pytest.mark.asyncio
async def test_retry_async_recovers_from_timeout():
    send = AsyncMock(side_effect=[TimedOut(), "sent"])
    with patch("app.asyncio.sleep", new=AsyncMock()) as sleep:
        assert await app.retry_async(send, "hi") == "sent"
    sleep.assert_awaited_once_with(app.RETRY_DELAY)


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_conflict():
    send = AsyncMock(side_effect=Conflict("another instance"))
    with pytest.raises(Conflict):
        await app.retry_async(send)
    assert send.await_count == 1


@pytest.mark.asyncio
async def test_on_message_routes_through_engine(engine):
    update = MagicMock()
    update.effective_message.text = "/start"
    update.effective_message.reply_text = AsyncMock()
    update.effective_user.username = "bob"
    update.effective_chat.id = 5
    context = MagicMock()
    context.application.bot_data = {"engine": engine}

    await app.on_message(update, context)

    update.effective_message.reply_text.assert_awaited_once()
    assert engine.state_of(5).name == "AWAITING_MENU_CHOICE"


@pytest.mark.asyncio
async def test_shutdown_logs_out_and_closes_http_session(engine, resto_client):
    await engine.handle(5, "bob", "/week")
    application = MagicMock()
    application.bot_data = {"engine": engine}

    await app.shutdown(application)

    logout = resto_client.get.call_args
    assert logout.args[0].endswith("/logout")
    assert logout.kwargs["params"] == {"key": "session-key"}
    resto_client.close.assert_called_once()
