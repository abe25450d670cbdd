import pytest
from telegram.error import TimedOut

from utils.notifier import TelegramNotifier


class _FakeBot:
    def __init__(self, error=None):
        self.error = error
        self.sent = []

    async def send_message(self, **kwargs):
        if self.error:
            raise self.error
        self.sent.append(("message", kwargs))

    async def send_photo(self, **kwargs):
        if self.error:
            raise self.error
        self.sent.append(("photo", kwargs))

    async def shutdown(self):
        pass


@pytest.mark.asyncio
async def test_sends_html_message():
    bot = _FakeBot()
    notifier = TelegramNotifier("token", "-100123", bot=bot)
    assert await notifier.send("<b>hi</b>") is True
    kind, kwargs = bot.sent[0]
    assert kind == "message"
    assert kwargs["chat_id"] == "-100123"
    assert kwargs["parse_mode"] == "HTML"


@pytest.mark.asyncio
async def test_image_goes_out_as_photo():
    bot = _FakeBot()
    notifier = TelegramNotifier("token", "-100123", bot=bot)
    await notifier.send("caption", image_url="https://img.example/a.png")
    kind, kwargs = bot.sent[0]
    assert kind == "photo"
    assert kwargs["caption"] == "caption"


@pytest.mark.asyncio
async def test_telegram_error_returns_false():
    notifier = TelegramNotifier("token", "-100123", bot=_FakeBot(error=TimedOut()))
    assert await notifier.send("hello") is False


@pytest.mark.asyncio
async def test_unconfigured_notifier_does_not_send():
    notifier = TelegramNotifier("", "")
    assert notifier.configured is False
    assert await notifier.send("hello") is False
