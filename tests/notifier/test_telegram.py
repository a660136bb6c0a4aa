# tests/notifier/test_telegram.py
from unittest.mock import AsyncMock, MagicMock, patch

from telegram.error import TelegramError


async def test_send_message_to_admin_by_default():
    with patch("mmbot.notifier.telegram.Bot") as MockBot:
        mock_bot = MagicMock()
        mock_bot.send_message = AsyncMock()
        MockBot.return_value = mock_bot

        from mmbot.notifier.telegram import TelegramNotifier

        notifier = TelegramNotifier(bot_token="test", admin_chat_id="123")
        assert await notifier.send_message("Hello") is True

        mock_bot.send_message.assert_called_once_with(
            chat_id="123",
            text="Hello",
            parse_mode="HTML",
        )


async def test_send_message_to_user_chat():
    with patch("mmbot.notifier.telegram.Bot") as MockBot:
        mock_bot = MagicMock()
        mock_bot.send_message = AsyncMock()
        MockBot.return_value = mock_bot

        from mmbot.notifier.telegram import TelegramNotifier

        notifier = TelegramNotifier(bot_token="test", admin_chat_id="123")
        await notifier.send_message("Target hit", chat_id="555")

        assert mock_bot.send_message.call_args.kwargs["chat_id"] == "555"


async def test_send_message_without_chat_is_dropped():
    with patch("mmbot.notifier.telegram.Bot") as MockBot:
        mock_bot = MagicMock()
        mock_bot.send_message = AsyncMock()
        MockBot.return_value = mock_bot

        from mmbot.notifier.telegram import TelegramNotifier

        notifier = TelegramNotifier(bot_token="test")
        assert await notifier.send_message("Hello") is False
        mock_bot.send_message.assert_not_called()


async def test_send_failure_returns_false():
    with patch("mmbot.notifier.telegram.Bot") as MockBot:
        mock_bot = MagicMock()
        mock_bot.send_message = AsyncMock(side_effect=TelegramError("blocked"))
        MockBot.return_value = mock_bot

        from mmbot.notifier.telegram import TelegramNotifier

        notifier = TelegramNotifier(bot_token="test", admin_chat_id="123")
        assert await notifier.send_message("Hello") is False


async def test_status_command_uses_callback():
    with patch("mmbot.notifier.telegram.Bot"):
        from mmbot.notifier.telegram import TelegramNotifier

        notifier = TelegramNotifier(bot_token="test")
        notifier.on_status = AsyncMock(return_value="all good")

        update = MagicMock()
        update.message.reply_text = AsyncMock()
        await notifier._handle_status(update, MagicMock())

        update.message.reply_text.assert_called_once_with("all good", parse_mode="HTML")


async def test_whoami_replies_with_user_id():
    with patch("mmbot.notifier.telegram.Bot"):
        from mmbot.notifier.telegram import TelegramNotifier

        notifier = TelegramNotifier(bot_token="test")

        update = MagicMock()
        update.effective_user.id = 42
        update.message.reply_text = AsyncMock()
        await notifier._handle_whoami(update, MagicMock())

        assert "42" in update.message.reply_text.call_args.args[0]
