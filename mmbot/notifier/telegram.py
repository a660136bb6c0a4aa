# mmbot/notifier/telegram.py
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from telegram import Bot, BotCommand, Update
from telegram.error import TelegramError
from telegram.ext import Application, CommandHandler, ContextTypes

logger = logging.getLogger(__name__)

WELCOME_MESSAGE = """
🤖 <b>MMBot</b> - automated GCB trading

You will receive a message here when one of your market maker bots
reaches its target price.

Send /help to see all commands
"""

HELP_MESSAGE = """
📖 <b>Commands</b>

/status - engine status
/whoami - your Telegram user id (use it when creating a market maker)
/help - this message
"""

BOT_COMMANDS = [
    BotCommand("start", "Start"),
    BotCommand("help", "Help"),
    BotCommand("status", "Engine status"),
    BotCommand("whoami", "Show your Telegram user id"),
]


class TelegramNotifier:
    def __init__(self, bot_token: str, admin_chat_id: str | None = None):
        self.bot_token = bot_token
        self.admin_chat_id = admin_chat_id
        self.bot = Bot(token=bot_token)
        self.app: Application | None = None  # type: ignore[type-arg]

        self.on_status: Callable[[], Coroutine[Any, Any, str]] | None = None

    async def send_message(self, text: str, chat_id: str | None = None) -> bool:
        target = chat_id or self.admin_chat_id
        if not target:
            logger.warning("No Telegram chat to notify, message dropped")
            return False
        try:
            await self.bot.send_message(
                chat_id=target,
                text=text,
                parse_mode="HTML",
            )
        except TelegramError as e:
            logger.error(f"Telegram send to {target} failed: {e}")
            return False
        return True

    async def _handle_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message:
            return

        if self.on_status:
            text = await self.on_status()
            await update.message.reply_text(text, parse_mode="HTML")
        else:
            await update.message.reply_text("Engine running")

    async def _handle_whoami(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message or not update.effective_user:
            return
        await update.message.reply_text(f"Your Telegram user id: {update.effective_user.id}")

    async def _handle_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message:
            return
        await update.message.reply_text(WELCOME_MESSAGE, parse_mode="HTML")

    async def _handle_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message:
            return
        await update.message.reply_text(HELP_MESSAGE, parse_mode="HTML")

    def setup_handlers(self, app: Application) -> None:  # type: ignore[type-arg]
        app.add_handler(CommandHandler("start", self._handle_start))
        app.add_handler(CommandHandler("help", self._handle_help))
        app.add_handler(CommandHandler("status", self._handle_status))
        app.add_handler(CommandHandler("whoami", self._handle_whoami))

    async def start_polling(self) -> None:
        self.app = Application.builder().token(self.bot_token).build()
        self.setup_handlers(self.app)
        await self.app.initialize()
        await self.app.start()

        await self.bot.set_my_commands(BOT_COMMANDS)

        if self.app.updater:
            await self.app.updater.start_polling()

    async def stop_polling(self) -> None:
        if self.app:
            if self.app.updater:
                await self.app.updater.stop()
            await self.app.stop()
            await self.app.shutdown()
