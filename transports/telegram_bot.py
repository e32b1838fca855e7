import asyncio
import logging
import re
from typing import Optional, Pattern

from telegram import Message, Update
from telegram.constants import ChatAction
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from relay.delivery import Outbox
from relay.events import CommandEvent, MessageEvent

log = logging.getLogger(__name__)

TELEGRAM_LIMIT = 4096


class TelegramOutbox(Outbox):
    limit = TELEGRAM_LIMIT

    def __init__(self, message: Message) -> None:
        self.message = message

    async def send_reply(self, text: str) -> Message:
        return await self.message.reply_text(text)

    async def edit_message(self, handle: Message, text: str) -> None:
        await handle.edit_text(text)

    async def send_follow_up(self, text: str) -> None:
        await self.message.chat.send_message(text)

    async def send_typing(self) -> None:
        await self.message.chat.send_action(ChatAction.TYPING)


def username_mention(username: Optional[str]) -> Optional[Pattern[str]]:
    if not username:
        return None
    return re.compile(rf"^@{re.escape(username)}\b", re.IGNORECASE)


def _author_name(update: Update) -> str:
    user = update.effective_user
    if not user:
        return ""
    return user.full_name or user.username or str(user.id)


class TelegramTransport:
    def __init__(self, relay, token: str):
        self.relay = relay
        self.application = Application.builder().token(token).concurrent_updates(True).build()
        self._register_handlers()
        self._stop_event = asyncio.Event()

    def _register_handlers(self):
        self.application.add_handler(CommandHandler("gpt", self.gpt))
        self.application.add_handler(CommandHandler("gpt_reset", self.gpt_reset))
        self.application.add_handler(
            MessageHandler(filters.TEXT & (~filters.COMMAND), self.handle_message)
        )

    async def handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        user = update.effective_user
        chat = update.effective_chat
        if not message or not message.text or not user or not chat:
            return
        event = MessageEvent(
            conversation_id=str(chat.id),
            author_id=str(user.id),
            text=message.text,
            author_name=_author_name(update),
            is_bot=user.is_bot,
        )
        await self.relay.handle_message(
            event, TelegramOutbox(message), username_mention(context.bot.username)
        )

    async def gpt(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        user = update.effective_user
        chat = update.effective_chat
        if not message or not user or not chat:
            return
        prompt = " ".join(context.args or []).strip()
        if not prompt:
            await message.reply_text("Provide a prompt after /gpt.")
            return
        event = CommandEvent(
            conversation_id=str(chat.id),
            author_id=str(user.id),
            prompt=prompt,
            author_name=_author_name(update),
        )
        await self.relay.handle_command(event, TelegramOutbox(message))

    async def gpt_reset(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        user = update.effective_user
        chat = update.effective_chat
        if not message or not user or not chat:
            return
        event = CommandEvent(conversation_id=str(chat.id), author_id=str(user.id))
        await self.relay.reset(event, TelegramOutbox(message))

    async def start(self):
        await self.application.initialize()
        await self.application.start()
        await self.application.updater.start_polling()
        log.info("Telegram bot ready as @%s", self.application.bot.username)
        try:
            await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.application.updater.stop()
            await self.application.stop()
            await self.application.shutdown()

    async def stop(self):
        self._stop_event.set()
