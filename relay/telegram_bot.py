"""Telegram bot for permission approvals, questions and takeover control."""

import asyncio
import logging
from dataclasses import dataclass
from html import escape
from typing import TYPE_CHECKING, Protocol

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.constants import ParseMode
from telegram.error import BadRequest, TelegramError
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from .callbacks import parse_permission_callback, parse_question_callback
from .control import Mode, SkillProfile, parse_control_command

if TYPE_CHECKING:
    from .approvals import Relay

logger = logging.getLogger(__name__)

Buttons = list[list[tuple[str, str]]]  # rows of (label, callback_data)


@dataclass(frozen=True)
class SentMessage:
    chat_id: int
    message_id: int


class ChatTransport(Protocol):
    async def send_message(self, text: str, buttons: Buttons | None = None) -> SentMessage | None: ...

    async def edit_message(
        self, chat_id: int, message_id: int, text: str | None = None, clear_buttons: bool = True
    ) -> bool: ...

    async def notify(self, text: str) -> None: ...


def authorized_only(func):
    """Decorator to restrict handlers to the configured chat only."""
    async def wrapper(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        chat_id = update.effective_chat.id if update.effective_chat else None
        if chat_id != self.chat_id:
            logger.warning(f"Unauthorized access attempt from chat_id: {chat_id}")
            if update.message:
                await update.message.reply_text("⛔ Unauthorized. This bot is private.")
            elif update.callback_query:
                await update.callback_query.answer("⛔ Unauthorized", show_alert=True)
            return
        return await func(self, update, context)
    return wrapper


class TelegramBot:
    """Chat transport backed by python-telegram-bot.

    With ``polling=True`` it also receives button presses and messages and
    hands them to the attached :class:`~relay.approvals.Relay`.
    """

    def __init__(self, token: str, chat_id: int):
        self.token = token
        self.chat_id = chat_id
        self.app: Application | None = None
        self.relay: "Relay | None" = None
        self._initialized = False
        self._polling = False

    async def initialize(self, polling: bool = True) -> None:
        """Initialize the Telegram bot application."""
        if self._initialized:
            return

        self.app = Application.builder().token(self.token).build()

        if polling:
            self.app.add_handler(CommandHandler("start", self._cmd_start))
            self.app.add_handler(CommandHandler("status", self._cmd_status))
            self.app.add_handler(CommandHandler("pending", self._cmd_pending))
            self.app.add_handler(CommandHandler("mode", self._cmd_mode))
            self.app.add_handler(CommandHandler("agent", self._cmd_agent))
            self.app.add_handler(CommandHandler("skill", self._cmd_skill))
            self.app.add_handler(CommandHandler("takeover", self._cmd_takeover))
            self.app.add_handler(CommandHandler("stop", self._cmd_stop))
            self.app.add_handler(CallbackQueryHandler(self._handle_callback))
            self.app.add_handler(MessageHandler(
                filters.TEXT & ~filters.COMMAND,
                self._handle_text_message
            ))

        await self.app.initialize()
        if polling:
            await self.app.start()
            await self.app.updater.start_polling(allowed_updates=["callback_query", "message"])
            self._polling = True

        self._initialized = True
        logger.info(f"Telegram bot started ({'listening' if polling else 'send-only'})")

    async def shutdown(self) -> None:
        """Shutdown the bot gracefully."""
        if self.app and self._initialized:
            if self._polling:
                await self.app.updater.stop()
                await self.app.stop()
                self._polling = False
            await self.app.shutdown()
            self._initialized = False
            logger.info("Telegram bot stopped")

    # --- ChatTransport ---

    async def send_message(self, text: str, buttons: Buttons | None = None) -> SentMessage | None:
        if not self.app:
            logger.error("Bot not initialized")
            return None

        markup = None
        if buttons:
            markup = InlineKeyboardMarkup(
                [[InlineKeyboardButton(label, callback_data=data) for label, data in row] for row in buttons]
            )
        try:
            message = await self.app.bot.send_message(
                chat_id=self.chat_id,
                text=text,
                reply_markup=markup,
                parse_mode=ParseMode.HTML,
            )
            return SentMessage(chat_id=message.chat_id, message_id=message.message_id)
        except TelegramError as e:
            logger.error(f"Failed to send message: {e}")
            return None

    async def edit_message(
        self, chat_id: int, message_id: int, text: str | None = None, clear_buttons: bool = True
    ) -> bool:
        if not self.app:
            return False

        try:
            if text is not None:
                # Editing the text without a reply_markup also drops the keyboard
                await self.app.bot.edit_message_text(
                    chat_id=chat_id,
                    message_id=message_id,
                    text=text,
                    parse_mode=ParseMode.HTML,
                )
            elif clear_buttons:
                await self.app.bot.edit_message_reply_markup(
                    chat_id=chat_id, message_id=message_id, reply_markup=None
                )
            return True
        except BadRequest as e:
            if "not modified" in str(e).lower():
                return True
            logger.error(f"Failed to update message: {e}")
            return False
        except TelegramError as e:
            logger.error(f"Failed to update message: {e}")
            return False

    async def notify(self, text: str) -> None:
        """Send a plain-text notification."""
        await self.send_message(escape(text))

    # --- Commands ---

    @authorized_only
    async def _cmd_start(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        """Handle /start command."""
        await update.message.reply_text(
            "🤖 *Agent Relay*\n\n"
            "I forward permission requests and questions from the coding agent.\n\n"
            "*Commands:*\n"
            "/status - Show relay status\n"
            "/pending - Show pending requests\n"
            "/mode forward|copilot|delegate - Set operating mode\n"
            "/agent <name> - Select delegate agent\n"
            "/skill plan|execute|debug|review - Select skill profile\n"
            "/takeover <goal> - Delegate a goal to the agent\n"
            "/stop - Stop the current takeover",
            parse_mode="Markdown",
        )

    @authorized_only
    async def _cmd_status(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        """Handle /status command."""
        await update.message.reply_text(self.relay.status_text())

    @authorized_only
    async def _cmd_pending(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        """Handle /pending command."""
        await update.message.reply_text(self.relay.pending_text())

    @authorized_only
    async def _cmd_mode(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        if not context.args or context.args[0].lower() not in {m.value for m in Mode}:
            await update.message.reply_text("Usage: /mode forward|copilot|delegate")
            return
        state = await asyncio.to_thread(self.relay.control.set_mode, context.args[0])
        await update.message.reply_text(f"✅ Mode: {state.mode.value}")

    @authorized_only
    async def _cmd_agent(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        if not context.args:
            await update.message.reply_text("Usage: /agent <name>")
            return
        state = await asyncio.to_thread(self.relay.control.set_selected_agent, context.args[0])
        await update.message.reply_text(f"✅ Agent: {state.selected_agent}")

    @authorized_only
    async def _cmd_skill(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        if not context.args or context.args[0].lower() not in {p.value for p in SkillProfile}:
            await update.message.reply_text("Usage: /skill plan|execute|debug|review")
            return
        state = await asyncio.to_thread(self.relay.control.set_selected_skill_profile, context.args[0])
        await update.message.reply_text(f"✅ Skill profile: {state.selected_skill_profile.value}")

    @authorized_only
    async def _cmd_takeover(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        goal = " ".join(context.args or []).strip()
        if not goal:
            await update.message.reply_text("Usage: /takeover <goal>")
            return
        await update.message.reply_text(await self.relay.start_takeover(goal))

    @authorized_only
    async def _cmd_stop(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        await asyncio.to_thread(self.relay.control.stop_takeover)
        await update.message.reply_text("⏹ Takeover stopped.")

    # --- Updates ---

    @authorized_only
    async def _handle_text_message(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        """Handle text messages: free-text answers first, then control commands."""
        text = update.message.text or ""

        reply = await self.relay.answer_free_text(text)
        if reply is not None:
            await update.message.reply_text(reply)
            return

        command = parse_control_command(text)
        if command is None:
            await update.message.reply_text(
                "💡 Nothing is waiting for a typed answer. Use /takeover <goal> to delegate work."
            )
            return
        await update.message.reply_text(await asyncio.to_thread(self.relay.apply_control_command, command))

    @authorized_only
    async def _handle_callback(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        """Handle button callbacks."""
        query = update.callback_query
        data = query.data or ""

        question = parse_question_callback(data)
        if question is not None:
            if question.type == "option":
                result = await self.relay.answer_option(question.request_id, question.option_index)
            else:
                result = await self.relay.request_free_text(question.request_id)
            await query.answer(result)
            return

        permission = parse_permission_callback(data)
        if permission is not None:
            result = await self.relay.resolve_permission(permission.request_id, permission.action)
            await query.answer(result)
            return

        logger.warning(f"Unknown callback data: {data!r}")
        await query.answer("Unknown action")
