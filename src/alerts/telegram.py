"""Telegram delivery of order notifications."""
import html
import os
from typing import Optional
import structlog
from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

from src.models import NotificationDirective, Order

logger = structlog.get_logger()


class DispatchError(Exception):
    """A notification could not be delivered."""


class TelegramNotifier:
    """Sends notification directives to the chat owned by the user."""

    def __init__(self, bot_token: Optional[str] = None):
        self.bot_token = bot_token or os.getenv("TELEGRAM_BOT_TOKEN")
        self._bot: Optional[Bot] = None

        if not self.bot_token:
            logger.warning("telegram_not_configured")

    @property
    def bot(self) -> Bot:
        if self._bot is None:
            self._bot = Bot(token=self.bot_token)
        return self._bot

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token)

    async def dispatch(self, directive: NotificationDirective):
        """Deliver one directive. Raises DispatchError on failure."""
        if not self.is_configured:
            raise DispatchError("TELEGRAM_BOT_TOKEN not configured")

        try:
            await self.bot.send_message(
                chat_id=directive.user_id,
                text=self._format_message(directive),
                parse_mode=ParseMode.HTML,
                disable_web_page_preview=True,
            )
        except TelegramError as e:
            raise DispatchError(f"telegram send to {directive.user_id} failed: {e}") from e

    def _format_message(self, directive: NotificationDirective) -> str:
        """Format an order notification for Telegram."""
        order: Order = directive.order
        side = {"buy": "🟢 BUY", "sell": "🔴 SELL"}.get(order.kind, "⚪ ORDER")

        amount = f"{order.amount_sats:,} sats" if order.amount_sats else "market amount"
        fiat = f"{order.fiat_amount:,.2f} {order.fiat_code}" if order.fiat_amount else order.fiat_code

        message = (
            f"{side} <b>{html.escape(fiat)}</b> on {order.platform.value}\n\n"
            f"<b>Amount:</b> {amount}\n"
            f"<b>Premium:</b> {order.premium:+.2f}%\n"
            f"<b>Payment:</b> {html.escape(order.payment_method or 'n/a')}\n"
            f"<b>Status:</b> {order.status}\n"
            f"<i>Alert #{directive.alert.alert_id}</i>\n"
        )

        if order.source_url:
            message += f"\n🔗 <a href=\"{html.escape(order.source_url, quote=True)}\">View order</a>"

        return message
