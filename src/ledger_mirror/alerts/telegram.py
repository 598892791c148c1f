"""Telegram notification handler."""
import os
from typing import Optional

import structlog
from telegram import Bot
from telegram.constants import ParseMode

from ledger_mirror.models import WinnerSelectedEvent

logger = structlog.get_logger()


class TelegramNotifier:
    """Sends price moves and winner announcements to one or more Telegram chats."""

    def __init__(
        self,
        bot_token: Optional[str] = None,
        chat_ids: Optional[str] = None,
        min_price_move_pct: float = 10.0,
        bot: Optional[Bot] = None,
    ):
        self.bot_token = bot_token or os.getenv("TELEGRAM_BOT_TOKEN")
        chat_ids_str = chat_ids or os.getenv("TELEGRAM_CHAT_IDS") or os.getenv("TELEGRAM_CHAT_ID")

        # Comma separated: "123,456,789"
        self.chat_ids: list[str] = []
        if chat_ids_str:
            self.chat_ids = [cid.strip() for cid in chat_ids_str.split(",") if cid.strip()]

        self.min_price_move_pct = min_price_move_pct
        self._last_notified: dict[int, float] = {}
        self._bot = bot

        if not self.bot_token:
            logger.warning("telegram_token_missing")
        if not self.chat_ids:
            logger.warning("telegram_chat_ids_missing")
        else:
            logger.info("telegram_configured", chats=len(self.chat_ids))

    @property
    def bot(self) -> Bot:
        if self._bot is None:
            self._bot = Bot(token=self.bot_token)
        return self._bot

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token and self.chat_ids)

    async def _send_to_all(self, text: str, disable_preview: bool = True) -> int:
        """Send to every configured chat. Returns the number of successful sends."""
        success_count = 0
        for chat_id in self.chat_ids:
            try:
                await self.bot.send_message(
                    chat_id=chat_id,
                    text=text,
                    parse_mode=ParseMode.HTML,
                    disable_web_page_preview=disable_preview,
                )
                success_count += 1
            except Exception as e:
                logger.warning("telegram_send_failed", chat_id=chat_id, error=str(e))
        return success_count

    def should_notify_price(self, pool_id: int, price: float) -> bool:
        """True on the first price for a pool and on moves of at least ``min_price_move_pct``."""
        last = self._last_notified.get(pool_id)
        if last is None or last <= 0:
            return True
        return abs(price - last) / last * 100 >= self.min_price_move_pct

    async def notify_price_update(self, pool_id: int, price: float) -> bool:
        if not self.is_configured or not self.should_notify_price(pool_id, price):
            return False

        previous = self._last_notified.get(pool_id)
        self._last_notified[pool_id] = price
        sent = await self._send_to_all(self._format_price(pool_id, price, previous))
        logger.debug("telegram_price_sent", pool_id=pool_id, sent=sent)
        return sent > 0

    async def notify_new_winner(self, event: WinnerSelectedEvent) -> bool:
        if not self.is_configured:
            return False

        sent = await self._send_to_all(self._format_winner(event))
        logger.info("telegram_winner_sent", pool=event.pool, sent=sent, chats=len(self.chat_ids))
        return sent > 0

    @staticmethod
    def _format_price(pool_id: int, price: float, previous: Optional[float]) -> str:
        message = f"💹 <b>Pool #{pool_id}</b>\n\n<b>Price:</b> ${price:,.8f}"
        if previous:
            change = (price - previous) / previous * 100
            message += f" ({change:+.1f}%)"
        return message

    @staticmethod
    def _format_winner(event: WinnerSelectedEvent) -> str:
        pool_short = f"{event.pool[:6]}...{event.pool[-4:]}"
        winner_short = f"{event.winner[:6]}...{event.winner[-4:]}"
        return (
            f"🏆 <b>Winner Selected</b>\n\n"
            f"<b>Pool:</b> <code>{pool_short}</code>\n"
            f"<b>Winner:</b> <code>{winner_short}</code>\n"
            f"<b>Pot:</b> {event.total_amount:,} "
            f"from {event.participant_count} participant(s)"
        )
