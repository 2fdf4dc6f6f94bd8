# services/telegram_notifier.py
import html
import logging
import time
from typing import Dict, Optional

from telegram import Bot
from telegram.error import TelegramError

from analysis.models import ArbitrageOpportunity
from services.execution_trigger import ExecutionResult


class TelegramNotifier:
    """Pushes opportunities and execution outcomes to one Telegram chat."""

    def __init__(
        self,
        bot: Bot,
        chat_id: str,
        *,
        alert_cooldown: float = 60.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.bot = bot
        self.chat_id = chat_id
        self.alert_cooldown = alert_cooldown
        self.alert_cache: Dict[str, float] = {}
        self.logger = logger or logging.getLogger(__name__)

    async def notify_opportunity(self, opp: ArbitrageOpportunity) -> bool:
        now = time.monotonic()
        last_sent = self.alert_cache.get(opp.key)
        if last_sent is not None and now - last_sent < self.alert_cooldown:
            return False
        if await self._send(self.format_opportunity_message(opp)):
            self.alert_cache[opp.key] = now
            return True
        return False

    async def notify_result(self, result: ExecutionResult) -> bool:
        return await self._send(self.format_result_message(result))

    @staticmethod
    def format_opportunity_message(opp: ArbitrageOpportunity) -> str:
        symbol = html.escape(opp.pair.quote_token.symbol)
        return (
            f"<b>Arbitrage opportunity: {html.escape(opp.pair.name)}</b>\n\n"
            f"Buy on <b>{html.escape(opp.buy_venue.name)}</b> at <code>{opp.buy_price}</code> {symbol}\n"
            f"Sell on <b>{html.escape(opp.sell_venue.name)}</b> at <code>{opp.sell_price}</code> {symbol}\n"
            f"Divergence: <code>{opp.price_divergence * 100:.4f}%</code>\n"
            f"Estimated cost: <code>{opp.total_cost_ratio * 100:.4f}%</code>\n"
            f"Expected profit: <code>{opp.expected_profit_ratio * 100:.4f}%</code>"
        )

    @staticmethod
    def format_result_message(result: ExecutionResult) -> str:
        key = html.escape(result.opportunity_key)
        if result.executed:
            lines = [f"✅ <b>Executed</b> {key}"]
            if result.profit is not None:
                lines.append(f"Profit: <code>{result.profit}</code>")
        else:
            lines = [f"❌ <b>Not executed</b> {key}"]
            if result.reason:
                lines.append(f"Reason: <pre>{html.escape(result.reason)}</pre>")
        for tx_hash in result.tx_hashes:
            lines.append(f"Tx: <code>{html.escape(tx_hash)}</code>")
        return "\n".join(lines)

    async def _send(self, text: str) -> bool:
        try:
            await self.bot.send_message(chat_id=self.chat_id, text=text, parse_mode='HTML')
        except TelegramError as exc:
            self.logger.error("Telegram send failed: %s", exc)
            return False
        return True
