"""Telegram alert channel for the keeper."""
import html
import logging
import ssl

import aiohttp
import certifi

from ..config import TelegramConfig

logger = logging.getLogger(__name__)

# Telegram rejects messages longer than this.
MAX_MESSAGE_LENGTH = 4096


class TelegramNotifier:
    """Alerts go to an unmuted bot, status reports to a separate log bot."""

    def __init__(self, config: TelegramConfig, timeout: float = 10.0) -> None:
        self.alert_bot_token = config.alert_bot_token
        self.log_bot_token = config.log_bot_token or config.alert_bot_token
        self.chat_id = config.chat_id
        self.timeout = timeout

    @staticmethod
    def _render(message: str, subject: str = "") -> str:
        text = html.escape(message)
        if subject:
            text = f"<b>{html.escape(subject)}</b>\n\n{text}"
        if len(text) > MAX_MESSAGE_LENGTH:
            text = text[: MAX_MESSAGE_LENGTH - 3] + "..."
        return text

    async def _send_message(self, text: str, bot_token: str, silent: bool = False) -> bool:
        if not bot_token or not self.chat_id:
            logger.warning("Telegram credentials not configured")
            return False

        url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        payload = {
            "chat_id": self.chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_notification": silent,
        }

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
            async with session.post(url, json=payload) as response:
                if response.status == 200:
                    return True
                logger.error("Telegram rejected message: HTTP %s", response.status)
                return False

    async def send_alert(self, message: str, subject: str = "") -> bool:
        if await self._send_message(self._render(message, subject), self.alert_bot_token):
            logger.info("Telegram alert sent")
            return True
        return False

    async def send_log(self, message: str, silent: bool = True) -> bool:
        if await self._send_message(self._render(message), self.log_bot_token, silent=silent):
            logger.debug("Telegram status sent")
            return True
        return False
