"""
OVERWATCH NOTIFIER
Operator notifications through the Telegram Bot API

send() never raises: a failed notification is logged and reported as
False, it never aborts the job that tried to send it.
"""

import os
import logging
from typing import Optional

import requests

from overwatch import config
from overwatch.shared.resilience import get_http_session, get_health_tracker

logger = logging.getLogger(__name__)

TELEGRAM_TIMEOUT = 15
TELEGRAM_MAX_LENGTH = 4096


class TelegramNotifier:
    """Sends HTML-formatted messages to one chat"""

    def __init__(
        self,
        bot_token: Optional[str] = None,
        chat_id: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        self.bot_token = bot_token or os.getenv("TELEGRAM_BOT_TOKEN")
        self.chat_id = chat_id or os.getenv("TELEGRAM_CHAT_ID")
        self._session = session or get_http_session()

    def is_available(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    def send(self, text: str) -> bool:
        """Deliver one message; True on success"""
        if not self.is_available():
            logger.warning("TELEGRAM_BOT_TOKEN or TELEGRAM_CHAT_ID not set, skipping notification")
            return False

        if len(text) > TELEGRAM_MAX_LENGTH:
            text = text[:TELEGRAM_MAX_LENGTH - 3] + "..."

        tracker = get_health_tracker("telegram")
        url = f"{config.TELEGRAM_API}/bot{self.bot_token}/sendMessage"
        try:
            response = self._session.post(
                url,
                json={
                    "chat_id": self.chat_id,
                    "text": text,
                    "parse_mode": "HTML",
                    "disable_web_page_preview": True,
                },
                timeout=TELEGRAM_TIMEOUT,
            )
            body = response.json()
            if not body.get("ok"):
                raise RuntimeError(f"Telegram error: {body.get('description')}")
        except Exception as e:
            logger.error(f"Telegram send failed: {e}")
            tracker.record_call(False, 0, error=str(e)[:200])
            return False

        tracker.record_call(True, 0)
        logger.info("Telegram message sent")
        return True
