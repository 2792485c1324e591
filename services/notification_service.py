# services/notification_service.py
import asyncio
import logging
from typing import Callable, Dict, List

from core.exceptions import NotificationError, StartupError
from tools import notifier

logger = logging.getLogger(__name__)

CHANNELS = ("console", "whatsapp")

class NotificationService:
    """
    Delivers text messages to chats.

    - whatsapp: Twilio REST API (blocking SDK, run in a worker thread)
    - console: log only, for local development

    send_message never raises: the result dict says whether it was delivered,
    so one failed chat cannot break a monitor tick or the inbound worker.
    """

    def __init__(self, channel: str = "console", sender: Callable[[str, str], str] | None = None):
        if channel not in CHANNELS:
            raise ValueError(f"unknown notifier channel {channel!r}; expected one of {CHANNELS}")
        self.channel = channel
        self._sender = sender or (notifier.send_whatsapp if channel == "whatsapp" else notifier.send_console)
        self.sent_notifications: List[Dict] = []

    def validate(self):
        """Startup check: the selected transport must be usable."""
        if self.channel == "whatsapp":
            try:
                notifier.get_twilio_client()
            except NotificationError as e:
                raise StartupError(str(e)) from e
        logger.info("Notification channel ready: %s", self.channel)

    def is_ready(self) -> bool:
        return self.channel == "console" or notifier.twilio_configured()

    async def send_message(self, chat_id: str, text: str) -> Dict:
        """
        Send `text` to `chat_id`.

        Returns {"chat_id", "channel", "delivered", "error"}.
        """
        result = {"chat_id": chat_id, "channel": self.channel, "delivered": False, "error": None}
        try:
            await asyncio.to_thread(self._sender, chat_id, text)
            result["delivered"] = True
        except NotificationError as e:
            logger.error("Failed to send message to %s: %s", chat_id, e)
            result["error"] = str(e)
        except Exception as e:
            logger.exception("Unexpected error sending message to %s: %s", chat_id, e)
            result["error"] = str(e)
        self.sent_notifications.append(result)
        del self.sent_notifications[:-100]
        return result

    def recent_notifications(self):
        """Return the last 20 delivery results."""
        return self.sent_notifications[-20:]
