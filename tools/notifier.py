import logging

from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

from config.settings import settings
from core.exceptions import NotificationError

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = "whatsapp:"

_twilio_client: TwilioClient | None = None


def whatsapp_address(number: str) -> str:
    """
    Normalize a chat id / phone number to Twilio's WhatsApp address form.

    "whatsapp:+5511999990000" is returned as is; "+5511999990000" and
    "5511999990000" become "whatsapp:+5511999990000".
    """
    number = number.strip()
    if number.startswith(WHATSAPP_PREFIX):
        return number
    if not number.startswith("+"):
        number = f"+{number}"
    return f"{WHATSAPP_PREFIX}{number}"


def twilio_configured() -> bool:
    return bool(settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_WHATSAPP_FROM)


def get_twilio_client() -> TwilioClient:
    """Lazily create the Twilio REST client. Raises NotificationError if not configured."""
    global _twilio_client
    if _twilio_client is None:
        if not twilio_configured():
            raise NotificationError(
                "Twilio WhatsApp not configured: set TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_WHATSAPP_FROM"
            )
        _twilio_client = TwilioClient(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
    return _twilio_client


def send_whatsapp(chat_id: str, message: str) -> str:
    """
    Send a WhatsApp message through Twilio (blocking call).

    Returns the Twilio message SID. Raises NotificationError on any failure.
    """
    client = get_twilio_client()
    to = whatsapp_address(chat_id)
    try:
        sent = client.messages.create(
            to=to,
            from_=whatsapp_address(settings.TWILIO_WHATSAPP_FROM),
            body=message,
        )
    except TwilioException as e:
        raise NotificationError(f"Twilio rejected message to {to}: {e}") from e
    logger.info("[WhatsApp][Twilio] To %s sid=%s", to, sent.sid)
    return sent.sid


def send_console(chat_id: str, message: str) -> str:
    """Development channel: log the message instead of sending it."""
    banner = "=" * 60
    logger.info("[NOTIFY] To %s:\n%s\n%s\n%s", chat_id, banner, message, banner)
    return "console"
