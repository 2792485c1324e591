# api/routes_whatsapp.py
import logging

from fastapi import APIRouter, Form, HTTPException, Request, Response
from twilio.request_validator import RequestValidator

from config.settings import settings
from core.singleton import inbound_queue
from models.schemas import InboundMessage

logger = logging.getLogger(__name__)

router = APIRouter()

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'

def _signature_valid(request: Request, form: dict) -> bool:
    if not settings.TWILIO_AUTH_TOKEN:
        return False
    url = settings.PUBLIC_WEBHOOK_URL or str(request.url)
    signature = request.headers.get("X-Twilio-Signature", "")
    return RequestValidator(settings.TWILIO_AUTH_TOKEN).validate(url, form, signature)

@router.post("/webhook")
async def whatsapp_webhook(
    request: Request,
    From: str = Form(...),
    Body: str = Form(""),
    MessageSid: str | None = Form(None),
):
    """
    Twilio WhatsApp inbound webhook.

    The message is queued for the inbound worker and the reply is sent
    through the REST API, so the TwiML answer is always empty.
    """
    if settings.TWILIO_VALIDATE_SIGNATURE:
        form = dict(await request.form())
        if not _signature_valid(request, form):
            logger.warning("Rejected webhook with invalid Twilio signature from %s", From)
            raise HTTPException(status_code=403, detail="Invalid Twilio signature")

    await inbound_queue.put(InboundMessage(chat_id=From, body=Body, message_id=MessageSid))
    logger.debug("Queued inbound message %s from %s", MessageSid, From)
    return Response(content=EMPTY_TWIML, media_type="application/xml")
