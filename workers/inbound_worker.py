"""
Inbound chat message worker.

Purpose:
- Consume chat messages queued by the WhatsApp webhook
- Route each one through CommandRouter and send exactly one reply
- Keep replies in inbound order (one consumer, one message at a time)

Usage:
- started as a background task by main.py on startup
- stopped by cancelling that task on shutdown
"""
import asyncio
import logging

from models.schemas import InboundMessage
from services.command_router import APOLOGY, CommandRouter
from services.notification_service import NotificationService

logger = logging.getLogger(__name__)

class InboundMessageWorker:
    """Worker that answers chat commands from an asyncio queue."""

    def __init__(self, queue: asyncio.Queue, router: CommandRouter, notifier: NotificationService):
        self.queue = queue
        self.router = router
        self.notifier = notifier
        self.handled = 0
        self.delivered = 0
        self.failed = 0

    async def process(self, message: InboundMessage) -> bool:
        """
        Handle a single message and send its reply.

        Returns True if the reply was delivered.
        """
        logger.info("[INBOUND] %s: %s", message.chat_id, message.body)
        try:
            reply = await self.router.handle(message.chat_id, message.body)
        except Exception as e:
            # router answers its own failures; this only guards the worker loop
            logger.exception("Router failed for %s: %s", message.chat_id, e)
            reply = APOLOGY

        result = await self.notifier.send_message(message.chat_id, reply)
        self.handled += 1
        if result.get("delivered"):
            self.delivered += 1
            return True
        self.failed += 1
        logger.warning("Reply to %s not delivered: %s", message.chat_id, result.get("error"))
        return False

    async def run(self):
        """
        Start consuming messages until cancelled.
        Call this in a separate asyncio task.
        """
        logger.info("Inbound message worker started")
        try:
            while True:
                message = await self.queue.get()
                try:
                    await self.process(message)
                finally:
                    self.queue.task_done()
        finally:
            logger.info(
                "Inbound worker stopped. Handled: %d, Delivered: %d, Failed: %d",
                self.handled, self.delivered, self.failed,
            )
