"""
Outbound relay: delivers a message to a user on whatever channel they came from.

Delivery is best-effort. Every failure (API error, timeout, no live session,
unsupported channel) is logged here and reported as `False`; nothing is raised
to the caller, so a chat turn never blocks on a flaky transport.
"""

import asyncio
import logging
from typing import Optional, Union

from chatdesk.escalation.exceptions import DeliveryFailure
from chatdesk.escalation.models import (
    ChannelAddress,
    DeliveryOptions,
    MessageType,
    OutboundMessage,
    Sentiment,
    UserChannel,
)

logger = logging.getLogger(__name__)

SENTIMENT_EMOJI = {
    Sentiment.POSITIVE: "😊",
    Sentiment.NEGATIVE: "😔",
}

ESCALATION_NOTICE = {
    "en": "🚨 *This conversation has been escalated to a human agent.*",
    "es": "🚨 *Esta conversación ha sido escalada a un agente humano.*",
}


def format_whatsapp(text: str, options: DeliveryOptions) -> str:
    formatted = text
    emoji = SENTIMENT_EMOJI.get(options.sentiment) if options.sentiment else None
    if emoji and options.message_type == MessageType.BOT:
        formatted = f"{emoji} {formatted}"
    if options.escalated:
        notice = ESCALATION_NOTICE.get(options.language or "en", ESCALATION_NOTICE["en"])
        formatted += f"\n\n{notice}"
    return formatted


def live_payload(message: OutboundMessage):
    """Event name and body for web/mobile sessions."""
    options = message.options
    timestamp = message.timestamp.isoformat()
    if options.message_type == MessageType.ADMIN:
        return "admin_response", {
            "type": "admin",
            "content": message.text,
            "adminName": options.sender_display_name,
            "timestamp": timestamp,
            "isEscalation": True,
            "targetUserId": message.recipient.user_id,
        }
    return "bot_response", {
        "type": "bot",
        "message": message.text,
        "content": message.text,
        "sentiment": getattr(options.sentiment, "value", options.sentiment),
        "language": options.language,
        "escalated": options.escalated,
        "isEscalation": options.escalated,
        "timestamp": timestamp,
    }


class ChannelDispatcher:
    def __init__(self, live_connections=None, whatsapp_client=None, timeout: float = 10.0):
        self.live = live_connections
        self.whatsapp = whatsapp_client
        self.timeout = timeout

    async def send(
        self,
        recipient: Union[ChannelAddress, str],
        text: str,
        options: Optional[DeliveryOptions] = None,
    ) -> bool:
        address = recipient if isinstance(recipient, ChannelAddress) else ChannelAddress.parse(recipient)
        message = OutboundMessage(recipient=address, text=text, options=options or DeliveryOptions())
        try:
            await asyncio.wait_for(self._deliver(message), timeout=self.timeout)
            return True
        except asyncio.TimeoutError:
            logger.error("Delivery to %s timed out after %.1fs", address.user_id, self.timeout)
        except DeliveryFailure as e:
            logger.error("Delivery failure: %s", e)
        except Exception as e:
            logger.error("Unexpected delivery error for %s: %s", address.user_id, e, exc_info=True)
        return False

    async def _deliver(self, message: OutboundMessage) -> None:
        channel = message.recipient.channel
        if channel in (UserChannel.WEB, UserChannel.MOBILE):
            await self._send_live(message)
        elif channel == UserChannel.WHATSAPP:
            await self._send_whatsapp(message)
        else:
            raise DeliveryFailure(channel.value, message.recipient.user_id, "channel is not a delivery target")

    async def _send_live(self, message: OutboundMessage) -> None:
        if self.live is None:
            raise DeliveryFailure(message.recipient.channel.value, message.recipient.user_id, "live sessions disabled")
        event, payload = live_payload(message)
        delivered = await self.live.push(message.recipient.user_id, event, payload)
        if not delivered:
            raise DeliveryFailure(message.recipient.channel.value, message.recipient.user_id, "no live session")

    async def _send_whatsapp(self, message: OutboundMessage) -> None:
        if self.whatsapp is None:
            raise DeliveryFailure("whatsapp", message.recipient.user_id, "WhatsApp client not configured")
        body = format_whatsapp(message.text, message.options)
        await self.whatsapp.send_text(message.recipient.raw_id, body)
