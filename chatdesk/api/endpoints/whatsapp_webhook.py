import json
import logging
import os
from typing import Any, Dict, List

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse

from chatdesk.api.dependencies import get_services
from chatdesk.escalation.models import ChannelAddress, DeliveryOptions, InboundMessage, UserChannel
from chatdesk.integrations.whatsapp.whatsapp_client import verify_signature
from chatdesk.utils.helpers import sanitize_input

logger = logging.getLogger(__name__)

router = APIRouter()

TEXT_ONLY_REPLY = "Sorry, I can only process text messages at the moment."


def extract_messages(body: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Flatten `entry[].changes[].value.messages[]` with each message's contact name."""
    if body.get("object") != "whatsapp_business_account":
        return []
    out = []
    for entry in body.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            contacts = {c.get("wa_id"): (c.get("profile") or {}).get("name") for c in value.get("contacts") or []}
            for message in value.get("messages") or []:
                out.append({**message, "_profile_name": contacts.get(message.get("from"))})
    return out


async def handle_whatsapp_message(services, message: Dict[str, Any]) -> None:
    """Run one inbound WhatsApp message through the pipeline and send the reply."""
    phone = message.get("from") or ""
    address = ChannelAddress(UserChannel.WHATSAPP, phone)
    text = (message.get("text") or {}).get("body")
    if message.get("type") != "text" or not text:
        await services.dispatcher.send(address, TEXT_ONLY_REPLY)
        return

    inbound = InboundMessage(
        user=address,
        text=sanitize_input(text),
        channel_metadata={
            "phone_number": phone,
            "message_id": message.get("id"),
            "profile_name": message.get("_profile_name"),
            "platform": "whatsapp",
        },
    )
    try:
        reply = await services.pipeline.handle(inbound)
    except Exception as e:
        out = services.error_handler.handle_exception(e, inbound.language or "en", {"user_id": address.user_id})
        await services.dispatcher.send(address, out["message"])
        return

    await services.dispatcher.send(
        address,
        reply.message,
        DeliveryOptions(sentiment=reply.sentiment, escalated=reply.escalated, language=reply.language),
    )


async def _process_messages(services, messages: List[Dict[str, Any]]) -> None:
    for message in messages:
        try:
            await handle_whatsapp_message(services, message)
        except Exception as e:
            logger.error("WhatsApp message %s failed: %s", message.get("id"), e, exc_info=True)


@router.get("/whatsapp/webhook", tags=["WhatsApp"])
async def verify_webhook(
    mode: str = Query(default="", alias="hub.mode"),
    token: str = Query(default="", alias="hub.verify_token"),
    challenge: str = Query(default="", alias="hub.challenge"),
):
    """Meta webhook subscription handshake."""
    expected = os.getenv("WHATSAPP_VERIFY_TOKEN", "")
    if mode == "subscribe" and expected and token == expected:
        logger.info("WhatsApp webhook verified")
        return PlainTextResponse(challenge)
    logger.error("WhatsApp webhook verification failed")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


@router.post("/whatsapp/webhook", tags=["WhatsApp"])
async def receive_webhook(request: Request, background_tasks: BackgroundTasks):
    """
    WhatsApp Cloud API receiver. Acknowledges with 200 straight away so Meta
    does not redeliver; messages are handled after the response.
    """
    raw = await request.body()
    if not verify_signature(os.getenv("WHATSAPP_APP_SECRET", ""), raw, request.headers.get("X-Hub-Signature-256")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
    try:
        body = json.loads(raw or b"{}")
    except json.JSONDecodeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")

    services = get_services(request)
    fresh = []
    for message in extract_messages(body):
        if not message.get("from"):
            continue
        if services.whatsapp_message_ids.seen(message.get("id")):
            logger.info("Duplicate WhatsApp message %s ignored", message.get("id"))
            continue
        fresh.append(message)

    if fresh:
        background_tasks.add_task(_process_messages, services, fresh)
    return PlainTextResponse("OK")
