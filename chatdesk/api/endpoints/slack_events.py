import json
import logging
import os
from typing import Any, Dict, Optional
from urllib.parse import parse_qs

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, Response, status
from fastapi.responses import PlainTextResponse
from slack_sdk.signature import SignatureVerifier

from chatdesk.api.dependencies import get_services
from chatdesk.escalation.models import ThreadRef
from chatdesk.escalation.notifier import parse_action
from chatdesk.utils.helpers import sanitize_input, strip_mentions, unwrap_slack_links

logger = logging.getLogger(__name__)

router = APIRouter()


def _verify_request(request: Request, body: bytes) -> bool:
    signing_secret = os.getenv("SLACK_SIGNING_SECRET", "")
    if not signing_secret:
        return True
    verifier = SignatureVerifier(signing_secret)
    return verifier.is_valid(
        body=body.decode("utf-8"),
        timestamp=request.headers.get("X-Slack-Request-Timestamp", ""),
        signature=request.headers.get("X-Slack-Signature", ""),
    )


def parse_agent_reply(event: Dict[str, Any], slack_service=None) -> Optional[Dict[str, Any]]:
    """Pick out a human reply inside a thread; None for anything else."""
    if event.get("type") != "message":
        return None
    # Edits, joins, deletions and bot posts all carry a subtype.
    if event.get("bot_id") or event.get("subtype"):
        return None
    thread_ts = event.get("thread_ts")
    if not thread_ts or thread_ts == event.get("ts"):
        return None
    user = event.get("user")
    if not user or (slack_service is not None and slack_service.is_own_bot(user)):
        return None
    text = sanitize_input(unwrap_slack_links(strip_mentions(event.get("text") or "")))
    if not text:
        return None
    return {
        "thread_ref": ThreadRef(channel=event.get("channel") or "", ts=thread_ts),
        "text": text,
        "agent_identity": user,
        "message_ts": event.get("ts"),
    }


def parse_block_action(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    actions = payload.get("actions") or []
    if not actions:
        return None
    action = actions[0] or {}
    kind = parse_action(action.get("action_id") or "")
    escalation_id = (action.get("value") or "").strip()
    if kind is None or not escalation_id:
        return None
    user = payload.get("user") or {}
    channel = payload.get("channel") or (payload.get("container") or {})
    return {
        "escalation_id": escalation_id,
        "action_kind": kind,
        "actor": user.get("id") or "",
        "actor_name": user.get("name") or user.get("username"),
        "channel": channel.get("id") or channel.get("channel_id"),
    }


async def _relay_agent_reply(services, reply: Dict[str, Any]) -> None:
    try:
        await services.inbound_relay.on_agent_reply(**reply)
    except Exception as e:
        logger.error("Agent reply relay failed: %s", e, exc_info=True)


async def _apply_agent_action(services, action: Dict[str, Any]) -> None:
    try:
        await services.notifier.on_agent_action(**action)
    except Exception as e:
        logger.error("Agent action %s failed: %s", action.get("action_kind"), e, exc_info=True)


@router.post("/slack/events", tags=["Slack"])
async def slack_events(request: Request, background_tasks: BackgroundTasks):
    """
    Slack Events API receiver.
    - Handles URL verification challenge.
    - Relays human replies posted in escalation threads to the user.
    """
    body = await request.body()
    if not _verify_request(request, body):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Slack signature")

    try:
        payload: Dict[str, Any] = json.loads(body or b"{}")
    except json.JSONDecodeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")

    if payload.get("type") == "url_verification":
        return PlainTextResponse(str(payload.get("challenge") or ""))

    if payload.get("type") != "event_callback":
        return {"ok": True, "ignored": True}

    services = get_services(request)
    if services.slack_event_ids.seen(payload.get("event_id")):
        logger.info("Duplicate Slack event %s ignored", payload.get("event_id"))
        return {"ok": True, "duplicate": True}

    reply = parse_agent_reply(payload.get("event") or {}, services.slack)
    if reply is None:
        return {"ok": True, "ignored": True}

    background_tasks.add_task(_relay_agent_reply, services, reply)
    return {"ok": True}


@router.post("/slack/interactive", tags=["Slack"])
async def slack_interactive(request: Request, background_tasks: BackgroundTasks):
    """
    Slack interactivity receiver (notice buttons). Always acknowledges with 200
    so Slack does not show an error to the agent; work runs after the response.
    """
    body = await request.body()
    if not _verify_request(request, body):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Slack signature")

    form = parse_qs(body.decode("utf-8"))
    raw = (form.get("payload") or [""])[0]
    try:
        payload = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        logger.warning("Unparseable Slack interactive payload")
        return Response(status_code=status.HTTP_200_OK)

    if payload.get("type") == "block_actions":
        action = parse_block_action(payload)
        if action is not None:
            background_tasks.add_task(_apply_agent_action, get_services(request), action)
        else:
            logger.info("Ignoring block action without a known action id or escalation id")

    return Response(status_code=status.HTTP_200_OK)
