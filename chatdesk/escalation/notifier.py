"""
Agent notifier.

Posts each new escalation to the Slack escalation channel as an actionable
notice, keeps that notice in sync with the escalation's status as agents press
its buttons, and forwards follow-up user messages into the notice's thread.
"""

import asyncio
import logging
import re
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from chatdesk.escalation.exceptions import IdentityLookupFailure, InvalidTransition, NotificationPublishFailure
from chatdesk.escalation.models import (
    ChannelAddress,
    DeliveryOptions,
    Escalation,
    EscalationStatus,
    MessageType,
)
from chatdesk.escalation.store import EscalationStore

logger = logging.getLogger(__name__)

DEFAULT_AGENT_NAME = "Support Agent"


class AgentAction(str, Enum):
    TAKE_OVER = "take_over"
    RESOLVE = "resolve"
    SCHEDULE = "schedule"


# Slack action_id -> action. `agent_takeover` is the id older notices used.
ACTION_IDS = {
    "take_over": AgentAction.TAKE_OVER,
    "agent_takeover": AgentAction.TAKE_OVER,
    "mark_resolved": AgentAction.RESOLVE,
    "resolve": AgentAction.RESOLVE,
    "schedule_call": AgentAction.SCHEDULE,
    "schedule": AgentAction.SCHEDULE,
}

INTRODUCTIONS = {
    "en": "Hi, I'm {name} from the support team. I've joined this conversation and will help you from here.",
    "es": "Hola, soy {name} del equipo de soporte. Me he unido a esta conversación y te ayudaré a partir de ahora.",
}

CHANNEL_LABELS = {
    "web": "Web",
    "mobile": "Mobile",
    "whatsapp": "WhatsApp",
    "workspace": "Slack",
}


_SLACK_USER_ID_RE = re.compile(r"[UW][A-Z0-9_]{2,}")


def parse_action(action_id: str) -> Optional[AgentAction]:
    return ACTION_IDS.get((action_id or "").strip())


def agent_label(agent: Optional[str]) -> str:
    """Slack mention for workspace user ids, plain text for any other actor."""
    if not agent:
        return ""
    if _SLACK_USER_ID_RE.fullmatch(agent):
        return f"<@{agent}>"
    return f"`{agent}`"


def _button(text: str, action_id: str, value: str, style: Optional[str] = None) -> Dict[str, Any]:
    button = {
        "type": "button",
        "text": {"type": "plain_text", "text": text},
        "action_id": action_id,
        "value": value,
    }
    if style:
        button["style"] = style
    return button


def render_notice(escalation: Escalation) -> Tuple[str, List[Dict[str, Any]]]:
    """Fallback text and blocks for an escalation's current state.

    Rendering is a pure function of the record, so re-rendering after a
    repeated action produces the same message.
    """
    eid = escalation.escalation_id
    channel_label = CHANNEL_LABELS.get(escalation.user_channel.value, escalation.user_channel.value)
    created = escalation.created_at.strftime("%Y-%m-%d %H:%M:%S UTC")
    quoted = "\n".join(f">{line}" for line in (escalation.original_message or "(no message)").splitlines()) or ">"

    blocks: List[Dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": "🚨 Chatbot Escalation Alert"}},
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*User:* `{escalation.user_id}`"},
                {"type": "mrkdwn", "text": f"*Channel:* {channel_label}"},
                {"type": "mrkdwn", "text": f"*Time:* {created}"},
                {"type": "mrkdwn", "text": f"*Status:* {escalation.status.value.replace('_', ' ')}"},
            ],
        },
        {"type": "section", "text": {"type": "mrkdwn", "text": f"*Original Message:*\n{quoted}"}},
    ]

    if escalation.status == EscalationStatus.ACTIVE:
        blocks.append(
            {
                "type": "actions",
                "block_id": f"escalation:{eid}",
                "elements": [
                    _button("✅ Take Over", "take_over", eid, style="primary"),
                    _button("📞 Schedule Call", "schedule_call", eid),
                    _button("✔️ Resolved", "mark_resolved", eid, style="danger"),
                ],
            }
        )
    elif escalation.status == EscalationStatus.TAKEN_OVER:
        blocks.append(
            {"type": "context", "elements": [{"type": "mrkdwn", "text": f"🙋 {agent_label(escalation.agent)} is handling this conversation."}]}
        )
        blocks.append(
            {
                "type": "actions",
                "block_id": f"escalation:{eid}",
                "elements": [
                    _button("📞 Schedule Call", "schedule_call", eid),
                    _button("✔️ Resolved", "mark_resolved", eid, style="danger"),
                ],
            }
        )
    else:
        resolved = escalation.resolved_at.strftime("%Y-%m-%d %H:%M:%S UTC") if escalation.resolved_at else "-"
        by = f" by {agent_label(escalation.agent)}" if escalation.agent else ""
        blocks.append({"type": "context", "elements": [{"type": "mrkdwn", "text": f"✔️ Resolved{by} at {resolved}"}]})

    text = f"Escalation for {escalation.user_id} ({channel_label}): {escalation.status.value}"
    return text, blocks


class AgentNotifier:
    def __init__(self, store: EscalationStore, slack_service, dispatcher, timeout: float = 10.0):
        self.store = store
        self.slack = slack_service
        self.dispatcher = dispatcher
        self.timeout = timeout
        # escalation id -> set once its notice is posted or the record discarded
        self._pending: Dict[str, asyncio.Event] = {}

    # --- Publishing ----------------------------------------------------------

    async def publish(self, user: ChannelAddress, original_message: str, language: str = "en") -> str:
        """Create (or reuse) the user's escalation and post its notice.

        Either the record ends up attached to a posted notice, or it is
        discarded and NotificationPublishFailure is raised. A caller that
        reuses a record whose notice is still in flight waits for that post.
        """
        escalation, created = await self.store.get_or_create(user, original_message, language)
        eid = escalation.escalation_id
        if not created:
            if await self.wait_for_thread(escalation) is None:
                raise NotificationPublishFailure(eid, "notice for the open escalation was not posted", user.user_id)
            return eid

        # No await between the record's insertion and this line, so any caller
        # that can see the record also sees the pending event.
        ready = self._pending[eid] = asyncio.Event()
        try:
            text, blocks = render_notice(escalation)
            try:
                thread_ref = await asyncio.wait_for(self.slack.post_notice(text, blocks), timeout=self.timeout)
            except asyncio.TimeoutError:
                await self.store.discard(eid)
                raise NotificationPublishFailure(eid, "timed out", user.user_id)
            except Exception as e:
                await self.store.discard(eid)
                raise NotificationPublishFailure(eid, str(e), user.user_id)

            await self.store.attach_thread(eid, thread_ref)
        finally:
            ready.set()
            self._pending.pop(eid, None)

        logger.info("Escalation %s posted to %s/%s", eid, thread_ref.channel, thread_ref.ts)
        return eid

    async def wait_for_thread(self, escalation: Escalation) -> Optional[Escalation]:
        """The escalation with its thread attached, waiting out a notice still being posted.

        None when the notice never got posted (record discarded or wait timed out).
        """
        if escalation.thread_ref is not None:
            return escalation
        ready = self._pending.get(escalation.escalation_id)
        if ready is not None:
            try:
                await asyncio.wait_for(ready.wait(), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.warning("Timed out waiting for the notice of escalation %s", escalation.escalation_id)
        current = self.store.find_by_escalation_id(escalation.escalation_id)
        if current is None or current.thread_ref is None:
            return None
        return current

    async def forward_user_message(self, escalation: Escalation, text: str) -> bool:
        """Post a user's follow-up into the escalation thread. Best-effort."""
        attached = await self.wait_for_thread(escalation)
        if attached is None:
            logger.warning("Escalation %s has no thread; cannot forward", escalation.escalation_id)
            return False
        escalation = attached
        body = f"💬 *{escalation.user_id}:* {text}"
        try:
            await asyncio.wait_for(self.slack.post_thread_message(escalation.thread_ref, body), timeout=self.timeout)
            return True
        except asyncio.TimeoutError:
            logger.error("Forwarding to escalation %s timed out", escalation.escalation_id)
        except Exception as e:
            logger.error("Forwarding to escalation %s failed: %s", escalation.escalation_id, e)
        return False

    # --- Agent actions -------------------------------------------------------

    async def on_agent_action(
        self,
        escalation_id: str,
        action_kind,
        actor: str,
        actor_name: Optional[str] = None,
        channel: Optional[str] = None,
    ) -> Optional[Escalation]:
        action = action_kind if isinstance(action_kind, AgentAction) else parse_action(str(action_kind))
        if action is None:
            logger.warning("Ignoring unknown agent action %r on %s", action_kind, escalation_id)
            return None

        record = self.store.find_by_escalation_id(escalation_id)
        if record is None:
            logger.warning("Agent action %s on unknown escalation %s", action.value, escalation_id)
            return None

        if action == AgentAction.SCHEDULE:
            await self._acknowledge_agent(channel, actor, "📞 Noted. Please schedule a follow-up call with this user.")
            return record

        target = EscalationStatus.TAKEN_OVER if action == AgentAction.TAKE_OVER else EscalationStatus.RESOLVED
        try:
            result = await self.store.transition(escalation_id, target, actor=actor)
        except InvalidTransition as e:
            logger.warning("Rejected agent action: %s", e)
            return self.store.find_by_escalation_id(escalation_id)

        if not result.changed:
            logger.info("Agent action %s on %s is a repeat; nothing to do", action.value, escalation_id)
            return result.escalation

        await self._refresh_notice(result.escalation)

        if action == AgentAction.TAKE_OVER:
            name = actor_name or await self.display_name(actor)
            intro = INTRODUCTIONS.get(result.escalation.language, INTRODUCTIONS["en"]).format(name=name)
            await self.dispatcher.send(
                result.escalation.user,
                intro,
                DeliveryOptions(
                    message_type=MessageType.ADMIN,
                    sender_display_name=name,
                    language=result.escalation.language,
                ),
            )
        return result.escalation

    async def display_name(self, actor: str) -> str:
        try:
            return await self.slack.resolve_display_name(actor)
        except IdentityLookupFailure as e:
            logger.warning("%s; using %r", e, DEFAULT_AGENT_NAME)
        except Exception as e:
            logger.warning("Agent lookup for %s failed: %s; using %r", actor, e, DEFAULT_AGENT_NAME)
        return DEFAULT_AGENT_NAME

    async def _refresh_notice(self, escalation: Escalation) -> None:
        if escalation.thread_ref is None:
            return
        text, blocks = render_notice(escalation)
        try:
            await asyncio.wait_for(self.slack.update_notice(escalation.thread_ref, text, blocks), timeout=self.timeout)
        except Exception as e:
            logger.error("Could not update notice for escalation %s: %s", escalation.escalation_id, e)

    async def _acknowledge_agent(self, channel: Optional[str], actor: str, text: str) -> None:
        if not channel or not actor:
            return
        try:
            await asyncio.wait_for(self.slack.post_ephemeral(channel, actor, text), timeout=self.timeout)
        except Exception as e:
            logger.warning("Ephemeral acknowledgement to %s failed: %s", actor, e)
