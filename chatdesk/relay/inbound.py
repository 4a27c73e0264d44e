"""Agent replies typed in a Slack escalation thread, relayed to the user."""

import asyncio
import logging
from typing import Optional

from chatdesk.escalation.models import DeliveryOptions, EscalationStatus, MessageType, ThreadRef

logger = logging.getLogger(__name__)


class InboundRelay:
    def __init__(self, store, notifier, dispatcher, slack_service=None, ack_timeout: float = 5.0, ack_reaction: str = "white_check_mark"):
        self.store = store
        self.notifier = notifier
        self.dispatcher = dispatcher
        self.slack = slack_service
        self.ack_timeout = ack_timeout
        self.ack_reaction = ack_reaction

    async def on_agent_reply(
        self,
        thread_ref: ThreadRef,
        text: str,
        agent_identity: str,
        message_ts: Optional[str] = None,
    ) -> bool:
        """Relay one agent reply. Returns True when the user was sent the message."""
        escalation = self.store.find_by_thread(thread_ref)
        if escalation is None:
            logger.debug("Thread %s/%s is not an escalation; ignoring reply", thread_ref.channel, thread_ref.ts)
            return False
        if escalation.status == EscalationStatus.RESOLVED:
            logger.info("Escalation %s is resolved; not relaying agent reply", escalation.escalation_id)
            return False

        name = await self.notifier.display_name(agent_identity)
        delivered = await self.dispatcher.send(
            escalation.user,
            f"{name}: {text}",
            DeliveryOptions(
                message_type=MessageType.ADMIN,
                sender_display_name=name,
                language=escalation.language,
            ),
        )

        if delivered and message_ts:
            await self._acknowledge(thread_ref.channel, message_ts)
        return delivered

    async def _acknowledge(self, channel: str, ts: str) -> None:
        if self.slack is None:
            return
        try:
            await asyncio.wait_for(self.slack.add_reaction(channel, ts, self.ack_reaction), timeout=self.ack_timeout)
        except Exception as e:
            logger.warning("Could not add delivery reaction to %s/%s: %s", channel, ts, e)
