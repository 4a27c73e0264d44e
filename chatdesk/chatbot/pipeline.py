"""
Chat pipeline - one user turn from normalized message to reply.

    InboundMessage -> language / sentiment -> decision
        REPLY_AUTOMATED  -> responder reply
        ESCALATE         -> notice posted to Slack, alert email, acknowledgement reply
        FORWARD_TO_AGENT -> message copied into the escalation thread, acknowledgement reply
    -> chat log -> ChatReply

Only responder failures on the automated path escape `handle`; escalation
side effects are contained and logged.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from chatdesk.escalation.decision import DecisionAction, EscalationDecisionEngine
from chatdesk.escalation.exceptions import NotificationPublishFailure
from chatdesk.escalation.models import InboundMessage, Sentiment, utcnow
from chatdesk.escalation.notifier import AgentNotifier

logger = logging.getLogger(__name__)

ESCALATION_ACK = {
    "en": "I understand your situation. I'm connecting you with a human agent who can better assist you. Please wait a moment.",
    "es": "Entiendo tu situación. Te estoy conectando con un agente humano que podrá ayudarte mejor. Por favor, espera un momento.",
}
FORWARDED_ACK = {
    "en": "Your message has been sent to the support agent. They will respond shortly.",
    "es": "Tu mensaje ha sido enviado al agente de soporte. Te responderá en breve.",
}
FORWARD_FAILED = {
    "en": "You are connected to a human agent, but there was an issue sending your message. Please try again.",
    "es": "Estás conectado con un agente humano, pero hubo un problema enviando tu mensaje. Por favor, intenta de nuevo.",
}
VOICE_ACK = {
    "en": "Voice message received",
    "es": "Mensaje de voz recibido",
}
RATE_LIMITED = {
    "en": "You're sending messages too quickly. Please wait a moment and try again.",
    "es": "Estás enviando mensajes demasiado rápido. Espera un momento e inténtalo de nuevo.",
}


def _pick(table: Dict[str, str], language: Optional[str]) -> str:
    return table.get(language or "en", table["en"])


@dataclass
class ChatReply:
    message: str
    sentiment: Sentiment
    language: str
    escalated: bool
    timestamp: str
    action: DecisionAction = DecisionAction.REPLY_AUTOMATED
    escalation_id: Optional[str] = None

    def to_event(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "sentiment": self.sentiment.value,
            "language": self.language,
            "escalated": self.escalated,
            "timestamp": self.timestamp,
        }


class ChatPipeline:
    def __init__(
        self,
        responder,
        decision_engine: EscalationDecisionEngine,
        notifier: AgentNotifier,
        chat_store,
        rate_limiter=None,
        email_notifier=None,
        email_timeout: float = 10.0,
    ):
        self.responder = responder
        self.decision_engine = decision_engine
        self.notifier = notifier
        self.chat_store = chat_store
        self.rate_limiter = rate_limiter
        self.email_notifier = email_notifier
        self.email_timeout = email_timeout

    async def handle(self, message: InboundMessage) -> ChatReply:
        user_id = message.user.user_id

        if message.is_voice:
            # Transcription is out of scope: store the clip and acknowledge it.
            if message.voice_data:
                self.chat_store.add_voice_message(user_id, message.voice_data)
            message.text = ""

        if not message.language:
            message.language = await self._detect_language(message.text)
        language = message.language

        if self.rate_limiter is not None and not self.rate_limiter.allow(user_id):
            return ChatReply(
                message=_pick(RATE_LIMITED, language),
                sentiment=Sentiment.NEUTRAL,
                language=language,
                escalated=False,
                timestamp=utcnow().isoformat(),
            )

        sentiment = Sentiment.NEUTRAL if message.is_voice else await self._analyze_sentiment(message.text)
        profile = self.chat_store.get_user_profile(user_id)

        decision = self.decision_engine.decide(message, sentiment)
        escalated = False
        escalation_id = None

        if decision.action == DecisionAction.FORWARD_TO_AGENT:
            escalation_id = decision.escalation.escalation_id
            if message.is_voice:
                text = _pick(VOICE_ACK, language)
            else:
                forwarded = await self.notifier.forward_user_message(decision.escalation, message.text)
                text = _pick(FORWARDED_ACK if forwarded else FORWARD_FAILED, language)

        elif decision.action == DecisionAction.ESCALATE:
            escalated = True
            text = _pick(ESCALATION_ACK, language)
            logger.info("Escalating %s to a human agent (%s)", user_id, decision.reason)
            notice_posted = True
            try:
                escalation_id = await self.notifier.publish(message.user, message.text, language)
            except NotificationPublishFailure as e:
                logger.error("Escalation notice failed: %s", e)
                self._record_failed_escalation(message, sentiment, e)
                notice_posted = False
            await self._email_escalation(message, sentiment, profile, escalation_id, notice_posted)

        elif message.is_voice:
            text = _pick(VOICE_ACK, language)

        else:
            text = await self.responder.generate_reply(
                message.text,
                {"language": language, "sentiment": sentiment.value, "user_profile": profile},
            )

        reply = ChatReply(
            message=text,
            sentiment=sentiment,
            language=language,
            escalated=escalated,
            timestamp=utcnow().isoformat(),
            action=decision.action,
            escalation_id=escalation_id,
        )
        self._log_chat(message, reply)
        return reply

    async def _detect_language(self, text: str) -> str:
        if not text:
            return "en"
        try:
            return await self.responder.detect_language(text)
        except Exception as e:
            logger.warning("Language detection failed: %s", e)
            return "en"

    async def _analyze_sentiment(self, text: str) -> Sentiment:
        if not text:
            return Sentiment.NEUTRAL
        try:
            return await self.responder.analyze_sentiment(text)
        except Exception as e:
            logger.warning("Sentiment analysis failed: %s", e)
            return Sentiment.NEUTRAL

    async def _email_escalation(self, message: InboundMessage, sentiment: Sentiment, profile, escalation_id, notice_posted: bool) -> None:
        """Best-effort alert email; never delays the acknowledgement past `email_timeout`."""
        if self.email_notifier is None:
            return
        alert = {
            "user_id": message.user.user_id,
            "channel": message.user.channel.value,
            "profile_name": message.channel_metadata.get("profile_name") or (profile or {}).get("name"),
            "message": message.text,
            "sentiment": sentiment.value,
            "language": message.language,
            "escalation_id": escalation_id,
            "notice_posted": notice_posted,
            "timestamp": utcnow().isoformat(),
        }
        try:
            await asyncio.wait_for(self.email_notifier.send_escalation_alert(alert), timeout=self.email_timeout)
        except asyncio.TimeoutError:
            logger.error("Escalation email for %s timed out", message.user.user_id)
        except Exception as e:
            logger.error("Escalation email for %s failed: %s", message.user.user_id, e)

    def _record_failed_escalation(self, message: InboundMessage, sentiment: Sentiment, error: NotificationPublishFailure):
        try:
            self.chat_store.add_failed_escalation(
                {
                    "user_id": message.user.user_id,
                    "user_channel": message.user.channel.value,
                    "message": message.text,
                    "language": message.language,
                    "sentiment": sentiment.value,
                    "reason": error.reason,
                }
            )
        except Exception as e:
            logger.error("Could not record failed escalation for %s: %s", message.user.user_id, e)

    def _log_chat(self, message: InboundMessage, reply: ChatReply) -> None:
        try:
            self.chat_store.add_chat(
                {
                    "user_id": message.user.user_id,
                    "channel": message.user.channel.value,
                    "user_message": _pick(VOICE_ACK, reply.language) if message.is_voice else message.text,
                    "bot_response": reply.message,
                    "sentiment": reply.sentiment.value,
                    "language": reply.language,
                    "escalated": reply.escalated,
                    "action": reply.action.value,
                    "timestamp": reply.timestamp,
                    "metadata": dict(message.channel_metadata),
                }
            )
            self.chat_store.touch_user(message.user.user_id)
        except Exception as e:
            logger.error("Failed to persist chat for %s: %s", message.user.user_id, e)
