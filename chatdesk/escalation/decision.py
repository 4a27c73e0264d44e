"""
Escalation decision engine.

Decides, per inbound user message, whether the bot answers, a new human
handoff starts, or the message belongs to a handoff already in progress.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

from chatdesk.escalation.models import Escalation, InboundMessage, Sentiment
from chatdesk.escalation.store import EscalationStore

logger = logging.getLogger(__name__)


DEFAULT_ESCALATION_KEYWORDS: Dict[str, List[str]] = {
    "en": [
        "agent", "human", "representative", "manager", "supervisor",
        "help me", "speak to someone", "talk to person", "real person",
        "customer service", "support", "complaint", "frustrated",
        "angry", "upset", "disappointed", "terrible", "awful",
    ],
    "es": [
        "agente", "humano", "representante", "gerente", "supervisor",
        "ayúdame", "hablar con alguien", "persona real", "atención al cliente",
        "soporte", "queja", "frustrado", "enojado", "molesto",
        "decepcionado", "terrible", "horrible",
    ],
}


class DecisionAction(str, Enum):
    REPLY_AUTOMATED = "reply_automated"
    ESCALATE = "escalate"
    FORWARD_TO_AGENT = "forward_to_agent"


@dataclass(frozen=True)
class Decision:
    action: DecisionAction
    escalation: Optional[Escalation] = None
    reason: Optional[str] = None


def contains_escalation_keyword(
    text: str, language: Optional[str] = "en", keywords: Optional[Dict[str, Iterable[str]]] = None
) -> bool:
    """Case-insensitive substring match against the language's keyword list."""
    if not text:
        return False
    table = keywords or DEFAULT_ESCALATION_KEYWORDS
    words = table.get(language or "en") or table.get("en") or []
    lowered = text.lower()
    return any(k.lower() in lowered for k in words)


class EscalationDecisionEngine:
    def __init__(self, store: EscalationStore, keywords: Optional[Dict[str, List[str]]] = None):
        self.store = store
        self.keywords = keywords or DEFAULT_ESCALATION_KEYWORDS

    def decide(self, message: InboundMessage, sentiment) -> Decision:
        user_id = message.user.user_id

        # A human owns the conversation until it is resolved.
        current = self.store.find_active_by_user(user_id)
        if current is not None:
            return Decision(DecisionAction.FORWARD_TO_AGENT, escalation=current, reason="active_escalation")

        keyword_hit = contains_escalation_keyword(message.text, message.language, self.keywords)
        negative = _as_sentiment(sentiment) == Sentiment.NEGATIVE

        logger.info(
            "Escalation check: user=%s keyword=%s negative=%s text=%r",
            user_id,
            keyword_hit,
            negative,
            (message.text or "")[:100],
        )

        if keyword_hit or negative:
            return Decision(DecisionAction.ESCALATE, reason="keyword" if keyword_hit else "negative_sentiment")
        return Decision(DecisionAction.REPLY_AUTOMATED)


def _as_sentiment(value) -> Optional[Sentiment]:
    if isinstance(value, Sentiment):
        return value
    try:
        return Sentiment(str(value).lower())
    except ValueError:
        return None
