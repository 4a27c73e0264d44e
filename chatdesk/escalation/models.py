from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class UserChannel(str, Enum):
    WEB = "web"
    MOBILE = "mobile"
    WHATSAPP = "whatsapp"
    WORKSPACE = "workspace"


class EscalationStatus(str, Enum):
    ACTIVE = "active"
    TAKEN_OVER = "taken_over"
    RESOLVED = "resolved"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class MessageType(str, Enum):
    BOT = "bot"
    ADMIN = "admin"


# Allowed status graph. Resolved is terminal.
ALLOWED_TRANSITIONS = {
    EscalationStatus.ACTIVE: {EscalationStatus.TAKEN_OVER, EscalationStatus.RESOLVED},
    EscalationStatus.TAKEN_OVER: {EscalationStatus.RESOLVED},
    EscalationStatus.RESOLVED: set(),
}

# Prefixes used by the canonical user id ("whatsapp_15551234567").
_PREFIXES = {
    UserChannel.WEB: "web_",
    UserChannel.MOBILE: "mobile_",
    UserChannel.WHATSAPP: "whatsapp_",
    UserChannel.WORKSPACE: "slack_",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Addressing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChannelAddress:
    """A user on one channel. Built once at the gateway and carried through."""

    channel: UserChannel
    raw_id: str

    @property
    def user_id(self) -> str:
        return f"{_PREFIXES[self.channel]}{self.raw_id}"

    @classmethod
    def parse(cls, user_id: str) -> "ChannelAddress":
        """Inverse of `user_id`. Unprefixed ids are treated as web users."""
        for channel, prefix in _PREFIXES.items():
            if user_id.startswith(prefix):
                return cls(channel=channel, raw_id=user_id[len(prefix):])
        return cls(channel=UserChannel.WEB, raw_id=user_id)

    def __str__(self) -> str:
        return self.user_id


@dataclass(frozen=True)
class ThreadRef:
    """Slack channel + root message ts of an escalation notice."""

    channel: str
    ts: str


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Escalation:
    escalation_id: str
    user: ChannelAddress
    status: EscalationStatus = EscalationStatus.ACTIVE
    thread_ref: Optional[ThreadRef] = None
    agent: Optional[str] = None
    original_message: str = ""
    language: str = "en"
    created_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def user_id(self) -> str:
        return self.user.user_id

    @property
    def user_channel(self) -> UserChannel:
        return self.user.channel

    @property
    def is_open(self) -> bool:
        return self.status != EscalationStatus.RESOLVED

    def evolve(self, **changes) -> "Escalation":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "escalation_id": self.escalation_id,
            "user_id": self.user_id,
            "user_channel": self.user_channel.value,
            "status": self.status.value,
            "thread_ref": {"channel": self.thread_ref.channel, "ts": self.thread_ref.ts} if self.thread_ref else None,
            "agent": self.agent,
            "original_message": self.original_message,
            "language": self.language,
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass
class InboundMessage:
    """Normalized message handed from a gateway to the chat pipeline."""

    user: ChannelAddress
    text: str
    language: Optional[str] = None
    channel_metadata: Dict[str, Any] = field(default_factory=dict)
    is_voice: bool = False
    voice_data: Optional[Dict[str, Any]] = None


@dataclass
class DeliveryOptions:
    sentiment: Optional[Sentiment] = None
    escalated: bool = False
    sender_display_name: Optional[str] = None
    message_type: MessageType = MessageType.BOT
    language: Optional[str] = None


@dataclass
class OutboundMessage:
    recipient: ChannelAddress
    text: str
    options: DeliveryOptions = field(default_factory=DeliveryOptions)
    timestamp: datetime = field(default_factory=utcnow)
