"""Escalation error taxonomy."""

from typing import Optional


class EscalationError(Exception):
    """Base class for escalation routing errors."""


class DuplicateActiveEscalation(EscalationError):
    def __init__(self, existing):
        self.existing = existing
        super().__init__(f"User {existing.user_id} already has open escalation {existing.escalation_id}")


class EscalationNotFound(EscalationError):
    def __init__(self, escalation_id: str):
        self.escalation_id = escalation_id
        super().__init__(f"Escalation not found: {escalation_id}")


class InvalidTransition(EscalationError):
    def __init__(self, escalation_id: str, current, requested):
        self.escalation_id = escalation_id
        self.current = current
        self.requested = requested
        super().__init__(f"Escalation {escalation_id}: cannot move from {current.value} to {requested.value}")


class NotificationPublishFailure(EscalationError):
    def __init__(self, escalation_id: str, reason: str, user_id: Optional[str] = None):
        self.escalation_id = escalation_id
        self.reason = reason
        self.user_id = user_id
        super().__init__(f"Failed to publish escalation {escalation_id}: {reason}")


class DeliveryFailure(EscalationError):
    def __init__(self, channel: str, recipient: str, reason: str):
        self.channel = channel
        self.recipient = recipient
        self.reason = reason
        super().__init__(f"Delivery via {channel} to {recipient} failed: {reason}")


class IdentityLookupFailure(EscalationError):
    def __init__(self, agent_id: str, reason: str):
        self.agent_id = agent_id
        self.reason = reason
        super().__init__(f"Could not resolve agent {agent_id}: {reason}")
