"""Pytest fixtures for the escalation and relay tests."""

import pytest

from chatdesk.escalation.models import ChannelAddress, UserChannel
from chatdesk.escalation.notifier import AgentNotifier
from chatdesk.escalation.store import EscalationStore
from chatdesk.integrations.slack.slack_chat_service import SlackChatService
from fakes import FakeSlackClient, RecordingDispatcher


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "SLACK_SIGNING_SECRET",
        "SLACK_AGENT_MAP",
        "SLACK_ESCALATION_CHANNEL",
        "SLACK_BOT_USER_ID",
        "DEMO_MODE",
        "WHATSAPP_APP_SECRET",
        "WHATSAPP_VERIFY_TOKEN",
        "API_KEYS",
        "SESSION_TOKENS",
        "GEMINI_API_KEY",
        "CHATDESK_CONFIG",
        "SENDGRID_API_KEY",
        "ESCALATION_EMAIL_TO",
        "ESCALATION_EMAIL_FROM",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def store():
    return EscalationStore(lock_stripes=8)


@pytest.fixture
def slack_client():
    return FakeSlackClient(users={"U_JANE": "Jane"})


@pytest.fixture
def slack_service(slack_client):
    return SlackChatService(token="x", channel="C_ESC", client=slack_client, bot_user_id="U_BOT")


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def notifier(store, slack_service, dispatcher):
    return AgentNotifier(store, slack_service, dispatcher, timeout=1.0)


@pytest.fixture
def whatsapp_user():
    return ChannelAddress(UserChannel.WHATSAPP, "15551234567")


@pytest.fixture
def web_user():
    return ChannelAddress(UserChannel.WEB, "abc123")
