import asyncio

import pytest

from chatdesk.chatbot.pipeline import ChatPipeline
from chatdesk.chatbot.responder import DemoResponder
from chatdesk.database.chat_store import ChatStore
from chatdesk.escalation.decision import DecisionAction, EscalationDecisionEngine
from chatdesk.escalation.models import EscalationStatus, InboundMessage, Sentiment
from chatdesk.escalation.notifier import AgentNotifier
from chatdesk.integrations.slack.slack_chat_service import SlackChatService
from chatdesk.utils.rate_limiter import RateLimiter
from fakes import FakeSlackClient


class BrokenResponder(DemoResponder):
    async def generate_reply(self, message, context):
        raise RuntimeError("model unavailable")


class RecordingEmail:
    def __init__(self, error=None, delay=0.0):
        self.alerts = []
        self.error = error
        self.delay = delay

    async def send_escalation_alert(self, alert):
        self.alerts.append(alert)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return True


def _pipeline(store, notifier, responder=None, rate_limiter=None, email_notifier=None, email_timeout=1.0):
    chat_store = ChatStore()
    pipeline = ChatPipeline(
        responder=responder or DemoResponder(),
        decision_engine=EscalationDecisionEngine(store),
        notifier=notifier,
        chat_store=chat_store,
        rate_limiter=rate_limiter,
        email_notifier=email_notifier,
        email_timeout=email_timeout,
    )
    return pipeline, chat_store


@pytest.mark.asyncio
async def test_automated_reply_is_logged(store, notifier, web_user):
    pipeline, chat_store = _pipeline(store, notifier)

    reply = await pipeline.handle(InboundMessage(user=web_user, text="hello there"))

    assert reply.action == DecisionAction.REPLY_AUTOMATED
    assert reply.escalated is False
    assert reply.message.startswith("Hello")
    history = chat_store.get_chat_history(web_user.user_id)
    assert len(history) == 1
    assert history[0]["bot_response"] == reply.message
    assert chat_store.get_user_profile(web_user.user_id)["message_count"] == 1


@pytest.mark.asyncio
async def test_escalation_request_posts_notice_and_acknowledges(store, notifier, slack_client, whatsapp_user):
    pipeline, _ = _pipeline(store, notifier)

    reply = await pipeline.handle(InboundMessage(user=whatsapp_user, text="I want to speak to a human"))

    assert reply.escalated is True
    assert reply.action == DecisionAction.ESCALATE
    assert "human agent" in reply.message
    assert len(slack_client.messages) == 1
    assert store.find_active_by_user(whatsapp_user.user_id).escalation_id == reply.escalation_id


@pytest.mark.asyncio
async def test_follow_up_is_forwarded_to_thread(store, notifier, slack_client, whatsapp_user):
    pipeline, _ = _pipeline(store, notifier)
    first = await pipeline.handle(InboundMessage(user=whatsapp_user, text="I want to speak to a human"))

    reply = await pipeline.handle(InboundMessage(user=whatsapp_user, text="my order 42 is missing"))

    assert reply.action == DecisionAction.FORWARD_TO_AGENT
    assert reply.escalation_id == first.escalation_id
    assert reply.escalated is False
    assert "sent to the support agent" in reply.message
    assert slack_client.messages[-1]["thread_ts"] == slack_client.messages[0]["ts"]
    assert "my order 42 is missing" in slack_client.messages[-1]["text"]


@pytest.mark.asyncio
async def test_spanish_escalation_acknowledgement(store, notifier, whatsapp_user):
    pipeline, _ = _pipeline(store, notifier)

    reply = await pipeline.handle(InboundMessage(user=whatsapp_user, text="Hola, necesito hablar con alguien"))

    assert reply.language == "es"
    assert reply.escalated is True
    assert reply.message.startswith("Entiendo")


@pytest.mark.asyncio
async def test_failed_notice_still_acknowledges_and_is_recorded(store, dispatcher, web_user):
    slack = SlackChatService(token="x", channel="C_ESC", client=FakeSlackClient(fail_post=True))
    notifier = AgentNotifier(store, slack, dispatcher, timeout=1.0)
    pipeline, chat_store = _pipeline(store, notifier)

    reply = await pipeline.handle(InboundMessage(user=web_user, text="get me a human"))

    assert reply.escalated is True
    assert reply.escalation_id is None
    assert store.find_active_by_user(web_user.user_id) is None
    failures = chat_store.failed_escalations()
    assert len(failures) == 1
    assert failures[0]["user_id"] == web_user.user_id


@pytest.mark.asyncio
async def test_responder_failure_propagates_on_automated_path(store, notifier, web_user):
    pipeline, _ = _pipeline(store, notifier, responder=BrokenResponder())

    with pytest.raises(RuntimeError):
        await pipeline.handle(InboundMessage(user=web_user, text="what are your opening hours?"))


@pytest.mark.asyncio
async def test_responder_not_called_while_agent_owns_conversation(store, notifier, whatsapp_user):
    pipeline, _ = _pipeline(store, notifier, responder=BrokenResponder())
    await notifier.publish(whatsapp_user, "human")

    reply = await pipeline.handle(InboundMessage(user=whatsapp_user, text="any news?"))

    assert reply.action == DecisionAction.FORWARD_TO_AGENT


@pytest.mark.asyncio
async def test_voice_message_is_stored_and_acknowledged(store, notifier, web_user):
    pipeline, chat_store = _pipeline(store, notifier)

    reply = await pipeline.handle(
        InboundMessage(
            user=web_user,
            text="",
            is_voice=True,
            voice_data={"audioData": "b64...", "duration": 3, "mimeType": "audio/webm"},
        )
    )

    assert reply.message == "Voice message received"
    assert reply.sentiment == Sentiment.NEUTRAL
    assert chat_store.voice_messages(web_user.user_id)[0]["duration"] == 3


@pytest.mark.asyncio
async def test_rate_limited_user_gets_notice(store, notifier, web_user):
    limiter = RateLimiter(messages_per_minute=1, clock=lambda: 100.0)
    pipeline, _ = _pipeline(store, notifier, rate_limiter=limiter)

    await pipeline.handle(InboundMessage(user=web_user, text="hello"))
    reply = await pipeline.handle(InboundMessage(user=web_user, text="I want a human"))

    assert "too quickly" in reply.message
    assert store.list_open() == []


@pytest.mark.asyncio
async def test_resolution_returns_user_to_bot(store, notifier, whatsapp_user):
    pipeline, _ = _pipeline(store, notifier)
    first = await pipeline.handle(InboundMessage(user=whatsapp_user, text="human please"))
    await store.transition(first.escalation_id, EscalationStatus.RESOLVED)

    reply = await pipeline.handle(InboundMessage(user=whatsapp_user, text="hello again"))

    assert reply.action == DecisionAction.REPLY_AUTOMATED


@pytest.mark.asyncio
async def test_follow_up_during_notice_post_waits_for_thread(store, dispatcher, whatsapp_user):
    slack_client = FakeSlackClient(post_delay=0.05)
    slack = SlackChatService(token="x", channel="C_ESC", client=slack_client)
    notifier = AgentNotifier(store, slack, dispatcher, timeout=1.0)
    pipeline, _ = _pipeline(store, notifier)

    first, second = await asyncio.gather(
        pipeline.handle(InboundMessage(user=whatsapp_user, text="I want a human")),
        pipeline.handle(InboundMessage(user=whatsapp_user, text="please, an agent now, my order is lost")),
    )

    assert first.action == DecisionAction.ESCALATE
    assert second.action == DecisionAction.FORWARD_TO_AGENT
    assert second.escalation_id == first.escalation_id
    assert "sent to the support agent" in second.message
    notice, forwarded = slack_client.messages
    assert forwarded["thread_ts"] == notice["ts"]
    assert "my order is lost" in forwarded["text"]


@pytest.mark.asyncio
async def test_escalation_sends_alert_email(store, notifier, whatsapp_user):
    email = RecordingEmail()
    pipeline, _ = _pipeline(store, notifier, email_notifier=email)

    reply = await pipeline.handle(
        InboundMessage(user=whatsapp_user, text="I want a human", channel_metadata={"profile_name": "Ana"})
    )

    assert len(email.alerts) == 1
    alert = email.alerts[0]
    assert alert["user_id"] == whatsapp_user.user_id
    assert alert["escalation_id"] == reply.escalation_id
    assert alert["profile_name"] == "Ana"
    assert alert["notice_posted"] is True


@pytest.mark.asyncio
async def test_email_failure_does_not_block_acknowledgement(store, notifier, web_user):
    email = RecordingEmail(error=RuntimeError("smtp down"))
    pipeline, _ = _pipeline(store, notifier, email_notifier=email)

    reply = await pipeline.handle(InboundMessage(user=web_user, text="get me a human"))

    assert reply.escalated is True
    assert "human agent" in reply.message
    assert store.find_active_by_user(web_user.user_id) is not None


@pytest.mark.asyncio
async def test_slow_email_is_cut_off(store, notifier, web_user):
    email = RecordingEmail(delay=1.0)
    pipeline, _ = _pipeline(store, notifier, email_notifier=email, email_timeout=0.05)

    reply = await pipeline.handle(InboundMessage(user=web_user, text="get me a human"))

    assert reply.escalated is True
    assert len(email.alerts) == 1


@pytest.mark.asyncio
async def test_alert_email_notes_failed_notice(store, dispatcher, web_user):
    slack = SlackChatService(token="x", channel="C_ESC", client=FakeSlackClient(fail_post=True))
    email = RecordingEmail()
    pipeline, _ = _pipeline(store, AgentNotifier(store, slack, dispatcher, timeout=1.0), email_notifier=email)

    await pipeline.handle(InboundMessage(user=web_user, text="get me a human"))

    assert email.alerts[0]["notice_posted"] is False
    assert email.alerts[0]["escalation_id"] is None
