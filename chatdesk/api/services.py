"""
Service wiring.

All collaborators are built in ONE place so the API, tests and scripts share
the same graph. Real Slack/WhatsApp/Gemini clients are used when the
environment provides credentials; tests pass fakes in.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from chatdesk.api.dependencies import StaticTokenVerifier
from chatdesk.chatbot.pipeline import ChatPipeline
from chatdesk.chatbot.responder import build_responder
from chatdesk.database.chat_store import ChatStore
from chatdesk.error_handler import ErrorHandler
from chatdesk.escalation.decision import EscalationDecisionEngine
from chatdesk.escalation.notifier import AgentNotifier
from chatdesk.escalation.store import EscalationStore
from chatdesk.integrations.email.escalation_email import EscalationEmailNotifier
from chatdesk.integrations.slack.slack_chat_service import SlackChatService
from chatdesk.integrations.whatsapp.whatsapp_client import WhatsAppClient
from chatdesk.relay.dispatcher import ChannelDispatcher
from chatdesk.relay.inbound import InboundRelay
from chatdesk.relay.live import LiveConnectionManager
from chatdesk.utils.config_loader import AppConfig, load_app_config
from chatdesk.utils.helpers import RecentIdCache
from chatdesk.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: AppConfig
    store: EscalationStore
    chat_store: ChatStore
    live: LiveConnectionManager
    slack: SlackChatService
    whatsapp: WhatsAppClient
    dispatcher: ChannelDispatcher
    notifier: AgentNotifier
    inbound_relay: InboundRelay
    pipeline: ChatPipeline
    token_verifier: StaticTokenVerifier
    error_handler: ErrorHandler
    slack_event_ids: RecentIdCache
    whatsapp_message_ids: RecentIdCache


def build_services(
    config: Optional[AppConfig] = None,
    slack_client=None,
    whatsapp_http=None,
    responder=None,
    token_verifier=None,
    email_notifier=None,
) -> Services:
    config = config or load_app_config()

    store = EscalationStore(lock_stripes=config.escalation.lock_stripes)
    chat_store = ChatStore()
    live = LiveConnectionManager(send_timeout=config.live.send_timeout)

    slack = SlackChatService(
        token=os.getenv("SLACK_BOT_TOKEN", ""),
        channel=os.getenv("SLACK_ESCALATION_CHANNEL", "") or config.slack.escalation_channel,
        client=slack_client,
        bot_user_id=os.getenv("SLACK_BOT_USER_ID", ""),
    )
    whatsapp = WhatsAppClient(
        access_token=os.getenv("WHATSAPP_ACCESS_TOKEN", ""),
        phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID", ""),
        api_version=config.whatsapp.api_version,
        timeout=config.whatsapp.send_timeout,
        http_client=whatsapp_http,
    )

    dispatcher = ChannelDispatcher(
        live_connections=live,
        whatsapp_client=whatsapp,
        timeout=max(config.whatsapp.send_timeout, config.live.send_timeout),
    )
    notifier = AgentNotifier(store, slack, dispatcher, timeout=config.slack.notice_timeout)
    inbound_relay = InboundRelay(
        store,
        notifier,
        dispatcher,
        slack_service=slack,
        ack_timeout=config.slack.notice_timeout,
        ack_reaction=config.slack.ack_reaction,
    )

    rate_limiter = None
    if config.rate_limit.enabled:
        rate_limiter = RateLimiter(config.rate_limit.messages_per_minute, config.rate_limit.messages_per_hour)

    pipeline = ChatPipeline(
        responder=responder or build_responder(),
        decision_engine=EscalationDecisionEngine(store, keywords=config.escalation.keywords),
        notifier=notifier,
        chat_store=chat_store,
        rate_limiter=rate_limiter,
        email_notifier=email_notifier or EscalationEmailNotifier.from_env(timeout=config.email.send_timeout),
        email_timeout=config.email.send_timeout,
    )

    logger.info("Services built (escalation channel=%s)", slack.channel)
    return Services(
        config=config,
        store=store,
        chat_store=chat_store,
        live=live,
        slack=slack,
        whatsapp=whatsapp,
        dispatcher=dispatcher,
        notifier=notifier,
        inbound_relay=inbound_relay,
        pipeline=pipeline,
        token_verifier=token_verifier or StaticTokenVerifier.from_env(),
        error_handler=ErrorHandler(),
        slack_event_ids=RecentIdCache(config.dedupe.max_ids),
        whatsapp_message_ids=RecentIdCache(config.dedupe.max_ids),
    )
