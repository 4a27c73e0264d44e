import hashlib
import hmac
import json
import time

import pytest
from fastapi.testclient import TestClient
from slack_sdk.signature import SignatureVerifier

from chatdesk.api.main import create_app
from chatdesk.api.services import build_services
from chatdesk.chatbot.responder import DemoResponder
from chatdesk.escalation.models import EscalationStatus
from chatdesk.utils.config_loader import AppConfig
from fakes import FakeSlackClient, FakeWhatsAppClient

PHONE = "15551234567"


@pytest.fixture
def services():
    svc = build_services(
        config=AppConfig(),
        slack_client=FakeSlackClient(users={"U_JANE": "Jane"}),
        responder=DemoResponder(),
    )
    svc.dispatcher.whatsapp = FakeWhatsAppClient()
    return svc


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


def wa_body(text=None, message_id="wamid.1", msg_type="text"):
    message = {"from": PHONE, "id": message_id, "type": msg_type}
    if text is not None:
        message["text"] = {"body": text}
    return {
        "object": "whatsapp_business_account",
        "entry": [{"changes": [{"value": {"contacts": [{"wa_id": PHONE, "profile": {"name": "Ana"}}], "messages": [message]}}]}],
    }


def slack_reply_event(thread_ts, text="We'll fix it", user="U_JANE", event_id="Ev1", ts="2000.000001"):
    return {
        "type": "event_callback",
        "event_id": event_id,
        "event": {"type": "message", "channel": "#support-escalations", "thread_ts": thread_ts, "ts": ts, "user": user, "text": text},
    }


def block_action(action_id, escalation_id, user="U_JANE"):
    payload = {
        "type": "block_actions",
        "user": {"id": user, "name": "Jane"},
        "channel": {"id": "C_ESC"},
        "actions": [{"action_id": action_id, "value": escalation_id}],
    }
    return {"payload": json.dumps(payload)}


# --- Slack ----------------------------------------------------------------


def test_url_verification_echoes_challenge_as_plain_text(client):
    r = client.post("/slack/events", json={"type": "url_verification", "challenge": "abc123"})

    assert r.status_code == 200
    assert r.text == "abc123"
    assert r.headers["content-type"].startswith("text/plain")


def test_bad_slack_signature_is_rejected(client, monkeypatch):
    monkeypatch.setenv("SLACK_SIGNING_SECRET", "shh")

    r = client.post("/slack/events", json={"type": "url_verification", "challenge": "x"})

    assert r.status_code == 401


def test_signed_slack_request_is_accepted(client, monkeypatch):
    monkeypatch.setenv("SLACK_SIGNING_SECRET", "shh")
    body = json.dumps({"type": "url_verification", "challenge": "signed"})
    ts = str(int(time.time()))
    signature = SignatureVerifier("shh").generate_signature(timestamp=ts, body=body)

    r = client.post(
        "/slack/events",
        content=body,
        headers={"X-Slack-Request-Timestamp": ts, "X-Slack-Signature": signature, "Content-Type": "application/json"},
    )

    assert r.status_code == 200
    assert r.text == "signed"


def test_full_round_trip_whatsapp_to_agent_and_back(client, services):
    wa = services.dispatcher.whatsapp
    slack = services.slack.client

    r = client.post("/whatsapp/webhook", json=wa_body("I want to speak to a human"))
    assert r.status_code == 200 and r.text == "OK"

    escalation = services.store.find_active_by_user(f"whatsapp_{PHONE}")
    assert escalation is not None
    assert slack.messages[0]["ts"] == escalation.thread_ref.ts
    assert "escalated to a human agent" in wa.sent[0]["body"]

    r = client.post("/slack/interactive", data=block_action("take_over", escalation.escalation_id))
    assert r.status_code == 200
    assert services.store.find_by_escalation_id(escalation.escalation_id).status == EscalationStatus.TAKEN_OVER
    assert "Jane" in wa.sent[-1]["body"]

    r = client.post("/slack/events", json=slack_reply_event(escalation.thread_ref.ts))
    assert r.status_code == 200
    assert wa.sent[-1] == {"to": PHONE, "body": "Jane: We'll fix it"}
    assert slack.reactions[-1]["timestamp"] == "2000.000001"

    r = client.post("/slack/interactive", data=block_action("mark_resolved", escalation.escalation_id))
    assert r.status_code == 200
    assert services.store.find_active_by_user(f"whatsapp_{PHONE}") is None


def test_duplicate_slack_event_is_relayed_once(client, services):
    client.post("/whatsapp/webhook", json=wa_body("human please"))
    escalation = services.store.find_active_by_user(f"whatsapp_{PHONE}")
    wa = services.dispatcher.whatsapp
    before = len(wa.sent)

    client.post("/slack/events", json=slack_reply_event(escalation.thread_ref.ts, event_id="EvDup"))
    r = client.post("/slack/events", json=slack_reply_event(escalation.thread_ref.ts, event_id="EvDup"))

    assert r.json().get("duplicate") is True
    assert len(wa.sent) == before + 1


def test_bot_and_top_level_messages_are_ignored(client, services):
    client.post("/whatsapp/webhook", json=wa_body("human please"))
    escalation = services.store.find_active_by_user(f"whatsapp_{PHONE}")
    before = len(services.dispatcher.whatsapp.sent)

    bot = slack_reply_event(escalation.thread_ref.ts, event_id="Ev2")
    bot["event"]["bot_id"] = "B1"
    top_level = slack_reply_event(None, event_id="Ev3")
    own = slack_reply_event(escalation.thread_ref.ts, user="U_BOT", event_id="Ev4")
    services.slack.bot_user_id = "U_BOT"

    for payload in (bot, top_level, own):
        r = client.post("/slack/events", json=payload)
        assert r.json().get("ignored") is True
    assert len(services.dispatcher.whatsapp.sent) == before


def test_reply_in_unrelated_thread_is_dropped(client, services):
    r = client.post("/slack/events", json=slack_reply_event("9999.000001", event_id="Ev5"))

    assert r.status_code == 200
    assert services.dispatcher.whatsapp.sent == []


def test_unknown_block_action_still_acknowledged(client):
    r = client.post("/slack/interactive", data=block_action("something_else", "e1"))

    assert r.status_code == 200


def test_resolve_button_twice_keeps_first_resolution(client, services):
    client.post("/whatsapp/webhook", json=wa_body("human please"))
    escalation = services.store.find_active_by_user(f"whatsapp_{PHONE}")

    client.post("/slack/interactive", data=block_action("mark_resolved", escalation.escalation_id))
    first = services.store.find_by_escalation_id(escalation.escalation_id)
    client.post("/slack/interactive", data=block_action("mark_resolved", escalation.escalation_id, user="U_OTHER"))
    second = services.store.find_by_escalation_id(escalation.escalation_id)

    assert first == second
    assert len(services.slack.client.updates) == 1


# --- WhatsApp -------------------------------------------------------------


def test_whatsapp_verification_handshake(client, monkeypatch):
    monkeypatch.setenv("WHATSAPP_VERIFY_TOKEN", "verify-me")

    ok = client.get("/whatsapp/webhook", params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "42"})
    bad = client.get("/whatsapp/webhook", params={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "42"})

    assert ok.status_code == 200 and ok.text == "42"
    assert bad.status_code == 403


def test_whatsapp_text_gets_bot_reply(client, services):
    r = client.post("/whatsapp/webhook", json=wa_body("hello"))

    assert r.status_code == 200
    sent = services.dispatcher.whatsapp.sent
    assert len(sent) == 1
    assert sent[0]["to"] == PHONE
    assert "Hello" in sent[0]["body"]


def test_whatsapp_non_text_message(client, services):
    client.post("/whatsapp/webhook", json=wa_body(msg_type="image"))

    assert services.dispatcher.whatsapp.sent[0]["body"] == "Sorry, I can only process text messages at the moment."


def test_whatsapp_redelivery_is_ignored(client, services):
    client.post("/whatsapp/webhook", json=wa_body("hello", message_id="wamid.same"))
    client.post("/whatsapp/webhook", json=wa_body("hello", message_id="wamid.same"))

    assert len(services.dispatcher.whatsapp.sent) == 1


def test_whatsapp_signature_check(client, services, monkeypatch):
    monkeypatch.setenv("WHATSAPP_APP_SECRET", "app-secret")
    body = json.dumps(wa_body("hello")).encode()
    good = "sha256=" + hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()

    rejected = client.post("/whatsapp/webhook", content=body, headers={"X-Hub-Signature-256": "sha256=bad"})
    accepted = client.post("/whatsapp/webhook", content=body, headers={"X-Hub-Signature-256": good})

    assert rejected.status_code == 401
    assert accepted.status_code == 200
    assert len(services.dispatcher.whatsapp.sent) == 1


def test_whatsapp_other_objects_are_ignored(client, services):
    r = client.post("/whatsapp/webhook", json={"object": "page", "entry": []})

    assert r.status_code == 200
    assert services.dispatcher.whatsapp.sent == []


def test_whatsapp_pipeline_error_still_acknowledged(client, services):
    class Broken(DemoResponder):
        async def generate_reply(self, message, context):
            raise RuntimeError("model exploded")

    services.pipeline.responder = Broken()

    r = client.post("/whatsapp/webhook", json=wa_body("what are your hours?"))

    assert r.status_code == 200 and r.text == "OK"
    assert services.dispatcher.whatsapp.sent[0]["body"] == "Sorry, something went wrong. Please try again."


def test_whatsapp_batch_handles_each_new_message_once(client, services):
    body = wa_body("hello", message_id="wamid.a")
    batch = body["entry"][0]["changes"][0]["value"]["messages"]
    batch.append({"from": PHONE, "id": "wamid.b", "type": "text", "text": {"body": "hello again"}})
    batch.append({"from": PHONE, "id": "wamid.a", "type": "text", "text": {"body": "hello"}})

    r = client.post("/whatsapp/webhook", json=body)

    assert r.status_code == 200
    assert len(services.dispatcher.whatsapp.sent) == 2
