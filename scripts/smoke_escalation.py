#!/usr/bin/env python3
"""
Smoke test for the escalation round trip against a running API.

Start the API first (in another terminal), with SLACK_SIGNING_SECRET and
WHATSAPP_APP_SECRET unset so the webhooks accept unsigned requests:
  uvicorn chatdesk.api.main:app --host 127.0.0.1 --port 8000

Then run this script:
  python scripts/smoke_escalation.py --api-key <one of API_KEYS>
  python scripts/smoke_escalation.py --base-url http://127.0.0.1:8000 --phone 15551234567

Steps:
  1) WhatsApp message asking for a human  -> escalation is created
  2) GET the user's active escalation
  3) Slack thread reply from an agent      -> relayed back to the user
  4) Resolve through the REST API
"""

from __future__ import annotations

import argparse
import sys
from typing import Any, Dict

import httpx


def whatsapp_payload(phone: str, text: str, message_id: str) -> Dict[str, Any]:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "changes": [
                    {
                        "value": {
                            "contacts": [{"wa_id": phone, "profile": {"name": "Smoke Test"}}],
                            "messages": [
                                {"from": phone, "id": message_id, "type": "text", "text": {"body": text}}
                            ],
                        }
                    }
                ]
            }
        ],
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Escalation round-trip smoke test")
    parser.add_argument("--base-url", default="http://localhost:8000", help="API base URL")
    parser.add_argument("--phone", default="15551234567", help="WhatsApp sender phone number")
    parser.add_argument("--api-key", default="", help="X-API-KEY for the REST endpoints")
    parser.add_argument("--agent", default="U0SMOKE", help="Slack user id of the replying agent")
    args = parser.parse_args()
    base = args.base_url.rstrip("/")
    user_id = f"whatsapp_{args.phone}"
    headers = {"X-API-KEY": args.api_key}

    print("=== Escalation smoke test ===\n")
    with httpx.Client(timeout=30) as client:
        print("1) POST /whatsapp/webhook (asks for a human)")
        try:
            r = client.post(f"{base}/whatsapp/webhook", json=whatsapp_payload(args.phone, "I want to speak to a human", "wamid.smoke.1"))
            r.raise_for_status()
        except httpx.HTTPError as e:
            print(f"   FAIL: {e}")
            print("   → Start the API first: uvicorn chatdesk.api.main:app --host 127.0.0.1 --port 8000")
            return 1
        print(f"   {r.status_code} {r.text}\n")

        print(f"2) GET /api/escalations/user/{user_id}")
        r = client.get(f"{base}/api/escalations/user/{user_id}", headers=headers)
        if r.status_code != 200:
            print(f"   FAIL: {r.status_code} {r.text}")
            return 1
        escalation = r.json().get("escalation")
        if not escalation:
            print("   FAIL: no active escalation (is Slack configured? the notice may have failed)")
            return 1
        print(f"   escalation_id: {escalation['escalation_id']} status: {escalation['status']}\n")

        thread = escalation.get("thread_ref") or {}
        print("3) POST /slack/events (agent reply in the notice thread)")
        event = {
            "type": "event_callback",
            "event_id": "EvSMOKE1",
            "event": {
                "type": "message",
                "channel": thread.get("channel", ""),
                "thread_ts": thread.get("ts", ""),
                "ts": "9999999999.000100",
                "user": args.agent,
                "text": "We'll fix it",
            },
        }
        r = client.post(f"{base}/slack/events", json=event)
        print(f"   {r.status_code} {r.text}\n")

        print(f"4) POST /api/escalations/{escalation['escalation_id']}/resolve")
        r = client.post(f"{base}/api/escalations/{escalation['escalation_id']}/resolve", headers=headers, json={"agent_id": args.agent})
        print(f"   {r.status_code} {r.text}\n")

    print("Done.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
