"""
WhatsApp Cloud API client.

Sends text and template messages through the Graph API
`/<phone_number_id>/messages` endpoint and verifies webhook signatures.
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, List, Optional

import httpx

from chatdesk.escalation.exceptions import DeliveryFailure

logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.facebook.com"


class WhatsAppClient:
    def __init__(
        self,
        access_token: str,
        phone_number_id: str,
        api_version: str = "v18.0",
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.api_version = api_version
        self.timeout = timeout
        self._http = http_client

    @property
    def messages_url(self) -> str:
        return f"{GRAPH_API_BASE}/{self.api_version}/{self.phone_number_id}/messages"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def text_payload(to: str, body: str) -> Dict[str, Any]:
        return {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": body},
        }

    @staticmethod
    def template_payload(to: str, template_name: str, parameters: List[str], language: str = "en") -> Dict[str, Any]:
        components = []
        if parameters:
            components.append({"type": "body", "parameters": [{"type": "text", "text": p} for p in parameters]})
        return {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "template",
            "template": {"name": template_name, "language": {"code": language}, "components": components},
        }

    async def send_text(self, to: str, body: str) -> Dict[str, Any]:
        return await self._post(to, self.text_payload(to, body))

    async def send_template(self, to: str, template_name: str, parameters: List[str] = None, language: str = "en"):
        return await self._post(to, self.template_payload(to, template_name, parameters or [], language))

    async def _post(self, to: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            if self._http is not None:
                resp = await self._http.post(self.messages_url, json=payload, headers=self._headers(), timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.messages_url, json=payload, headers=self._headers())
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DeliveryFailure("whatsapp", to, f"WhatsApp API error: {e.response.status_code}")
        except httpx.HTTPError as e:
            raise DeliveryFailure("whatsapp", to, f"{type(e).__name__}: {e}")

        logger.info("WhatsApp message sent to %s", to)
        return resp.json()


def verify_signature(app_secret: str, body: bytes, signature_header: Optional[str]) -> bool:
    """Check Meta's `X-Hub-Signature-256: sha256=<hex>` header against the raw body."""
    if not app_secret:
        return True
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header[len("sha256="):])
