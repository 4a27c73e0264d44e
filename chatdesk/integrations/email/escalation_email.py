"""
Escalation alert emails.

Sends a short HTML summary of each escalation to the support inbox through
the SendGrid v3 REST API. Optional: without SENDGRID_API_KEY and a recipient
the alert is only logged.
"""

import html
import logging
import os
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

SENDGRID_MAIL_URL = "https://api.sendgrid.com/v3/mail/send"


def render_escalation_email(alert: Dict[str, Any]) -> Dict[str, str]:
    """Subject and HTML body for one escalation alert."""
    user_id = str(alert.get("user_id") or "unknown")
    sentiment = str(alert.get("sentiment") or "neutral")

    def esc(key: str, default: str = "Not provided") -> str:
        return html.escape(str(alert.get(key) or default))

    priority = "<li><strong>Priority:</strong> High - negative sentiment detected</li>" if sentiment == "negative" else ""
    notice = "" if alert.get("notice_posted", True) else "<p><strong>The Slack notice could not be posted.</strong></p>"
    body = f"""
<div style="font-family: Arial, sans-serif; max-width: 600px;">
  <h2 style="color: #dc2626;">Chatbot Escalation Alert</h2>
  {notice}
  <h3>User</h3>
  <p><strong>User ID:</strong> {html.escape(user_id)}</p>
  <p><strong>Name:</strong> {esc("profile_name")}</p>
  <p><strong>Channel:</strong> {esc("channel")}</p>
  <p><strong>Language:</strong> {esc("language", "en")}</p>
  <h3>Message</h3>
  <p><strong>Time:</strong> {esc("timestamp")}</p>
  <p><strong>Sentiment:</strong> {html.escape(sentiment.upper())}</p>
  <blockquote>{esc("message", "")}</blockquote>
  <h3>Recommended actions</h3>
  <ul>
    <li>Respond to the user within 15 minutes</li>
    <li>Follow up in the Slack escalation thread</li>
    {priority}
  </ul>
  <p style="color: #6b7280; font-size: 12px;">Escalation {esc("escalation_id", "-")}</p>
</div>
"""
    return {"subject": f"🚨 Chatbot Escalation Alert - User {user_id}", "html": body}


class EscalationEmailNotifier:
    def __init__(
        self,
        api_key: str = "",
        to_email: str = "",
        from_email: str = "",
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.to_email = to_email
        self.from_email = from_email or to_email
        self.timeout = timeout
        self._http = http_client

    @classmethod
    def from_env(cls, timeout: float = 10.0, http_client: Optional[httpx.AsyncClient] = None) -> "EscalationEmailNotifier":
        return cls(
            api_key=os.getenv("SENDGRID_API_KEY", ""),
            to_email=os.getenv("ESCALATION_EMAIL_TO", ""),
            from_email=os.getenv("ESCALATION_EMAIL_FROM", ""),
            timeout=timeout,
            http_client=http_client,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.to_email)

    async def send_escalation_alert(self, alert: Dict[str, Any]) -> bool:
        """Email the alert. Returns False when email is not configured.

        Raises Exception on a transport or API error; callers treat the email
        as best-effort.
        """
        if not self.is_configured:
            logger.info("Escalation email not configured; alert for %s logged only: %s", alert.get("user_id"), alert)
            return False

        content = render_escalation_email(alert)
        payload = {
            "personalizations": [{"to": [{"email": self.to_email}]}],
            "from": {"email": self.from_email},
            "subject": content["subject"],
            "content": [{"type": "text/html", "value": content["html"]}],
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

        if self._http is not None:
            resp = await self._http.post(SENDGRID_MAIL_URL, json=payload, headers=headers, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(SENDGRID_MAIL_URL, json=payload, headers=headers)

        if resp.status_code != 202:
            raise Exception(f"SendGrid error {resp.status_code}: {resp.text[:200]}")
        logger.info("Escalation email sent for %s", alert.get("user_id"))
        return True
