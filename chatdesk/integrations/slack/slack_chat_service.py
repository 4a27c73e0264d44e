import json
import logging
import os
from typing import Any, Dict, List, Optional

from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from chatdesk.escalation.exceptions import IdentityLookupFailure
from chatdesk.escalation.models import ThreadRef

logger = logging.getLogger(__name__)


class SlackChatService:
    """Async wrapper over the Slack Web API calls the escalation flow needs."""

    def __init__(
        self,
        token: str,
        channel: str,
        client: Optional[AsyncWebClient] = None,
        bot_user_id: Optional[str] = None,
    ):
        self.client = client or AsyncWebClient(token=token)
        self.channel = channel
        self.bot_user_id = bot_user_id or ""
        self._agent_map = self._load_agent_map()
        self._name_cache: Dict[str, str] = {}

    @staticmethod
    def _load_agent_map() -> dict:
        raw = os.getenv("SLACK_AGENT_MAP", "").strip()
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("SLACK_AGENT_MAP is not valid JSON; ignoring")
            return {}
        if isinstance(parsed, dict):
            return {str(k): str(v) for k, v in parsed.items()}
        return {}

    # --- Escalation notices --------------------------------------------------

    async def post_notice(self, text: str, blocks: List[Dict[str, Any]]) -> ThreadRef:
        try:
            response = await self.client.chat_postMessage(channel=self.channel, text=text, blocks=blocks)
        except SlackApiError as e:
            raise Exception(f"Slack API error: {self._extract_slack_error(e)}")
        data = response.data
        ts = data.get("ts")
        if not ts:
            raise Exception("Slack API error: missing_thread_ts")
        return ThreadRef(channel=data.get("channel") or self.channel, ts=ts)

    async def update_notice(self, thread_ref: ThreadRef, text: str, blocks: List[Dict[str, Any]]) -> None:
        try:
            await self.client.chat_update(channel=thread_ref.channel, ts=thread_ref.ts, text=text, blocks=blocks)
        except SlackApiError as e:
            raise Exception(f"Slack API error: {self._extract_slack_error(e)}")

    async def post_thread_message(self, thread_ref: ThreadRef, text: str) -> Dict[str, Any]:
        try:
            response = await self.client.chat_postMessage(
                channel=thread_ref.channel,
                thread_ts=thread_ref.ts,
                text=text,
            )
        except SlackApiError as e:
            raise Exception(f"Slack API error: {self._extract_slack_error(e)}")
        return response.data

    async def post_ephemeral(self, channel: str, user: str, text: str) -> None:
        try:
            await self.client.chat_postEphemeral(channel=channel, user=user, text=text)
        except SlackApiError as e:
            raise Exception(f"Slack API error: {self._extract_slack_error(e)}")

    async def add_reaction(self, channel: str, ts: str, name: str = "white_check_mark") -> None:
        try:
            await self.client.reactions_add(channel=channel, timestamp=ts, name=name)
        except SlackApiError as e:
            raise Exception(f"Slack API error: {self._extract_slack_error(e)}")

    # --- Agent identity ------------------------------------------------------

    def is_own_bot(self, user: Optional[str]) -> bool:
        return bool(self.bot_user_id) and user == self.bot_user_id

    async def resolve_display_name(self, slack_user_id: str) -> str:
        """Agent map first, then users.info; raises IdentityLookupFailure."""
        if not slack_user_id:
            raise IdentityLookupFailure("", "missing user id")
        mapped = self._agent_map.get(str(slack_user_id))
        if mapped:
            return mapped
        cached = self._name_cache.get(slack_user_id)
        if cached:
            return cached
        try:
            response = await self.client.users_info(user=slack_user_id)
        except SlackApiError as e:
            raise IdentityLookupFailure(slack_user_id, self._extract_slack_error(e))

        user = response.data.get("user") or {}
        profile = user.get("profile") or {}
        name = profile.get("display_name") or profile.get("real_name") or user.get("real_name") or user.get("name")
        if not name:
            raise IdentityLookupFailure(slack_user_id, "no name on profile")
        self._name_cache[slack_user_id] = name
        return name

    @staticmethod
    def _extract_slack_error(exc: Exception) -> str:
        response = getattr(exc, "response", None)
        if isinstance(response, dict):
            return str(response.get("error", "unknown_error"))
        try:
            return str(response["error"])  # type: ignore[index]
        except (KeyError, TypeError):
            return str(exc)
