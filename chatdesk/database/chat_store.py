"""
In-memory chat log and user profile store.

Keeps the same surface a document database would offer to the chat pipeline
(chat records, user profiles, voice message records, failed escalation
records) so the API runs without an external database.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from chatdesk.escalation.models import utcnow


class ChatStore:
    def __init__(self) -> None:
        self._chats: List[Dict[str, Any]] = []
        self._users: Dict[str, Dict[str, Any]] = {}
        self._voice_messages: List[Dict[str, Any]] = []
        self._failed_escalations: List[Dict[str, Any]] = []

    # --- Users ---------------------------------------------------------------

    def get_user_profile(self, user_id: str) -> Dict[str, Any]:
        return dict(self._users.get(user_id) or {})

    def upsert_user_profile(self, user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        profile = self._users.setdefault(user_id, {"user_id": user_id, "message_count": 0})
        profile.update(updates)
        return dict(profile)

    def touch_user(self, user_id: str) -> None:
        profile = self._users.setdefault(user_id, {"user_id": user_id, "message_count": 0})
        profile["last_activity"] = utcnow().isoformat()
        profile["message_count"] = profile.get("message_count", 0) + 1

    # --- Chats ---------------------------------------------------------------

    def add_chat(self, record: Dict[str, Any]) -> str:
        chat_id = uuid.uuid4().hex
        self._chats.append({"id": chat_id, **record})
        return chat_id

    def get_chat_history(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent `limit` chats for a user, oldest first."""
        chats = [c for c in self._chats if c.get("user_id") == user_id]
        chats.sort(key=lambda c: c.get("timestamp") or "")
        return [dict(c) for c in chats[-limit:]] if limit > 0 else []

    def get_user_stats(self, user_id: str) -> Optional[Dict[str, Any]]:
        if user_id not in self._users:
            return None
        counts = {"positive": 0, "negative": 0, "neutral": 0}
        escalations = 0
        total = 0
        for chat in self._chats:
            if chat.get("user_id") != user_id:
                continue
            total += 1
            sentiment = chat.get("sentiment") or "neutral"
            counts[sentiment] = counts.get(sentiment, 0) + 1
            if chat.get("escalated"):
                escalations += 1
        return {
            "total_messages": total,
            "sentiment_counts": counts,
            "escalation_count": escalations,
            "average_sentiment": average_sentiment(counts),
        }

    # --- Voice / failed escalations -----------------------------------------

    def add_voice_message(self, user_id: str, voice_data: Dict[str, Any]) -> None:
        self._voice_messages.append(
            {
                "user_id": user_id,
                "audio_data": voice_data.get("audioData"),
                "duration": voice_data.get("duration"),
                "mime_type": voice_data.get("mimeType"),
                "timestamp": voice_data.get("timestamp") or utcnow().isoformat(),
                "type": "voice_message",
            }
        )

    def voice_messages(self, user_id: str) -> List[Dict[str, Any]]:
        return [dict(v) for v in self._voice_messages if v["user_id"] == user_id]

    def add_failed_escalation(self, record: Dict[str, Any]) -> None:
        self._failed_escalations.append({"recorded_at": utcnow().isoformat(), **record})

    def failed_escalations(self) -> List[Dict[str, Any]]:
        return [dict(r) for r in self._failed_escalations]

    def ping(self) -> bool:
        return True


def average_sentiment(counts: Dict[str, int]) -> str:
    total = counts.get("positive", 0) + counts.get("negative", 0) + counts.get("neutral", 0)
    if total == 0:
        return "neutral"
    score = (counts.get("positive", 0) - counts.get("negative", 0)) / total
    if score > 0.2:
        return "positive"
    if score < -0.2:
        return "negative"
    return "neutral"
