"""Small text and id helpers shared by the gateways."""

import logging
import re
from collections import OrderedDict
from typing import Optional

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 1000

_MENTION_RE = re.compile(r"<@[A-Z0-9]+>")
# <https://a.com|label>, <mailto:x@y.com>, <#C123|general>
_SLACK_LINK_RE = re.compile(r"<([^<>|]+)(?:\|([^<>]*))?>")


def sanitize_input(value) -> str:
    """Trim, drop angle brackets and cap length."""
    if not isinstance(value, str):
        return ""
    cleaned = re.sub(r"[<>]", "", value.strip())
    if len(cleaned) > MAX_MESSAGE_LENGTH:
        logger.warning("Message truncated from %d to %d characters", len(cleaned), MAX_MESSAGE_LENGTH)
    return cleaned[:MAX_MESSAGE_LENGTH]


def strip_mentions(text: str) -> str:
    return _MENTION_RE.sub("", text or "").strip()


def _plain_link(match: "re.Match") -> str:
    target, label = match.group(1), match.group(2)
    if target.startswith("#"):
        return f"#{label}" if label else target
    if target.startswith("mailto:"):
        target = target[len("mailto:"):]
    if label and label != target:
        return f"{label} ({target})"
    return target


def unwrap_slack_links(text: str) -> str:
    """Rewrite Slack link markup as plain text: `<https://a.com|here>` -> `here (https://a.com)`."""
    return _SLACK_LINK_RE.sub(_plain_link, text or "")


class RecentIdCache:
    """Bounded set of recently seen ids (webhook retries, redeliveries)."""

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def seen(self, key: Optional[str]) -> bool:
        """True if `key` was already recorded; records it otherwise."""
        if not key:
            return False
        if key in self._seen:
            self._seen.move_to_end(key)
            return True
        self._seen[key] = None
        if len(self._seen) > self.max_size:
            self._seen.popitem(last=False)
        return False
