import hmac
import json
import logging
import os
from typing import Dict, Optional

from fastapi import Header, HTTPException, Request, status
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def get_api_keys():
    keys = os.getenv("API_KEYS", "")
    return [k.strip() for k in keys.split(",") if k.strip()]


def is_valid_api_key(candidate: Optional[str]) -> bool:
    candidate = (candidate or "").strip()
    return bool(candidate) and any(hmac.compare_digest(candidate, k) for k in get_api_keys())


async def api_key_protection(x_api_key: str = Header(default=None, alias="X-API-KEY")):
    if not is_valid_api_key(x_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API Key",
        )


def get_services(request: Request):
    return request.app.state.services


class StaticTokenVerifier:
    """
    Session token verification backed by a token -> uid map.

    Stands in for the identity provider behind the live connection; anything
    with an async `verify(token) -> Optional[str]` can replace it.
    """

    def __init__(self, tokens: Optional[Dict[str, str]] = None):
        self._tokens = dict(tokens or {})

    @classmethod
    def from_env(cls) -> "StaticTokenVerifier":
        raw = os.getenv("SESSION_TOKENS", "").strip()
        if not raw:
            return cls()
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("SESSION_TOKENS is not valid JSON; no live sessions will authenticate")
            return cls()
        if not isinstance(parsed, dict):
            return cls()
        return cls({str(k): str(v) for k, v in parsed.items()})

    async def verify(self, token: Optional[str]) -> Optional[str]:
        token = (token or "").strip()
        if not token:
            return None
        for known, uid in self._tokens.items():
            if hmac.compare_digest(token, known):
                return uid
        return None
