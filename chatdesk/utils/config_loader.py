"""
Configuration loader for the chatdesk service
"""

import os
import yaml
from pathlib import Path
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, ValidationError
import logging

from chatdesk.escalation.decision import DEFAULT_ESCALATION_KEYWORDS

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config" / "chatdesk.yml"


class SlackConfig(BaseModel):
    """Agent workspace settings"""

    escalation_channel: str = "#support-escalations"
    notice_timeout: float = Field(default=10.0, gt=0)
    ack_reaction: str = "white_check_mark"


class WhatsAppConfig(BaseModel):
    """WhatsApp Cloud API settings"""

    api_version: str = "v18.0"
    send_timeout: float = Field(default=10.0, gt=0)


class LiveConfig(BaseModel):
    """WebSocket session settings"""

    send_timeout: float = Field(default=5.0, gt=0)


class EscalationConfig(BaseModel):
    """Escalation trigger settings"""

    keywords: Dict[str, List[str]] = Field(default_factory=lambda: {k: list(v) for k, v in DEFAULT_ESCALATION_KEYWORDS.items()})
    lock_stripes: int = Field(default=64, ge=1, le=4096)


class RateLimitConfig(BaseModel):
    """Per-user inbound message limits"""

    enabled: bool = False
    messages_per_minute: int = Field(default=10, ge=1, le=1000)
    messages_per_hour: int = Field(default=100, ge=1, le=100000)


class EmailConfig(BaseModel):
    """Escalation alert email settings (credentials come from the environment)"""

    send_timeout: float = Field(default=10.0, gt=0)


class DedupeConfig(BaseModel):
    """Webhook redelivery suppression"""

    max_ids: int = Field(default=1000, ge=10)


class AppConfig(BaseModel):
    """Complete service configuration"""

    slack: SlackConfig = Field(default_factory=SlackConfig)
    whatsapp: WhatsAppConfig = Field(default_factory=WhatsAppConfig)
    live: LiveConfig = Field(default_factory=LiveConfig)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    dedupe: DedupeConfig = Field(default_factory=DedupeConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)


def load_app_config(config_path: Optional[Path] = None) -> AppConfig:
    """
    Load and validate service configuration from YAML file

    Args:
        config_path: Path to config file. Defaults to CHATDESK_CONFIG or config/chatdesk.yml

    Returns:
        Validated AppConfig object; defaults when no file exists

    Raises:
        ValidationError: If config doesn't match schema
    """
    if config_path is None:
        env_path = os.getenv("CHATDESK_CONFIG", "").strip()
        config_path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        logger.warning(f"Config file not found: {config_path}; using defaults")
        return AppConfig()

    with open(config_path, "r", encoding="utf-8") as f:
        config_data = yaml.safe_load(f) or {}

    try:
        config = AppConfig(**config_data)
        logger.info(f"Successfully loaded config from {config_path}")
        return config
    except ValidationError as e:
        logger.error(f"Config validation failed: {e}")
        raise
