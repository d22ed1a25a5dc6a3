from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import date, datetime
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

# -----------------------------
# .env Loader
# -----------------------------
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ENV_PATH = os.path.join(BASE_DIR, "..", ".env")
load_dotenv(dotenv_path=ENV_PATH, override=False)


# -----------------------------
# Env helpers
# -----------------------------
def env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, default))
    except Exception:
        return default


def env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, default))
    except Exception:
        return default


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(key)
    return v if (v and str(v).strip() != "") else default


# -----------------------------
# Settings Object
# -----------------------------
@dataclass(frozen=True)
class Settings:
    AIRTABLE_API_KEY: Optional[str]
    AIRTABLE_BASE_ID: Optional[str]
    FORCE_IN_MEMORY: bool
    REDIS_URL: Optional[str]
    REDIS_TLS: bool
    TELNYX_API_KEY: Optional[str]
    TELNYX_API_URL: str
    TELNYX_DRY_RUN: bool
    DISPATCH_TIMEOUT_SEC: float
    CRON_TOKEN: Optional[str]
    WEBHOOK_TOKEN: Optional[str]
    ALERT_WEBHOOK_URL: Optional[str]
    ALERT_TIMEOUT_SEC: float
    SCHEDULER_TZ: str
    BILLING_REMINDER_DAYS_AHEAD: int
    TRIGGER_WORKERS: int
    TRIGGER_CLAIM_TTL_SEC: int
    APPROVAL_CLAIM_TTL_SEC: int
    AUTO_OPT_IN_NEW_CONVERSATIONS: bool
    HELP_TEXT: str
    UNSUBSCRIBE_TEXT: str

    @property
    def persistent_store(self) -> bool:
        return bool(self.AIRTABLE_API_KEY and self.AIRTABLE_BASE_ID and not self.FORCE_IN_MEMORY)


@lru_cache(maxsize=1)
def settings() -> Settings:
    return Settings(
        AIRTABLE_API_KEY=env_str("AIRTABLE_API_KEY"),
        AIRTABLE_BASE_ID=env_str("AIRTABLE_BASE_ID"),
        FORCE_IN_MEMORY=env_bool("SMS_FORCE_IN_MEMORY"),
        REDIS_URL=env_str("REDIS_URL") or env_str("UPSTASH_REDIS_URL"),
        REDIS_TLS=env_bool("REDIS_TLS", True),
        TELNYX_API_KEY=env_str("TELNYX_API_KEY"),
        TELNYX_API_URL=env_str("TELNYX_API_URL", "https://api.telnyx.com/v2/messages"),
        TELNYX_DRY_RUN=env_bool("TELNYX_DRY_RUN"),
        DISPATCH_TIMEOUT_SEC=env_float("DISPATCH_TIMEOUT_SEC", 15.0),
        CRON_TOKEN=env_str("CRON_TOKEN"),
        WEBHOOK_TOKEN=env_str("WEBHOOK_TOKEN") or env_str("TELNYX_WEBHOOK_TOKEN"),
        ALERT_WEBHOOK_URL=env_str("ALERT_WEBHOOK_URL"),
        ALERT_TIMEOUT_SEC=env_float("ALERT_TIMEOUT_SEC", 10.0),
        SCHEDULER_TZ=env_str("SCHEDULER_TZ", "America/Los_Angeles"),
        BILLING_REMINDER_DAYS_AHEAD=env_int("BILLING_REMINDER_DAYS_AHEAD", 3),
        TRIGGER_WORKERS=max(env_int("TRIGGER_WORKERS", 4), 1),
        TRIGGER_CLAIM_TTL_SEC=env_int("TRIGGER_CLAIM_TTL_SEC", 40 * 24 * 60 * 60),
        APPROVAL_CLAIM_TTL_SEC=env_int("APPROVAL_CLAIM_TTL_SEC", 300),
        AUTO_OPT_IN_NEW_CONVERSATIONS=env_bool("AUTO_OPT_IN_NEW_CONVERSATIONS", True),
        HELP_TEXT=env_str(
            "SMS_HELP_TEXT",
            "For assistance, reply to this number or contact your agent. Msg&data rates may apply. Reply STOP to opt out.",
        ),
        UNSUBSCRIBE_TEXT=env_str(
            "SMS_UNSUBSCRIBE_TEXT",
            "You have been unsubscribed and will receive no further messages. Reply START to re-subscribe.",
        ),
    )


# -----------------------------
# Time helpers
# -----------------------------
def tz_now() -> datetime:
    return datetime.now(ZoneInfo(settings().SCHEDULER_TZ))


def scheduler_today() -> date:
    """Calendar day the daily triggers evaluate against."""
    return tz_now().date()
