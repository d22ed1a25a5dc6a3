"""Process-wide wiring of stores, transports and services."""

from __future__ import annotations

import threading
from typing import Any, Optional

from agency_sms.alerts import AlertNotifier, build_notifier
from agency_sms.config import settings
from agency_sms.conversations import ConversationRepository, ConversationResolver
from agency_sms.directory import Directory
from agency_sms.drafts import DraftQueue
from agency_sms.idempotency import ClaimStore, TriggerRunLedger, build_claim_store
from agency_sms.inbound_webhook import InboundHandler
from agency_sms.message_log import MessageLog
from agency_sms.runtime import get_logger
from agency_sms.scheduler import TriggerScheduler
from agency_sms.telnyx_sender import build_dispatcher
from agency_sms.triggers import build_triggers

logger = get_logger(__name__)


class Engine:
    def __init__(
        self,
        *,
        claims: Optional[ClaimStore] = None,
        dispatcher: Any = None,
        notifier: Optional[AlertNotifier] = None,
    ) -> None:
        s = settings()
        self.claims = claims or build_claim_store()
        self.dispatcher = dispatcher or build_dispatcher()
        self.notifier = notifier or build_notifier()

        self.directory = Directory()
        self.conversations = ConversationRepository(self.claims)
        self.resolver = ConversationResolver(self.conversations)
        self.messages = MessageLog(self.conversations)
        self.ledger = TriggerRunLedger(self.claims, ttl=s.TRIGGER_CLAIM_TTL_SEC)

        self.scheduler = TriggerScheduler(
            directory=self.directory,
            resolver=self.resolver,
            message_log=self.messages,
            ledger=self.ledger,
            dispatcher=self.dispatcher,
            triggers=build_triggers(s.BILLING_REMINDER_DAYS_AHEAD),
            workers=s.TRIGGER_WORKERS,
        )
        self.drafts = DraftQueue(
            message_log=self.messages,
            conversations=self.conversations,
            directory=self.directory,
            dispatcher=self.dispatcher,
            claims=self.claims,
            claim_ttl=s.APPROVAL_CLAIM_TTL_SEC,
        )
        self.inbound = InboundHandler(
            directory=self.directory,
            resolver=self.resolver,
            conversations=self.conversations,
            message_log=self.messages,
            dispatcher=self.dispatcher,
            notifier=self.notifier,
            claims=self.claims,
            help_text=s.HELP_TEXT,
            unsubscribe_text=s.UNSUBSCRIBE_TEXT,
        )


_ENGINE: Optional[Engine] = None
_LOCK = threading.Lock()


def get_engine() -> Engine:
    global _ENGINE
    if _ENGINE is None:
        with _LOCK:
            if _ENGINE is None:
                _ENGINE = Engine()
                logger.info("Engine ready (dry_run=%s)", settings().TELNYX_DRY_RUN)
    return _ENGINE


def set_engine(engine: Optional[Engine]) -> None:
    """Install a pre-built engine (tests, custom transports) or clear it."""
    global _ENGINE
    with _LOCK:
        _ENGINE = engine


def reset_engine() -> None:
    set_engine(None)
