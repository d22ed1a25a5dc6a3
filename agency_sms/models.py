"""Typed views over Airtable records used throughout the engine."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Optional

from dateutil import parser as date_parser

from agency_sms.runtime import get_logger, storage_phone
from agency_sms.schema import (
    AGENCIES_TABLE,
    AGENTS_TABLE,
    CONVERSATIONS_TABLE,
    DEALS_TABLE,
    MESSAGES_TABLE,
    AutoSendOverride,
    ConversationType,
    DealStatus,
    MessageDirection,
    MessageStatus,
    OptInStatus,
    SubscriptionTier,
    TriggerType,
    trigger_field,
)

logger = get_logger(__name__)


def parse_date(value: Any) -> Optional[date]:
    """Lenient date parsing for Airtable date / datetime cells."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date_parser.parse(str(value)).date()
    except (ValueError, OverflowError):
        logger.warning("Unparseable date value: %r", value)
        return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on", "checked")
    return bool(value)


def _optional_bool(value: Any) -> Optional[bool]:
    if value in (None, ""):
        return None
    return _as_bool(value)


# ---------------------------------------------------------------------------
# Conversations / Messages
# ---------------------------------------------------------------------------


@dataclass
class Conversation:
    id: str
    agency_id: str
    agent_id: Optional[str]
    deal_id: Optional[str]
    client_phone: str
    type: str = ConversationType.SMS.value
    is_active: bool = True
    last_message_at: Optional[str] = None
    sms_opt_in_status: str = OptInStatus.UNKNOWN.value
    opted_in_at: Optional[str] = None
    opted_out_at: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def opted_in(self) -> bool:
        return self.sms_opt_in_status == OptInStatus.OPTED_IN.value

    @property
    def opted_out(self) -> bool:
        return self.sms_opt_in_status == OptInStatus.OPTED_OUT.value

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Conversation":
        f = record.get("fields", {}) or {}
        names = CONVERSATIONS_TABLE.field_names()
        return cls(
            id=record["id"],
            agency_id=f.get(names["AGENCY"]) or "",
            agent_id=f.get(names["AGENT"]),
            deal_id=f.get(names["DEAL"]),
            client_phone=storage_phone(f.get(names["CLIENT_PHONE"])),
            type=f.get(names["TYPE"]) or ConversationType.SMS.value,
            is_active=_as_bool(f.get(names["IS_ACTIVE"])),
            last_message_at=f.get(names["LAST_MESSAGE_AT"]),
            sms_opt_in_status=f.get(names["OPT_IN_STATUS"]) or OptInStatus.UNKNOWN.value,
            opted_in_at=f.get(names["OPTED_IN_AT"]),
            opted_out_at=f.get(names["OPTED_OUT_AT"]),
            created_at=f.get(names["CREATED_AT"]),
        )


@dataclass
class Message:
    id: str
    conversation_id: str
    sender_id: Optional[str]
    receiver_id: Optional[str]
    body: str
    direction: str
    status: str
    sent_at: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    provider_id: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_draft(self) -> bool:
        return self.status == MessageStatus.DRAFT.value

    @property
    def automated(self) -> bool:
        return bool(self.metadata.get("automated"))

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Message":
        f = record.get("fields", {}) or {}
        names = MESSAGES_TABLE.field_names()
        return cls(
            id=record["id"],
            conversation_id=f.get(names["CONVERSATION"]) or "",
            sender_id=f.get(names["SENDER"]),
            receiver_id=f.get(names["RECEIVER"]),
            body=f.get(names["BODY"]) or "",
            direction=f.get(names["DIRECTION"]) or MessageDirection.OUTBOUND.value,
            status=f.get(names["STATUS"]) or "",
            sent_at=f.get(names["SENT_AT"]),
            metadata=decode_metadata(f.get(names["METADATA"])),
            provider_id=f.get(names["PROVIDER_ID"]),
            created_at=f.get(names["CREATED_AT"]),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "body": self.body,
            "direction": self.direction,
            "status": self.status,
            "sent_at": self.sent_at,
            "metadata": dict(self.metadata),
            "provider_id": self.provider_id,
            "created_at": self.created_at,
        }


def encode_metadata(metadata: Optional[Dict[str, Any]]) -> str:
    return json.dumps(metadata or {}, sort_keys=True, default=str)


def decode_metadata(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return dict(raw)
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Discarding unreadable message metadata: %r", raw)
        return {}
    return value if isinstance(value, dict) else {}


# ---------------------------------------------------------------------------
# Deals / Agents / Agencies
# ---------------------------------------------------------------------------


@dataclass
class Deal:
    """Policy context a trigger evaluates."""

    id: str
    agency_id: str
    agent_id: Optional[str]
    client_name: str = ""
    client_phone: str = ""
    client_email: Optional[str] = None
    date_of_birth: Optional[date] = None
    effective_date: Optional[date] = None
    billing_cycle: Optional[str] = None
    status: Optional[str] = None
    policy_number: Optional[str] = None
    carrier: Optional[str] = None

    @property
    def client_first_name(self) -> str:
        parts = (self.client_name or "").strip().split()
        return parts[0] if parts else "there"

    @property
    def is_active(self) -> bool:
        return (self.status or "").strip().lower() == DealStatus.ACTIVE.value

    def days_since_effective(self, today: date) -> Optional[int]:
        if not self.effective_date:
            return None
        return (today - self.effective_date).days

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Deal":
        f = record.get("fields", {}) or {}
        names = DEALS_TABLE.field_names()
        return cls(
            id=record["id"],
            agency_id=f.get(names["AGENCY"]) or "",
            agent_id=f.get(names["AGENT"]),
            client_name=f.get(names["CLIENT_NAME"]) or "",
            client_phone=storage_phone(f.get(names["CLIENT_PHONE"])),
            client_email=f.get(names["CLIENT_EMAIL"]),
            date_of_birth=parse_date(f.get(names["DATE_OF_BIRTH"])),
            effective_date=parse_date(f.get(names["EFFECTIVE_DATE"])),
            billing_cycle=(f.get(names["BILLING_CYCLE"]) or None),
            status=f.get(names["STATUS"]),
            policy_number=f.get(names["POLICY_NUMBER"]),
            carrier=f.get(names["CARRIER"]),
        )


@dataclass
class Agent:
    id: str
    agency_id: Optional[str]
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    tier: str = SubscriptionTier.FREE.value
    # None inherits the agency default
    auto_send_override: Optional[bool] = None

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p).strip()

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Agent":
        f = record.get("fields", {}) or {}
        names = AGENTS_TABLE.field_names()
        raw_override = (f.get(names["AUTO_SEND_OVERRIDE"]) or AutoSendOverride.INHERIT.value).strip().lower()
        if raw_override == AutoSendOverride.ENABLED.value:
            override: Optional[bool] = True
        elif raw_override == AutoSendOverride.DISABLED.value:
            override = False
        else:
            override = None
        return cls(
            id=record["id"],
            agency_id=f.get(names["AGENCY"]),
            first_name=f.get(names["FIRST_NAME"]) or "",
            last_name=f.get(names["LAST_NAME"]) or "",
            phone=f.get(names["PHONE"]),
            tier=(f.get(names["TIER"]) or SubscriptionTier.FREE.value).strip().lower(),
            auto_send_override=override,
        )


@dataclass(frozen=True)
class TriggerSettings:
    enabled: bool = False
    template: Optional[str] = None
    require_approval: Optional[bool] = None


@dataclass
class AgencyMessagingConfig:
    agency_id: str
    messaging_enabled: bool = False
    auto_send_enabled: bool = False
    triggers: Dict[TriggerType, TriggerSettings] = field(default_factory=dict)

    def for_trigger(self, trigger: TriggerType) -> TriggerSettings:
        return self.triggers.get(TriggerType(trigger), TriggerSettings())


@dataclass
class Agency:
    id: str
    name: str
    phone: Optional[str]
    config: AgencyMessagingConfig

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Agency":
        f = record.get("fields", {}) or {}
        names = AGENCIES_TABLE.field_names()
        triggers = {
            trigger: TriggerSettings(
                enabled=_as_bool(f.get(trigger_field(trigger, "ENABLED"))),
                template=(f.get(trigger_field(trigger, "TEMPLATE")) or None),
                require_approval=_optional_bool(f.get(trigger_field(trigger, "REQUIRE_APPROVAL"))),
            )
            for trigger in TriggerType
        }
        config = AgencyMessagingConfig(
            agency_id=record["id"],
            messaging_enabled=_as_bool(f.get(names["MESSAGING_ENABLED"])),
            auto_send_enabled=_as_bool(f.get(names["AUTO_SEND_ENABLED"])),
            triggers=triggers,
        )
        return cls(
            id=record["id"],
            name=f.get(names["NAME"]) or "",
            phone=f.get(names["PHONE"]),
            config=config,
        )
