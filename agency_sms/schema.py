from __future__ import annotations

"""
Central Airtable schema definitions and helpers.

This module keeps the canonical field names for the engine's tables together
so business logic can import lightweight helpers instead of hard-coding strings.
Environment variables can still override individual field names (to align with
custom Airtable copies), but the defaults here should always reflect the live
schema.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Tuple


# ---------------------------------------------------------------------------
# Core data containers
# ---------------------------------------------------------------------------


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    v = value.strip()
    return v if v else None


@dataclass(frozen=True)
class FieldDefinition:
    """
    Represents an Airtable column.

    Args:
        default: Canonical field name in Airtable.
        env_vars: Ordered list of env vars that can override the field name.
                   (first non-empty wins).
        options: Allowed values for single-select fields (if applicable).
    """

    default: str
    env_vars: Tuple[str, ...] = field(default_factory=tuple)
    options: Tuple[str, ...] = field(default_factory=tuple)

    def resolve(self) -> str:
        """Return the active field name (env override or default)."""
        for env in self.env_vars:
            override = _clean(os.getenv(env))
            if override:
                return override
        return self.default


@dataclass(frozen=True)
class TableDefinition:
    """
    Airtable table metadata with helpers to resolve field names.

    Args:
        default: Human-readable table name in Airtable.
        env_vars: Env vars that can rename the table.
        fields: Mapping of logical keys → FieldDefinition.
    """

    default: str
    env_vars: Tuple[str, ...] = field(default_factory=tuple)
    fields: Dict[str, FieldDefinition] = field(default_factory=dict)

    def name(self) -> str:
        for env in self.env_vars:
            override = _clean(os.getenv(env))
            if override:
                return override
        return self.default

    def field_name(self, key: str) -> str:
        return self.fields[key].resolve()

    def field_names(self) -> Dict[str, str]:
        return {key: fdef.resolve() for key, fdef in self.fields.items()}


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ConversationType(str, Enum):
    SMS = "sms"


class OptInStatus(str, Enum):
    UNKNOWN = "unknown"
    OPTED_IN = "opted_in"
    OPTED_OUT = "opted_out"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    RECEIVED = "received"
    FAILED = "failed"


class TriggerType(str, Enum):
    WELCOME = "welcome"
    BIRTHDAY = "birthday"
    BILLING_REMINDER = "billing_reminder"
    QUARTERLY_CHECKIN = "quarterly_checkin"
    POLICY_PACKET_CHECKUP = "policy_packet_checkup"
    HOLIDAY = "holiday"


# Non-trigger automated replies written by the inbound handler.
class ComplianceReply(str, Enum):
    OPT_OUT_CONFIRMATION = "opt_out_confirmation"
    OPT_IN_WELCOME = "opt_in_welcome"
    HELP_RESPONSE = "help_response"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMI_ANNUALLY = "semi-annually"
    ANNUALLY = "annually"


class SubscriptionTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    EXPERT = "expert"


class DealStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    LAPSE_PENDING = "lapse_pending"
    LAPSED = "lapsed"
    CANCELLED = "cancelled"


class AutoSendOverride(str, Enum):
    INHERIT = "inherit"
    ENABLED = "enabled"
    DISABLED = "disabled"


TRIGGER_LABELS: Dict[TriggerType, str] = {
    TriggerType.WELCOME: "Welcome",
    TriggerType.BIRTHDAY: "Birthday",
    TriggerType.BILLING_REMINDER: "Billing Reminder",
    TriggerType.QUARTERLY_CHECKIN: "Quarterly Check-in",
    TriggerType.POLICY_PACKET_CHECKUP: "Policy Packet Checkup",
    TriggerType.HOLIDAY: "Holiday",
}


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

CONVERSATIONS_TABLE = TableDefinition(
    default="Conversations",
    env_vars=("CONVERSATIONS_TABLE",),
    fields={
        "AGENCY": FieldDefinition(default="Agency ID", env_vars=("CONV_AGENCY_FIELD",)),
        "AGENT": FieldDefinition(default="Agent ID", env_vars=("CONV_AGENT_FIELD",)),
        "DEAL": FieldDefinition(default="Deal ID", env_vars=("CONV_DEAL_FIELD",)),
        "CLIENT_PHONE": FieldDefinition(default="Client Phone", env_vars=("CONV_CLIENT_PHONE_FIELD",)),
        "TYPE": FieldDefinition(
            default="Type",
            env_vars=("CONV_TYPE_FIELD",),
            options=tuple(t.value for t in ConversationType),
        ),
        "IS_ACTIVE": FieldDefinition(default="Is Active", env_vars=("CONV_IS_ACTIVE_FIELD",)),
        "LAST_MESSAGE_AT": FieldDefinition(default="Last Message At", env_vars=("CONV_LAST_MESSAGE_AT_FIELD",)),
        "OPT_IN_STATUS": FieldDefinition(
            default="SMS Opt-In Status",
            env_vars=("CONV_OPT_IN_STATUS_FIELD",),
            options=tuple(s.value for s in OptInStatus),
        ),
        "OPTED_IN_AT": FieldDefinition(default="Opted In At"),
        "OPTED_OUT_AT": FieldDefinition(default="Opted Out At"),
        "CREATED_AT": FieldDefinition(default="Created At"),
    },
)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

MESSAGES_TABLE = TableDefinition(
    default="Messages",
    env_vars=("MESSAGES_TABLE",),
    fields={
        "CONVERSATION": FieldDefinition(default="Conversation ID", env_vars=("MSG_CONVERSATION_FIELD",)),
        "SENDER": FieldDefinition(default="Sender ID"),
        "RECEIVER": FieldDefinition(default="Receiver ID"),
        "BODY": FieldDefinition(default="Body", env_vars=("MSG_BODY_FIELD",)),
        "DIRECTION": FieldDefinition(
            default="Direction",
            options=tuple(d.value for d in MessageDirection),
        ),
        "STATUS": FieldDefinition(
            default="Status",
            env_vars=("MSG_STATUS_FIELD",),
            options=tuple(s.value for s in MessageStatus),
        ),
        "SENT_AT": FieldDefinition(default="Sent At"),
        "METADATA": FieldDefinition(default="Metadata"),
        "PROVIDER_ID": FieldDefinition(default="Provider Message ID"),
        "CREATED_AT": FieldDefinition(default="Created At"),
    },
)


# ---------------------------------------------------------------------------
# Deals (read-only to the engine)
# ---------------------------------------------------------------------------

DEALS_TABLE = TableDefinition(
    default="Deals",
    env_vars=("DEALS_TABLE",),
    fields={
        "AGENCY": FieldDefinition(default="Agency ID"),
        "AGENT": FieldDefinition(default="Agent ID"),
        "CLIENT_NAME": FieldDefinition(default="Client Name"),
        "CLIENT_PHONE": FieldDefinition(default="Client Phone", env_vars=("DEAL_CLIENT_PHONE_FIELD",)),
        "CLIENT_EMAIL": FieldDefinition(default="Client Email"),
        "DATE_OF_BIRTH": FieldDefinition(default="Date of Birth"),
        "EFFECTIVE_DATE": FieldDefinition(default="Policy Effective Date"),
        "BILLING_CYCLE": FieldDefinition(
            default="Billing Cycle",
            options=tuple(c.value for c in BillingCycle),
        ),
        "STATUS": FieldDefinition(
            default="Status",
            env_vars=("DEAL_STATUS_FIELD",),
            options=tuple(s.value for s in DealStatus),
        ),
        "POLICY_NUMBER": FieldDefinition(default="Policy Number"),
        "CARRIER": FieldDefinition(default="Carrier"),
    },
)


# ---------------------------------------------------------------------------
# Agents / Agencies (read-only to the engine)
# ---------------------------------------------------------------------------

AGENTS_TABLE = TableDefinition(
    default="Agents",
    env_vars=("AGENTS_TABLE",),
    fields={
        "AGENCY": FieldDefinition(default="Agency ID"),
        "FIRST_NAME": FieldDefinition(default="First Name"),
        "LAST_NAME": FieldDefinition(default="Last Name"),
        "PHONE": FieldDefinition(default="Phone Number"),
        "TIER": FieldDefinition(
            default="Subscription Tier",
            options=tuple(t.value for t in SubscriptionTier),
        ),
        "AUTO_SEND_OVERRIDE": FieldDefinition(
            default="SMS Auto Send",
            options=tuple(o.value for o in AutoSendOverride),
        ),
    },
)


def _trigger_setting_fields() -> Dict[str, FieldDefinition]:
    fields: Dict[str, FieldDefinition] = {}
    for trigger, label in TRIGGER_LABELS.items():
        key = trigger.name
        fields[f"{key}_ENABLED"] = FieldDefinition(default=f"{label} Enabled")
        fields[f"{key}_TEMPLATE"] = FieldDefinition(default=f"{label} Template")
        fields[f"{key}_REQUIRE_APPROVAL"] = FieldDefinition(default=f"{label} Require Approval")
    return fields


AGENCIES_TABLE = TableDefinition(
    default="Agencies",
    env_vars=("AGENCIES_TABLE",),
    fields={
        "NAME": FieldDefinition(default="Name"),
        "PHONE": FieldDefinition(default="SMS Phone Number", env_vars=("AGENCY_PHONE_FIELD",)),
        "MESSAGING_ENABLED": FieldDefinition(default="Messaging Enabled"),
        "AUTO_SEND_ENABLED": FieldDefinition(default="SMS Auto Send Enabled"),
        **_trigger_setting_fields(),
    },
)


def trigger_field(trigger: TriggerType, suffix: str) -> str:
    """Agencies column for a per-trigger setting (suffix: ENABLED | TEMPLATE | REQUIRE_APPROVAL)."""
    return AGENCIES_TABLE.field_name(f"{trigger.name}_{suffix}")
