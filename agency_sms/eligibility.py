"""Decides whether an automated message is skipped, drafted or sent directly."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from agency_sms.models import AgencyMessagingConfig, Conversation
from agency_sms.schema import OptInStatus, SubscriptionTier, TriggerType

RESTRICTED_TIERS = frozenset({SubscriptionTier.FREE.value, SubscriptionTier.BASIC.value})


class SendMode(str, Enum):
    AUTO = "auto"
    DRAFT = "draft"
    SKIP = "skip"


class GateReason(str, Enum):
    MESSAGING_DISABLED = "messaging_disabled"
    TIER_RESTRICTED = "tier_restricted"
    TYPE_DISABLED = "type_disabled"
    NO_CONVERSATION = "no_conversation"
    NOT_OPTED_IN = "not_opted_in"
    MASTER_DISABLED = "master_disabled"
    REQUIRES_APPROVAL = "requires_approval"
    AUTO_SEND = "auto_send"


@dataclass(frozen=True)
class GateDecision:
    eligible: bool
    mode: SendMode
    reason: GateReason

    @classmethod
    def skip(cls, reason: GateReason) -> "GateDecision":
        return cls(False, SendMode.SKIP, reason)


def can_auto_send(
    agency_config: AgencyMessagingConfig,
    agent_tier: Optional[str],
    agent_override: Optional[bool],
    conversation: Optional[Conversation],
    trigger_type: TriggerType,
) -> GateDecision:
    """
    Pure decision over tenant, subscription and opt-in state.

    Checks run in order and the first failing check wins:
    messaging switch, agent tier, per-type switch, opt-in (welcome exempt).
    An eligible message is sent directly only when the effective auto-send
    flag (agent override, else agency default) is on and the type does not
    require approval.
    """
    trigger_type = TriggerType(trigger_type)

    if not agency_config.messaging_enabled:
        return GateDecision.skip(GateReason.MESSAGING_DISABLED)

    if (agent_tier or SubscriptionTier.FREE.value).strip().lower() in RESTRICTED_TIERS:
        return GateDecision.skip(GateReason.TIER_RESTRICTED)

    settings_for_type = agency_config.for_trigger(trigger_type)
    if not settings_for_type.enabled:
        return GateDecision.skip(GateReason.TYPE_DISABLED)

    if trigger_type is TriggerType.WELCOME:
        # an explicit STOP still wins over the welcome exemption
        if conversation is not None and conversation.sms_opt_in_status == OptInStatus.OPTED_OUT.value:
            return GateDecision.skip(GateReason.NOT_OPTED_IN)
    else:
        if conversation is None:
            return GateDecision.skip(GateReason.NO_CONVERSATION)
        if conversation.sms_opt_in_status != OptInStatus.OPTED_IN.value:
            return GateDecision.skip(GateReason.NOT_OPTED_IN)

    effective = agent_override if agent_override is not None else agency_config.auto_send_enabled
    if not effective:
        return GateDecision(True, SendMode.DRAFT, GateReason.MASTER_DISABLED)
    if settings_for_type.require_approval:
        return GateDecision(True, SendMode.DRAFT, GateReason.REQUIRES_APPROVAL)
    return GateDecision(True, SendMode.AUTO, GateReason.AUTO_SEND)
