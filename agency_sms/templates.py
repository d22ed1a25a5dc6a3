# agency_sms/templates.py
"""
Template rendering for automated messages.

Templates are fixed strings with ``{{placeholder}}`` tokens. Rendering never
fails: a token without a value renders as the empty string and is logged.
"""

from __future__ import annotations

import re
from typing import Dict, FrozenSet, Mapping, Optional, Set

from agency_sms.runtime import get_logger
from agency_sms.schema import TriggerType

logger = get_logger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")

# -------------------------------
# Default templates
# -------------------------------

DEFAULT_TEMPLATES: Dict[TriggerType, str] = {
    TriggerType.WELCOME: (
        "Welcome {{client_first_name}}! Thank you for choosing {{agency_name}} for your life insurance needs. "
        "Your agent {{agent_name}} is here to help. Complete your account setup via the invitation sent to "
        "{{client_email}}. Msg&data rates may apply. Reply STOP to opt out."
    ),
    TriggerType.BIRTHDAY: (
        "Happy Birthday, {{client_first_name}}! Wishing you a great year ahead from your friends at {{agency_name}}."
    ),
    TriggerType.BILLING_REMINDER: (
        "Hi {{client_first_name}}, this is a friendly reminder that your insurance premium is due soon. "
        "Please ensure funds are available for your scheduled payment. Thank you!"
    ),
    TriggerType.QUARTERLY_CHECKIN: (
        "Hi {{client_first_name}}, it's {{agent_name}} checking in on your policy. Has anything changed, "
        "or do you have any questions? Reach me anytime at {{agent_phone}}."
    ),
    TriggerType.POLICY_PACKET_CHECKUP: (
        "Hi {{client_first_name}}, this is {{agent_name}}. Your policy packet should have arrived by now. "
        "Let me know if you have any questions about it: {{agent_phone}}."
    ),
    TriggerType.HOLIDAY: (
        "{{holiday_greeting}}, {{client_first_name}}! Wishing you and your family the best from "
        "{{agent_name}} at {{agency_name}}."
    ),
}

# Placeholders each trigger type may reference.
PLACEHOLDERS: Dict[TriggerType, FrozenSet[str]] = {
    TriggerType.WELCOME: frozenset({"client_first_name", "agency_name", "agent_name", "agent_phone", "client_email"}),
    TriggerType.BIRTHDAY: frozenset({"client_first_name", "agency_name"}),
    TriggerType.BILLING_REMINDER: frozenset({"client_first_name"}),
    TriggerType.QUARTERLY_CHECKIN: frozenset({"client_first_name", "agent_name", "agent_phone"}),
    TriggerType.POLICY_PACKET_CHECKUP: frozenset({"client_first_name", "agent_name", "agent_phone"}),
    TriggerType.HOLIDAY: frozenset({"client_first_name", "agent_name", "agency_name", "holiday_greeting"}),
}


# -------------------------------
# Helpers
# -------------------------------


def placeholders_in(template: str) -> Set[str]:
    return set(PLACEHOLDER_RE.findall(template or ""))


def unknown_placeholders(template: str, trigger_type: TriggerType) -> Set[str]:
    """Placeholders the template uses that are not documented for its type."""
    allowed = PLACEHOLDERS.get(TriggerType(trigger_type), frozenset())
    return placeholders_in(template) - allowed


def template_for(trigger_type: TriggerType, configured: Optional[str]) -> str:
    """Agency template when configured, otherwise the default."""
    if configured and configured.strip():
        return configured
    return DEFAULT_TEMPLATES[TriggerType(trigger_type)]


def render(template: str, values: Mapping[str, Optional[str]]) -> str:
    """Substitute every ``{{name}}`` token; missing values become ""."""
    missing: Set[str] = set()

    def _sub(match: "re.Match[str]") -> str:
        name = match.group(1)
        value = values.get(name)
        if value is None:
            missing.add(name)
            return ""
        return str(value)

    rendered = PLACEHOLDER_RE.sub(_sub, template or "")
    if missing:
        logger.info("Template placeholders without values: %s", ", ".join(sorted(missing)))
    return rendered


def format_phone_for_display(phone: Optional[str]) -> Optional[str]:
    """(555) 123-4567 for ten-digit numbers, the input otherwise."""
    if not phone:
        return None
    digits = "".join(ch for ch in str(phone) if ch.isdigit())
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        return phone
    return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
