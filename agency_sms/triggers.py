"""
Automated message triggers.

Each trigger selects the deals due for its message on a given day and supplies
the template values and message metadata for one deal. The scheduler drives
every trigger through the same loop.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from dateutil.relativedelta import MO, TH, relativedelta

from agency_sms.models import Agency, Agent, Conversation, Deal
from agency_sms.schema import BillingCycle, TriggerType
from agency_sms.templates import format_phone_for_display

CYCLE_MONTHS: Dict[str, int] = {
    BillingCycle.MONTHLY.value: 1,
    BillingCycle.QUARTERLY.value: 3,
    BillingCycle.SEMI_ANNUALLY.value: 6,
    BillingCycle.ANNUALLY.value: 12,
}

QUARTERLY_INTERVAL_DAYS = 90
POLICY_PACKET_DAY = 14


def _cycle_months(cycle: Optional[str]) -> Optional[int]:
    if not cycle:
        return None
    key = cycle.strip().lower().replace("_", "-").replace(" ", "-")
    if key == "semiannually":
        key = BillingCycle.SEMI_ANNUALLY.value
    return CYCLE_MONTHS.get(key)


def next_billing_date(effective: Optional[date], cycle: Optional[str], today: date) -> Optional[date]:
    """
    First billing date strictly after ``today``.

    Billing dates fall on the effective date plus whole cycles, each computed
    from the effective date so a 31st clamps per month without drifting.
    """
    months = _cycle_months(cycle)
    if effective is None or months is None:
        return None
    k = 0
    candidate = effective
    while candidate <= today:
        k += 1
        candidate = effective + relativedelta(months=k * months)
    return candidate


# ---------------------------------------------------------------------------
# Holidays
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Holiday:
    name: str
    greeting: str


_FIXED_HOLIDAYS = {
    (1, 1): Holiday("New Year's Day", "Happy New Year"),
    (6, 19): Holiday("Juneteenth", "Happy Juneteenth"),
    (7, 4): Holiday("Independence Day", "Happy 4th of July"),
    (11, 11): Holiday("Veterans Day", "Happy Veterans Day"),
    (12, 25): Holiday("Christmas Day", "Merry Christmas"),
}

# (month, anchor day, weekday with occurrence) → holiday
_FLOATING_HOLIDAYS = (
    (1, 1, MO(+3), Holiday("Martin Luther King Jr. Day", "Happy Martin Luther King Jr. Day")),
    (2, 1, MO(+3), Holiday("Presidents' Day", "Happy Presidents' Day")),
    (5, 31, MO(-1), Holiday("Memorial Day", "Happy Memorial Day")),
    (9, 1, MO(+1), Holiday("Labor Day", "Happy Labor Day")),
    (10, 1, MO(+2), Holiday("Columbus Day / Indigenous Peoples' Day", "Happy Columbus Day")),
    (11, 1, TH(+4), Holiday("Thanksgiving Day", "Happy Thanksgiving")),
)


def holiday_for(day: date) -> Optional[Holiday]:
    fixed = _FIXED_HOLIDAYS.get((day.month, day.day))
    if fixed:
        return fixed
    for month, anchor, weekday, holiday in _FLOATING_HOLIDAYS:
        if day.month == month and date(day.year, month, anchor) + relativedelta(weekday=weekday) == day:
            return holiday
    return None


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


def _eligible_contact(deal: Deal) -> bool:
    return deal.is_active and bool(deal.client_phone)


@dataclass
class TriggerContext:
    """Everything a trigger needs to render and describe one message."""

    deal: Deal
    agent: Agent
    agency: Agency
    conversation: Optional[Conversation] = None


class Trigger:
    """Shared shape: candidate selection, template values, message metadata."""

    type: TriggerType
    scheduled = True

    def period_key(self, today: date) -> str:
        return today.isoformat()

    def is_due(self, deal: Deal, today: date) -> bool:
        raise NotImplementedError

    def find_candidates(self, deals: Iterable[Deal], today: date) -> List[Deal]:
        return [deal for deal in deals if _eligible_contact(deal) and self.is_due(deal, today)]

    def values(self, ctx: TriggerContext, today: date) -> Dict[str, Optional[str]]:
        deal, agent, agency = ctx.deal, ctx.agent, ctx.agency
        return {
            "client_first_name": deal.client_first_name,
            "client_email": deal.client_email,
            "agency_name": agency.name,
            "agent_name": agent.full_name,
            "agent_phone": format_phone_for_display(agent.phone)
            or format_phone_for_display(agency.phone)
            or "your agent",
        }

    def metadata(self, ctx: TriggerContext, today: date) -> Dict[str, Any]:
        deal = ctx.deal
        return {
            "automated": True,
            "type": self.type.value,
            "deal_id": deal.id,
            "client_phone": deal.client_phone,
            "client_name": deal.client_name,
        }


class WelcomeTrigger(Trigger):
    """Fired once by conversation start, never by the daily loop."""

    type = TriggerType.WELCOME
    scheduled = False

    def period_key(self, today: date) -> str:
        return "once"

    def is_due(self, deal: Deal, today: date) -> bool:
        return False


class BirthdayTrigger(Trigger):
    type = TriggerType.BIRTHDAY

    def is_due(self, deal: Deal, today: date) -> bool:
        dob = deal.date_of_birth
        return dob is not None and (dob.month, dob.day) == (today.month, today.day)


class BillingReminderTrigger(Trigger):
    type = TriggerType.BILLING_REMINDER

    def __init__(self, days_ahead: int = 3) -> None:
        self.days_ahead = days_ahead

    def is_due(self, deal: Deal, today: date) -> bool:
        upcoming = next_billing_date(deal.effective_date, deal.billing_cycle, today)
        return upcoming is not None and (upcoming - today).days == self.days_ahead

    def metadata(self, ctx: TriggerContext, today: date) -> Dict[str, Any]:
        meta = super().metadata(ctx, today)
        deal = ctx.deal
        upcoming = next_billing_date(deal.effective_date, deal.billing_cycle, today)
        meta.update(
            {
                "billing_cycle": deal.billing_cycle,
                "next_billing_date": upcoming.isoformat() if upcoming else None,
                "policy_effective_date": deal.effective_date.isoformat() if deal.effective_date else None,
            }
        )
        return meta


class _DaysSinceEffectiveTrigger(Trigger):
    def metadata(self, ctx: TriggerContext, today: date) -> Dict[str, Any]:
        meta = super().metadata(ctx, today)
        deal = ctx.deal
        meta.update(
            {
                "days_since_effective": deal.days_since_effective(today),
                "policy_effective_date": deal.effective_date.isoformat() if deal.effective_date else None,
            }
        )
        return meta


class QuarterlyCheckinTrigger(_DaysSinceEffectiveTrigger):
    type = TriggerType.QUARTERLY_CHECKIN

    def is_due(self, deal: Deal, today: date) -> bool:
        days = deal.days_since_effective(today)
        return days is not None and days > 0 and days % QUARTERLY_INTERVAL_DAYS == 0


class PolicyPacketCheckupTrigger(_DaysSinceEffectiveTrigger):
    type = TriggerType.POLICY_PACKET_CHECKUP

    def is_due(self, deal: Deal, today: date) -> bool:
        return deal.days_since_effective(today) == POLICY_PACKET_DAY


class HolidayTrigger(Trigger):
    type = TriggerType.HOLIDAY

    def is_due(self, deal: Deal, today: date) -> bool:
        return holiday_for(today) is not None

    def values(self, ctx: TriggerContext, today: date) -> Dict[str, Optional[str]]:
        values = super().values(ctx, today)
        holiday = holiday_for(today)
        values["holiday_greeting"] = holiday.greeting if holiday else None
        return values

    def metadata(self, ctx: TriggerContext, today: date) -> Dict[str, Any]:
        meta = super().metadata(ctx, today)
        holiday = holiday_for(today)
        meta["holiday_name"] = holiday.name if holiday else None
        return meta


def build_triggers(billing_days_ahead: int = 3) -> Dict[TriggerType, Trigger]:
    triggers: List[Trigger] = [
        WelcomeTrigger(),
        BirthdayTrigger(),
        BillingReminderTrigger(days_ahead=billing_days_ahead),
        QuarterlyCheckinTrigger(),
        PolicyPacketCheckupTrigger(),
        HolidayTrigger(),
    ]
    return {t.type: t for t in triggers}
