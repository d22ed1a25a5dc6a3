from datetime import date, timedelta

import pytest

from agency_sms.models import Agency, AgencyMessagingConfig, Agent, Deal
from agency_sms.schema import TriggerType
from agency_sms.triggers import (
    BillingReminderTrigger,
    BirthdayTrigger,
    HolidayTrigger,
    PolicyPacketCheckupTrigger,
    QuarterlyCheckinTrigger,
    TriggerContext,
    build_triggers,
    holiday_for,
    next_billing_date,
)


def _deal(**overrides):
    base = dict(id="deal1", agency_id="agency1", agent_id="agent1", client_name="Jane Client", client_phone="5551234567", status="active")
    base.update(overrides)
    return Deal(**base)


# ---------- billing ----------
def test_next_billing_date_is_strictly_after_today():
    effective = date(2024, 1, 15)
    assert next_billing_date(effective, "monthly", date(2025, 4, 12)) == date(2025, 4, 15)
    assert next_billing_date(effective, "monthly", date(2025, 4, 15)) == date(2025, 5, 15)
    assert next_billing_date(effective, "quarterly", date(2024, 1, 15)) == date(2024, 4, 15)
    assert next_billing_date(effective, "annually", date(2024, 6, 1)) == date(2025, 1, 15)
    assert next_billing_date(effective, "semi-annually", date(2024, 6, 1)) == date(2024, 7, 15)


def test_next_billing_date_clamps_to_month_end_without_drift():
    effective = date(2025, 1, 31)
    assert next_billing_date(effective, "monthly", date(2025, 2, 10)) == date(2025, 2, 28)
    assert next_billing_date(effective, "monthly", date(2025, 3, 1)) == date(2025, 3, 31)


def test_next_billing_date_unknown_cycle():
    assert next_billing_date(date(2024, 1, 15), "weekly", date(2025, 1, 1)) is None
    assert next_billing_date(None, "monthly", date(2025, 1, 1)) is None


def test_billing_candidate_exactly_three_days_out():
    trigger = BillingReminderTrigger(days_ahead=3)
    deal = _deal(effective_date=date(2024, 1, 15), billing_cycle="monthly")
    assert trigger.find_candidates([deal], date(2025, 4, 12)) == [deal]
    assert trigger.find_candidates([deal], date(2025, 3, 20)) == []
    assert trigger.find_candidates([deal], date(2025, 4, 13)) == []


def test_billing_metadata_carries_next_date():
    trigger = BillingReminderTrigger()
    deal = _deal(effective_date=date(2024, 1, 15), billing_cycle="monthly")
    ctx = TriggerContext(deal, Agent("agent1", "agency1"), Agency("agency1", "Acme", None, AgencyMessagingConfig("agency1")))
    meta = trigger.metadata(ctx, date(2025, 3, 12))
    assert meta["next_billing_date"] == "2025-03-15"
    assert meta["automated"] is True
    assert meta["type"] == "billing_reminder"


# ---------- day-count triggers ----------
def test_birthday_matches_month_and_day_only():
    trigger = BirthdayTrigger()
    today = date(2025, 6, 15)
    due = _deal(date_of_birth=date(1980, 6, 15))
    not_due = _deal(id="deal2", date_of_birth=date(1980, 6, 16))
    inactive = _deal(id="deal3", date_of_birth=date(1980, 6, 15), status="lapsed")
    no_phone = _deal(id="deal4", date_of_birth=date(1980, 6, 15), client_phone="")
    assert trigger.find_candidates([due, not_due, inactive, no_phone], today) == [due]


@pytest.mark.parametrize("days,expected", [(0, False), (14, False), (90, True), (91, False), (180, True), (-90, False)])
def test_quarterly_checkin_positive_multiples_of_90(days, expected):
    today = date(2025, 6, 1)
    deal = _deal(effective_date=today - timedelta(days=days))
    assert bool(QuarterlyCheckinTrigger().find_candidates([deal], today)) is expected


def test_policy_packet_checkup_on_day_14():
    today = date(2025, 6, 1)
    trigger = PolicyPacketCheckupTrigger()
    assert trigger.find_candidates([_deal(effective_date=today - timedelta(days=14))], today)
    assert not trigger.find_candidates([_deal(effective_date=today - timedelta(days=15))], today)


# ---------- holidays ----------
@pytest.mark.parametrize(
    "day,name",
    [
        (date(2025, 1, 1), "New Year's Day"),
        (date(2025, 1, 20), "Martin Luther King Jr. Day"),
        (date(2025, 2, 17), "Presidents' Day"),
        (date(2025, 5, 26), "Memorial Day"),
        (date(2025, 7, 4), "Independence Day"),
        (date(2025, 9, 1), "Labor Day"),
        (date(2025, 10, 13), "Columbus Day / Indigenous Peoples' Day"),
        (date(2025, 11, 27), "Thanksgiving Day"),
        (date(2025, 12, 25), "Christmas Day"),
    ],
)
def test_holiday_calendar(day, name):
    assert holiday_for(day).name == name


def test_non_holidays():
    assert holiday_for(date(2025, 7, 5)) is None
    assert holiday_for(date(2025, 5, 19)) is None  # a Monday in May, not the last one


def test_holiday_values_include_greeting():
    trigger = HolidayTrigger()
    deal = _deal()
    ctx = TriggerContext(deal, Agent("agent1", "agency1", "Sam", "Agent"), Agency("agency1", "Acme", "+15550001111", AgencyMessagingConfig("agency1")))
    values = trigger.values(ctx, date(2025, 12, 25))
    assert values["holiday_greeting"] == "Merry Christmas"
    assert values["agent_phone"] == "(555) 000-1111"
    assert trigger.find_candidates([deal], date(2025, 12, 26)) == []


def test_welcome_is_not_scheduled():
    triggers = build_triggers()
    assert triggers[TriggerType.WELCOME].scheduled is False
    assert triggers[TriggerType.WELCOME].period_key(date(2025, 1, 1)) == "once"
    assert triggers[TriggerType.WELCOME].find_candidates([_deal()], date(2025, 1, 1)) == []
