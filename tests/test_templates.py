# tests/test_templates.py
import pytest

from agency_sms import templates
from agency_sms.schema import TriggerType


@pytest.mark.parametrize("trigger", list(TriggerType))
def test_default_templates_only_use_documented_placeholders(trigger):
    template = templates.DEFAULT_TEMPLATES[trigger]
    assert templates.unknown_placeholders(template, trigger) == set()


def test_render_substitutes_whitespace_tolerant_tokens():
    msg = templates.render("Hi {{ client_first_name }}, from {{agency_name}}", {"client_first_name": "Jane", "agency_name": "Acme"})
    assert msg == "Hi Jane, from Acme"


def test_missing_values_render_empty():
    msg = templates.render("Hi {{client_first_name}}{{unknown}}!", {"client_first_name": "Jane"})
    assert msg == "Hi Jane!"


def test_render_is_idempotent_on_rendered_output():
    values = {"client_first_name": "Jane"}
    once = templates.render("Hello {{client_first_name}}", values)
    assert templates.render(once, values) == once


def test_render_does_not_recurse_into_values():
    msg = templates.render("{{a}}", {"a": "{{b}}", "b": "nope"})
    assert msg == "{{b}}"


def test_unknown_placeholders_flags_type_specific_tokens():
    template = "Hi {{client_first_name}}, call {{agent_phone}}"
    assert templates.unknown_placeholders(template, TriggerType.BILLING_REMINDER) == {"agent_phone"}
    assert templates.unknown_placeholders(template, TriggerType.QUARTERLY_CHECKIN) == set()


def test_template_for_prefers_configured_template():
    assert templates.template_for(TriggerType.BIRTHDAY, "Custom {{client_first_name}}") == "Custom {{client_first_name}}"
    assert templates.template_for(TriggerType.BIRTHDAY, "   ") == templates.DEFAULT_TEMPLATES[TriggerType.BIRTHDAY]


def test_format_phone_for_display():
    assert templates.format_phone_for_display("+15551234567") == "(555) 123-4567"
    assert templates.format_phone_for_display("12345") == "12345"
    assert templates.format_phone_for_display(None) is None
