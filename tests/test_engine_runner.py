from datetime import date

import pytest

import engine_runner
from conftest import make_agency, make_agent, make_deal


def test_parse_args_defaults_to_all():
    args = engine_runner._parse_args([])
    assert args.triggers == ["all"]
    assert args.date is None

    args = engine_runner._parse_args(["birthday", "holiday", "--date", "2025-12-25"])
    assert args.triggers == ["birthday", "holiday"]
    assert args.date == date(2025, 12, 25)


def test_parse_args_rejects_unknown_and_welcome():
    with pytest.raises(SystemExit):
        engine_runner._parse_args(["welcome"])
    with pytest.raises(SystemExit):
        engine_runner._parse_args(["birthdays"])


def test_run_step_retries_then_succeeds(monkeypatch):
    monkeypatch.setattr(engine_runner.time, "sleep", lambda _s: None)
    monkeypatch.setattr(engine_runner.random, "randint", lambda *_a: 0)
    calls = {"n": 0}

    def flaky():
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("airtable hiccup")
        return {"ok": True, "sent": 2}

    ok, result = engine_runner._run_step("birthday", flaky, retries=2, base_backoff=0)

    assert ok is True
    assert result == {"ok": True, "sent": 2}
    assert calls["n"] == 2


def test_run_step_gives_up_after_retries():
    def broken():
        raise RuntimeError("down")

    ok, result = engine_runner._run_step("holiday", broken, retries=0, base_backoff=0)

    assert ok is False
    assert result == {"ok": False, "error": "down"}


def test_main_runs_selected_triggers(engine, dispatcher):
    agency_id = make_agency()
    agent_id = make_agent(agency_id)
    deal_id = make_deal(agency_id, agent_id, dob=date(1980, 6, 15))
    engine.resolver.resolve(deal_id, agency_id, "5551234567", agent_id)

    assert engine_runner.main(["birthday", "--date", "2025-06-15", "--retries", "0"]) == 0
    assert len(dispatcher.sent) == 1
