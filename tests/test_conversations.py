import os
import threading

from agency_sms.config import settings
from agency_sms.conversations import RESELECT_BASE_DELAY, reselect_attempts_for
from agency_sms.datastore import CONNECTOR, WRITE_RETRY_BUDGET_SEC, match_formula, safe_all
from agency_sms.schema import CONVERSATIONS_TABLE, OptInStatus


def _active_rows(agency_id, phone):
    names = CONVERSATIONS_TABLE.field_names()
    formula = match_formula({names["AGENCY"]: agency_id, names["CLIENT_PHONE"]: phone, names["IS_ACTIVE"]: True})
    return safe_all(CONNECTOR.conversations(), formula=formula)


def test_resolve_creates_once_then_reuses(engine):
    conversation, created = engine.resolver.resolve("deal1", "agency1", "+1 (555) 123-4567", "agent1")
    assert created is True
    assert conversation.client_phone == "5551234567"
    assert conversation.opted_in
    assert conversation.opted_in_at

    again, created_again = engine.resolver.resolve("deal1", "agency1", "5551234567", "agent1")
    assert created_again is False
    assert again.id == conversation.id


def test_phone_match_links_missing_deal(engine):
    conversation, _ = engine.resolver.resolve(None, "agency1", "5551234567")
    assert conversation.deal_id is None

    linked, created = engine.resolver.resolve("deal9", "agency1", "5551234567", "agent1")
    assert created is False
    assert linked.id == conversation.id
    assert linked.deal_id == "deal9"
    assert engine.resolver.get_if_exists("deal9", "agency1", "0000000000").id == conversation.id


def test_get_if_exists_never_creates(engine):
    assert engine.resolver.get_if_exists("deal1", "agency1", "5551234567") is None
    assert _active_rows("agency1", "5551234567") == []


def test_concurrent_resolution_yields_one_active_conversation(engine):
    results = []
    errors = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        try:
            results.append(engine.resolver.resolve(None, "agency1", "5551234567", "agent1"))
        except Exception as exc:  # surfaced through the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len({conv.id for conv, _ in results}) == 1
    assert sum(1 for _, created in results if created) == 1
    assert len(_active_rows("agency1", "5551234567")) == 1


def test_deactivate_frees_the_phone_for_a_new_conversation(engine):
    first, _ = engine.resolver.resolve("deal1", "agency1", "5551234567", "agent1")
    engine.conversations.deactivate(first.id)

    second, created = engine.resolver.resolve("deal1", "agency1", "5551234567", "agent1")
    assert created is True
    assert second.id != first.id
    assert engine.conversations.require(first.id).is_active is False


def test_stale_claim_on_externally_deactivated_row_is_recovered(engine):
    first, _ = engine.resolver.resolve(None, "agency1", "5551234567")
    # deactivated directly in the table, so the uniqueness claim still points at it
    engine.conversations.update(first.id, {CONVERSATIONS_TABLE.field_name("IS_ACTIVE"): False})

    second, created = engine.resolver.resolve(None, "agency1", "5551234567")
    assert created is True
    assert second.id != first.id


def test_new_conversations_unknown_when_auto_opt_in_disabled(engine):
    os.environ["AUTO_OPT_IN_NEW_CONVERSATIONS"] = "0"
    settings.cache_clear()
    conversation, _ = engine.resolver.resolve("deal1", "agency1", "5551234567")
    assert conversation.sms_opt_in_status == OptInStatus.UNKNOWN.value


def test_opt_in_status_transitions_record_timestamps(engine):
    conversation, _ = engine.resolver.resolve("deal1", "agency1", "5551234567")
    opted_out = engine.conversations.set_opt_in_status(conversation.id, OptInStatus.OPTED_OUT)
    assert opted_out.sms_opt_in_status == "opted_out"
    assert opted_out.opted_out_at

    opted_in = engine.conversations.set_opt_in_status(conversation.id, OptInStatus.OPTED_IN)
    assert opted_in.opted_in
    assert opted_in.opted_out_at is None


def test_reselect_window_outlasts_the_create_retry_budget(engine):
    attempts = engine.resolver.reselect_attempts
    assert attempts == reselect_attempts_for(2 * WRITE_RETRY_BUDGET_SEC)
    assert RESELECT_BASE_DELAY * (2**attempts - 1) >= WRITE_RETRY_BUDGET_SEC


def test_loser_waits_for_a_slow_winner(engine, monkeypatch):
    repo = engine.conversations
    key = repo.unique_key("agency1", "5551234567")
    assert repo.claims.claim(key)
    slept = []
    winner = {}

    def fake_sleep(seconds):
        slept.append(seconds)
        # the winner's row appears once its write retries are spent
        if sum(slept) >= WRITE_RETRY_BUDGET_SEC and not winner:
            repo.claims.release(key)
            winner["conversation"] = repo.insert_active(
                agency_id="agency1", agent_id="agent1", deal_id=None, client_phone="5551234567"
            )

    monkeypatch.setattr("agency_sms.runtime.time.sleep", fake_sleep)

    conversation, created = engine.resolver.resolve(None, "agency1", "5551234567", "agent1")

    assert created is False
    assert conversation.id == winner["conversation"].id
    assert len(_active_rows("agency1", "5551234567")) == 1
