import pytest

from conftest import make_agency, make_agent, make_deal
from agency_sms.errors import DraftStateError, NotFoundError
from agency_sms.schema import MessageStatus, OptInStatus


@pytest.fixture
def conversation(engine):
    agency_id = make_agency()
    agent_id = make_agent(agency_id)
    deal_id = make_deal(agency_id, agent_id)
    conv, _ = engine.resolver.resolve(deal_id, agency_id, "5551234567", agent_id)
    return conv


def _draft(engine, conversation, body="Happy Birthday, Jane!"):
    return engine.messages.append(
        conversation,
        sender_id=conversation.agent_id,
        receiver_id=None,
        body=body,
        direction="outbound",
        status="draft",
        metadata={"automated": True, "type": "birthday"},
    )


def test_approve_flips_to_sent_and_dispatches(engine, dispatcher, conversation):
    draft = _draft(engine, conversation)

    result = engine.drafts.approve([draft.id, draft.id])

    assert result == {"ok": True, "approved": [draft.id], "errors": []}
    assert dispatcher.sent == [{"from": "+15550001111", "to": "5551234567", "text": "Happy Birthday, Jane!"}]
    stored = engine.messages.require(draft.id)
    assert stored.status == "sent"
    assert stored.sent_at
    assert stored.provider_id == "msg_1"


def test_second_approval_reports_not_a_draft(engine, dispatcher, conversation):
    draft = _draft(engine, conversation)
    engine.drafts.approve([draft.id])

    result = engine.drafts.approve([draft.id, "rec_missing"])

    assert result["approved"] == []
    reasons = {e["id"]: e["reason"] for e in result["errors"]}
    assert reasons[draft.id].startswith("not_a_draft")
    assert "rec_missing" in reasons
    assert len(dispatcher.sent) == 1


def test_approval_in_progress_is_reported(engine, dispatcher, conversation):
    draft = _draft(engine, conversation)
    engine.claims.claim(engine.drafts.claim_key(draft.id))

    result = engine.drafts.approve([draft.id])

    assert result["errors"] == [{"id": draft.id, "reason": "approval_in_progress"}]
    assert engine.messages.require(draft.id).is_draft
    assert dispatcher.sent == []


def test_dispatch_failure_after_approval_marks_failed(engine, dispatcher, conversation):
    dispatcher.fail = True
    draft = _draft(engine, conversation)

    result = engine.drafts.approve([draft.id])

    assert result["approved"] == []
    assert result["errors"][0]["reason"].startswith("dispatch_failed")
    stored = engine.messages.require(draft.id)
    assert stored.status == "failed"
    assert "upstream down" in stored.metadata["send_error"]


def test_reject_deletes_only_drafts(engine, conversation):
    draft = _draft(engine, conversation)
    sent = engine.messages.append(
        conversation, sender_id="agent1", receiver_id=None, body="manual", direction="outbound", status="sent"
    )

    result = engine.drafts.reject([draft.id, sent.id, "rec_missing"])

    assert result == {"ok": True, "rejected": 1}
    assert engine.messages.get(draft.id) is None
    assert engine.messages.require(sent.id).status == "sent"


def test_edit_body_replaces_draft_text(engine, conversation):
    draft = _draft(engine, conversation)

    edited = engine.drafts.edit_body(draft.id, "  Happy Birthday from Sam!  ")

    assert edited.body == "Happy Birthday from Sam!"
    assert edited.status == "draft"
    assert engine.messages.require(draft.id).body == "Happy Birthday from Sam!"


def test_edit_body_rejects_blank_and_non_drafts(engine, conversation):
    draft = _draft(engine, conversation)
    with pytest.raises(ValueError):
        engine.drafts.edit_body(draft.id, "   ")

    engine.drafts.approve([draft.id])
    with pytest.raises(DraftStateError):
        engine.drafts.edit_body(draft.id, "too late")
    with pytest.raises(NotFoundError):
        engine.drafts.edit_body("rec_missing", "hello")


def test_pending_lists_drafts_only(engine, conversation):
    first = _draft(engine, conversation, body="one")
    second = _draft(engine, conversation, body="two")
    engine.drafts.approve([first.id])

    assert [m.id for m in engine.drafts.pending()] == [second.id]


def test_retry_failed_moves_back_to_sent(engine, dispatcher, conversation):
    dispatcher.fail = True
    draft = _draft(engine, conversation)
    engine.drafts.approve([draft.id])
    dispatcher.fail = False

    result = engine.drafts.retry_failed([draft.id])

    assert result["retried"] == [draft.id]
    stored = engine.messages.require(draft.id)
    assert stored.status == MessageStatus.SENT.value
    assert stored.provider_id == "msg_1"

    again = engine.drafts.retry_failed([draft.id])
    assert again["errors"] == [{"id": draft.id, "reason": "not_failed (sent)"}]


def test_approve_after_stop_keeps_the_draft_unsent(engine, dispatcher, conversation):
    draft = _draft(engine, conversation)
    engine.conversations.set_opt_in_status(conversation.id, OptInStatus.OPTED_OUT)

    result = engine.drafts.approve([draft.id])

    assert result == {"ok": True, "approved": [], "errors": [{"id": draft.id, "reason": "opted_out"}]}
    assert dispatcher.sent == []
    stored = engine.messages.require(draft.id)
    assert stored.status == "draft"
    assert stored.sent_at is None


def test_retry_after_stop_does_not_send(engine, dispatcher, conversation):
    dispatcher.fail = True
    draft = _draft(engine, conversation)
    engine.drafts.approve([draft.id])
    dispatcher.fail = False
    engine.conversations.set_opt_in_status(conversation.id, OptInStatus.OPTED_OUT)

    result = engine.drafts.retry_failed([draft.id])

    assert result["errors"] == [{"id": draft.id, "reason": "opted_out"}]
    assert dispatcher.sent == []
    assert engine.messages.require(draft.id).status == "failed"


def test_approval_claim_is_released_before_dispatch(engine, conversation):
    draft = _draft(engine, conversation)
    seen = {}

    class _Recording:
        def send(self, from_number, to, text):
            seen["claim"] = engine.claims.get(engine.drafts.claim_key(draft.id))
            seen["status"] = engine.messages.require(draft.id).status
            return {"provider_id": "msg_9"}

    engine.drafts.dispatcher = _Recording()

    assert engine.drafts.approve([draft.id])["approved"] == [draft.id]
    assert seen == {"claim": None, "status": "sent"}
