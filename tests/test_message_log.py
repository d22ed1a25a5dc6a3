import pytest

from agency_sms.errors import DraftStateError
from agency_sms.schema import MessageDirection, MessageStatus


@pytest.fixture
def conversation(engine):
    conv, _ = engine.resolver.resolve("deal1", "agency1", "5551234567", "agent1")
    return conv


def test_sent_message_sets_sent_at_and_touches_conversation(engine, conversation):
    message = engine.messages.append(
        conversation,
        sender_id="agent1",
        receiver_id=None,
        body="hello",
        direction=MessageDirection.OUTBOUND,
        status=MessageStatus.SENT,
        provider_id="msg_1",
    )
    assert message.sent_at
    assert message.metadata == {"automated": False, "type": None}
    assert engine.conversations.require(conversation.id).last_message_at


def test_draft_has_no_sent_at_and_leaves_last_message_alone(engine, conversation):
    draft = engine.messages.append(
        conversation,
        sender_id="agent1",
        receiver_id=None,
        body="draft",
        direction="outbound",
        status="draft",
        metadata={"automated": True, "type": "birthday"},
    )
    assert draft.is_draft
    assert draft.sent_at is None
    assert engine.conversations.require(conversation.id).last_message_at is None


@pytest.mark.parametrize(
    "direction,status,metadata",
    [
        ("outbound", "draft", {"automated": False}),
        ("inbound", "draft", {"automated": True}),
        ("outbound", "received", {}),
        ("inbound", "sent", {}),
    ],
)
def test_illegal_new_messages_are_rejected(engine, conversation, direction, status, metadata):
    with pytest.raises(ValueError):
        engine.messages.append(
            conversation, sender_id=None, receiver_id=None, body="x", direction=direction, status=status, metadata=metadata
        )


def test_transitions_follow_the_state_machine(engine, conversation):
    draft = engine.messages.append(
        conversation, sender_id="agent1", receiver_id=None, body="d", direction="outbound", status="draft",
        metadata={"automated": True, "type": "birthday"},
    )
    sent = engine.messages.transition(draft, MessageStatus.SENT)
    assert sent.status == "sent"
    assert sent.sent_at

    with pytest.raises(DraftStateError):
        engine.messages.transition(sent, MessageStatus.SENT)

    failed = engine.messages.transition(sent, MessageStatus.FAILED)
    assert failed.status == "failed"

    received = engine.messages.append(
        conversation, sender_id=None, receiver_id="agent1", body="hi", direction="inbound", status="received"
    )
    with pytest.raises(DraftStateError):
        engine.messages.transition(received, MessageStatus.SENT)


def test_replace_body_only_on_drafts(engine, conversation):
    sent = engine.messages.append(
        conversation, sender_id="agent1", receiver_id=None, body="s", direction="outbound", status="sent"
    )
    with pytest.raises(DraftStateError):
        engine.messages.replace_body(sent, "changed")


def test_for_conversation_filters_by_status(engine, conversation):
    engine.messages.append(conversation, sender_id=None, receiver_id="agent1", body="in", direction="inbound", status="received")
    engine.messages.append(
        conversation, sender_id="agent1", receiver_id=None, body="d", direction="outbound", status="draft",
        metadata={"automated": True, "type": "birthday"},
    )
    assert len(engine.messages.for_conversation(conversation.id)) == 2
    drafts = engine.messages.for_conversation(conversation.id, status=MessageStatus.DRAFT)
    assert [m.body for m in drafts] == ["d"]
