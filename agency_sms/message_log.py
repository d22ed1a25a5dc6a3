"""Append-only message log with the message state machine."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from agency_sms.conversations import ConversationRepository
from agency_sms.datastore import CONNECTOR, match_formula, safe_all, safe_create, safe_delete, safe_get, safe_update
from agency_sms.errors import DraftStateError, NotFoundError, SmsEngineError
from agency_sms.models import Conversation, Message, encode_metadata
from agency_sms.runtime import get_logger, iso_now
from agency_sms.schema import MESSAGES_TABLE, MessageDirection, MessageStatus

logger = get_logger(__name__)

F = MESSAGES_TABLE.field_names

# Status flips allowed after creation. Drafts leave the log by deletion, not by status.
TRANSITIONS: Dict[MessageStatus, frozenset] = {
    MessageStatus.DRAFT: frozenset({MessageStatus.SENT}),
    MessageStatus.SENT: frozenset({MessageStatus.FAILED}),
    MessageStatus.FAILED: frozenset({MessageStatus.SENT}),
    MessageStatus.RECEIVED: frozenset(),
}


def validate_new_message(direction: MessageDirection, status: MessageStatus, metadata: Dict[str, Any]) -> None:
    if status is MessageStatus.DRAFT:
        if direction is not MessageDirection.OUTBOUND or not metadata.get("automated"):
            raise ValueError("draft is only valid for automated outbound messages")
    if status is MessageStatus.RECEIVED and direction is not MessageDirection.INBOUND:
        raise ValueError("received is only valid for inbound messages")
    if direction is MessageDirection.INBOUND and status is not MessageStatus.RECEIVED:
        raise ValueError("inbound messages are logged as received")


class MessageLog:
    def __init__(self, conversations: ConversationRepository) -> None:
        self.conversations = conversations

    def append(
        self,
        conversation: Conversation,
        *,
        sender_id: Optional[str],
        receiver_id: Optional[str],
        body: str,
        direction: MessageDirection | str,
        status: MessageStatus | str,
        metadata: Optional[Dict[str, Any]] = None,
        provider_id: Optional[str] = None,
    ) -> Message:
        direction = MessageDirection(direction)
        status = MessageStatus(status)
        metadata = dict(metadata or {})
        metadata.setdefault("automated", False)
        metadata.setdefault("type", None)
        validate_new_message(direction, status, metadata)

        now = iso_now()
        names = F()
        fields = {
            names["CONVERSATION"]: conversation.id,
            names["SENDER"]: sender_id,
            names["RECEIVER"]: receiver_id,
            names["BODY"]: body,
            names["DIRECTION"]: direction.value,
            names["STATUS"]: status.value,
            names["SENT_AT"]: now if status is MessageStatus.SENT else None,
            names["METADATA"]: encode_metadata(metadata),
            names["PROVIDER_ID"]: provider_id,
            names["CREATED_AT"]: now,
        }
        record = safe_create(CONNECTOR.messages(), fields)
        if not record:
            raise SmsEngineError(f"message create failed for conversation {conversation.id}")

        if status is not MessageStatus.DRAFT:
            self.conversations.touch(conversation.id, now)
        return Message.from_record(record)

    # ---------- reads ----------
    def get(self, message_id: str) -> Optional[Message]:
        record = safe_get(CONNECTOR.messages(), message_id)
        return Message.from_record(record) if record else None

    def require(self, message_id: str) -> Message:
        message = self.get(message_id)
        if message is None:
            raise NotFoundError("message", message_id)
        return message

    def for_conversation(self, conversation_id: str, status: Optional[MessageStatus] = None) -> List[Message]:
        names = F()
        conditions: Dict[str, Any] = {names["CONVERSATION"]: conversation_id}
        if status is not None:
            conditions[names["STATUS"]] = MessageStatus(status).value
        rows = safe_all(CONNECTOR.messages(), formula=match_formula(conditions))
        return sorted((Message.from_record(r) for r in rows), key=lambda m: (m.created_at or "", m.id))

    def drafts(self) -> List[Message]:
        rows = safe_all(CONNECTOR.messages(), formula=match_formula({F()["STATUS"]: MessageStatus.DRAFT.value}))
        return [Message.from_record(r) for r in rows]

    # ---------- mutations (draft queue only) ----------
    def transition(
        self,
        message: Message,
        to_status: MessageStatus,
        *,
        provider_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Message:
        current = MessageStatus(message.status)
        to_status = MessageStatus(to_status)
        if to_status not in TRANSITIONS[current]:
            if current is MessageStatus.DRAFT or to_status is MessageStatus.SENT:
                raise DraftStateError(message.id, current.value)
            raise SmsEngineError(f"illegal transition {current.value} -> {to_status.value} for {message.id}")

        names = F()
        fields: Dict[str, Any] = {names["STATUS"]: to_status.value}
        if to_status is MessageStatus.SENT:
            fields[names["SENT_AT"]] = iso_now()
        if provider_id:
            fields[names["PROVIDER_ID"]] = provider_id
        if metadata is not None:
            fields[names["METADATA"]] = encode_metadata(metadata)
        record = safe_update(CONNECTOR.messages(), message.id, fields)
        if not record:
            raise SmsEngineError(f"status update failed for {message.id}")
        if to_status is MessageStatus.SENT:
            self.conversations.touch(message.conversation_id)
        return Message.from_record(record)

    def attach_provider_id(self, message: Message, provider_id: str) -> Message:
        record = safe_update(CONNECTOR.messages(), message.id, {F()["PROVIDER_ID"]: provider_id})
        if not record:
            raise SmsEngineError(f"provider id update failed for {message.id}")
        return Message.from_record(record)

    def replace_body(self, message: Message, body: str) -> Message:
        if not message.is_draft:
            raise DraftStateError(message.id, message.status)
        record = safe_update(CONNECTOR.messages(), message.id, {F()["BODY"]: body})
        if not record:
            raise SmsEngineError(f"body update failed for {message.id}")
        return Message.from_record(record)

    def delete(self, message: Message) -> bool:
        return safe_delete(CONNECTOR.messages(), message.id)
