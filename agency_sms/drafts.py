"""
Draft approval queue.

Bulk operations are best-effort per item. Each item's status flip is guarded
by a short-lived claim on ``message:{id}:approve`` so two approvers can never
dispatch the same draft. The claim is released once the row reads ``sent``;
dispatch runs after that. Consent is re-read at approval time: a client who
texted STOP after the draft was written gets nothing.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

from agency_sms.conversations import ConversationRepository
from agency_sms.directory import Directory
from agency_sms.errors import ConflictError, DispatchError, DraftStateError, NotFoundError, OptedOutError, SmsEngineError
from agency_sms.idempotency import ClaimStore
from agency_sms.message_log import MessageLog
from agency_sms.models import Message
from agency_sms.runtime import get_logger
from agency_sms.schema import MessageDirection, MessageStatus

logger = get_logger("drafts")


def _unique(ids: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for message_id in ids or []:
        if message_id and message_id not in seen:
            seen.append(message_id)
    return seen


class DraftQueue:
    def __init__(
        self,
        *,
        message_log: MessageLog,
        conversations: ConversationRepository,
        directory: Directory,
        dispatcher: Any,
        claims: ClaimStore,
        claim_ttl: int = 300,
    ) -> None:
        self.log = message_log
        self.conversations = conversations
        self.directory = directory
        self.dispatcher = dispatcher
        self.claims = claims
        self.claim_ttl = claim_ttl

    @staticmethod
    def claim_key(message_id: str) -> str:
        return f"message:{message_id}:approve"

    def pending(self) -> List[Message]:
        return sorted(self.log.drafts(), key=lambda m: (m.created_at or "", m.id))

    def _route(self, message: Message) -> Tuple[Optional[str], str]:
        """(from, to) for an outbound message: the agency number to the client phone.

        Raises OptedOutError when the client has since texted STOP.
        """
        conversation = self.conversations.require(message.conversation_id)
        if conversation.opted_out:
            raise OptedOutError(conversation.id)
        agency = self.directory.get_agency(conversation.agency_id)
        return agency.phone, conversation.client_phone

    def _hold(self, message_id: str) -> None:
        if not self.claims.claim(self.claim_key(message_id), ttl=self.claim_ttl):
            raise ConflictError(self.claim_key(message_id))

    def _free(self, message_id: str) -> None:
        self.claims.release(self.claim_key(message_id))

    @staticmethod
    def _error(message_id: str, exc: SmsEngineError) -> Dict[str, str]:
        if isinstance(exc, OptedOutError):
            return {"id": message_id, "reason": "opted_out"}
        if isinstance(exc, DraftStateError):
            return {"id": message_id, "reason": f"not_a_draft ({exc.status})"}
        return {"id": message_id, "reason": str(exc)}

    def _dispatch(self, message: Message, from_number: Optional[str], to_number: str) -> None:
        """Send a message already marked sent; a transport failure marks it failed."""
        try:
            result = self.dispatcher.send(from_number, to_number, message.body)
        except DispatchError as exc:
            logger.warning("Dispatch failed for %s: %s", message.id, exc)
            metadata = dict(message.metadata)
            metadata["send_error"] = str(exc)
            self.log.transition(message, MessageStatus.FAILED, metadata=metadata)
            raise
        provider_id = result.get("provider_id")
        if provider_id:
            self.log.attach_provider_id(message, provider_id)

    # ------------------------------------------------------------------
    # approve / reject / edit
    # ------------------------------------------------------------------
    def approve(self, message_ids: Iterable[str]) -> Dict[str, Any]:
        """Flip each draft to sent, then dispatch it. Failed dispatches end as ``failed``."""
        approved: List[str] = []
        errors: List[Dict[str, str]] = []
        for message_id in _unique(message_ids):
            try:
                self._hold(message_id)
            except ConflictError:
                errors.append({"id": message_id, "reason": "approval_in_progress"})
                continue
            try:
                sent, from_number, to_number = self._flip_draft(message_id)
            except SmsEngineError as exc:
                if not isinstance(exc, (NotFoundError, DraftStateError, OptedOutError)):
                    logger.exception("Approve failed for %s", message_id)
                errors.append(self._error(message_id, exc))
                continue
            finally:
                self._free(message_id)

            try:
                self._dispatch(sent, from_number, to_number)
            except DispatchError as exc:
                errors.append({"id": message_id, "reason": f"dispatch_failed: {exc}"})
                continue
            except SmsEngineError as exc:
                logger.exception("Approve failed for %s after dispatch", message_id)
                errors.append(self._error(message_id, exc))
                continue
            approved.append(message_id)

        logger.info("✅ Approve batch: approved=%d errors=%d", len(approved), len(errors))
        return {"ok": True, "approved": approved, "errors": errors}

    def _flip_draft(self, message_id: str) -> Tuple[Message, Optional[str], str]:
        message = self.log.require(message_id)
        if not message.is_draft:
            raise DraftStateError(message_id, message.status)
        from_number, to_number = self._route(message)
        return self.log.transition(message, MessageStatus.SENT), from_number, to_number

    def reject(self, message_ids: Iterable[str]) -> Dict[str, Any]:
        """Hard-delete drafts. Anything that is not a draft is left alone."""
        rejected = 0
        for message_id in _unique(message_ids):
            try:
                self._hold(message_id)
            except ConflictError:
                logger.info("Skipping reject of %s: approval in progress", message_id)
                continue
            try:
                message = self.log.get(message_id)
                if message is None or not message.is_draft:
                    continue
                if self.log.delete(message):
                    rejected += 1
            finally:
                self._free(message_id)
        logger.info("🗑️ Rejected %d draft(s)", rejected)
        return {"ok": True, "rejected": rejected}

    def edit_body(self, message_id: str, body: str) -> Message:
        if not body or not body.strip():
            raise ValueError("draft body cannot be blank")
        self._hold(message_id)
        try:
            message = self.log.require(message_id)
            return self.log.replace_body(message, body.strip())
        finally:
            self._free(message_id)

    # ------------------------------------------------------------------
    # failed retry
    # ------------------------------------------------------------------
    def retry_failed(self, message_ids: Iterable[str]) -> Dict[str, Any]:
        """Re-dispatch failed outbound messages; success leaves them sent, failure back at failed."""
        retried: List[str] = []
        errors: List[Dict[str, str]] = []
        for message_id in _unique(message_ids):
            try:
                self._hold(message_id)
            except ConflictError:
                errors.append({"id": message_id, "reason": "approval_in_progress"})
                continue
            try:
                sent, from_number, to_number = self._flip_failed(message_id)
            except SmsEngineError as exc:
                errors.append(self._error(message_id, exc))
                continue
            finally:
                self._free(message_id)

            try:
                self._dispatch(sent, from_number, to_number)
            except DispatchError as exc:
                errors.append({"id": message_id, "reason": f"dispatch_failed: {exc}"})
                continue
            except SmsEngineError as exc:
                logger.exception("Retry failed for %s after dispatch", message_id)
                errors.append(self._error(message_id, exc))
                continue
            retried.append(message_id)

        logger.info("🔁 Retry batch: retried=%d errors=%d", len(retried), len(errors))
        return {"ok": True, "retried": retried, "errors": errors}

    def _flip_failed(self, message_id: str) -> Tuple[Message, Optional[str], str]:
        message = self.log.require(message_id)
        if message.status != MessageStatus.FAILED.value or message.direction != MessageDirection.OUTBOUND.value:
            raise SmsEngineError(f"not_failed ({message.status})")
        from_number, to_number = self._route(message)
        return self.log.transition(message, MessageStatus.SENT), from_number, to_number
