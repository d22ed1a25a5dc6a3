"""
Conversation persistence and resolution.

One active conversation exists per (agency, client phone, type). Airtable
cannot enforce that, so creation goes through a claim in the idempotency
store: the first writer inserts the row, any concurrent writer gets a
ConflictError and re-reads the winner's row.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from agency_sms.config import settings
from agency_sms.datastore import (
    CONNECTOR,
    WRITE_RETRY_BUDGET_SEC,
    match_formula,
    safe_all,
    safe_create,
    safe_get,
    safe_update,
)
from agency_sms.errors import ConflictError, NotFoundError, SmsEngineError
from agency_sms.idempotency import PENDING, ClaimStore
from agency_sms.models import Conversation
from agency_sms.runtime import get_logger, iso_now, retry, storage_phone
from agency_sms.schema import CONVERSATIONS_TABLE, ConversationType, OptInStatus

logger = get_logger(__name__)

F = CONVERSATIONS_TABLE.field_names


class ConversationRepository:
    """Airtable-backed conversations with a claim-guarded unique index."""

    def __init__(self, claims: ClaimStore) -> None:
        self.claims = claims

    @staticmethod
    def unique_key(agency_id: str, client_phone: str, conv_type: str = ConversationType.SMS.value) -> str:
        return f"conversation:{agency_id}:{client_phone}:{conv_type}"

    # ---------- reads ----------
    def get(self, conversation_id: str) -> Optional[Conversation]:
        record = safe_get(CONNECTOR.conversations(), conversation_id)
        return Conversation.from_record(record) if record else None

    def require(self, conversation_id: str) -> Conversation:
        conversation = self.get(conversation_id)
        if conversation is None:
            raise NotFoundError("conversation", conversation_id)
        return conversation

    def find_active_by_deal(self, deal_id: str) -> Optional[Conversation]:
        names = F()
        formula = match_formula({names["DEAL"]: deal_id, names["IS_ACTIVE"]: True})
        rows = safe_all(CONNECTOR.conversations(), formula=formula, max_records=1)
        return Conversation.from_record(rows[0]) if rows else None

    def find_active_by_phone(
        self, agency_id: str, client_phone: str, conv_type: str = ConversationType.SMS.value
    ) -> Optional[Conversation]:
        names = F()
        formula = match_formula(
            {
                names["AGENCY"]: agency_id,
                names["CLIENT_PHONE"]: client_phone,
                names["TYPE"]: conv_type,
                names["IS_ACTIVE"]: True,
            }
        )
        rows = safe_all(CONNECTOR.conversations(), formula=formula, max_records=1)
        return Conversation.from_record(rows[0]) if rows else None

    # ---------- writes ----------
    def insert_active(
        self,
        *,
        agency_id: str,
        agent_id: Optional[str],
        deal_id: Optional[str],
        client_phone: str,
        conv_type: str = ConversationType.SMS.value,
    ) -> Conversation:
        """Create the active conversation or raise ConflictError if one is claimed."""
        key = self.unique_key(agency_id, client_phone, conv_type)
        if not self.claims.claim(key):
            raise ConflictError(key, holder=self.claims.get(key))

        now = iso_now()
        names = F()
        fields: Dict[str, Any] = {
            names["AGENCY"]: agency_id,
            names["AGENT"]: agent_id,
            names["DEAL"]: deal_id,
            names["CLIENT_PHONE"]: client_phone,
            names["TYPE"]: conv_type,
            names["IS_ACTIVE"]: True,
            names["CREATED_AT"]: now,
        }
        if settings().AUTO_OPT_IN_NEW_CONVERSATIONS:
            fields[names["OPT_IN_STATUS"]] = OptInStatus.OPTED_IN.value
            fields[names["OPTED_IN_AT"]] = now
        else:
            fields[names["OPT_IN_STATUS"]] = OptInStatus.UNKNOWN.value

        record = safe_create(CONNECTOR.conversations(), fields)
        if not record:
            self.claims.release(key)
            raise SmsEngineError(f"conversation create failed for {key}")
        self.claims.set(key, record["id"])
        logger.info("🆕 Conversation %s created (agency=%s deal=%s)", record["id"], agency_id, deal_id)
        return Conversation.from_record(record)

    def update(self, conversation_id: str, fields: Dict[str, Any]) -> Conversation:
        record = safe_update(CONNECTOR.conversations(), conversation_id, fields)
        if not record:
            raise SmsEngineError(f"conversation update failed for {conversation_id}")
        return Conversation.from_record(record)

    def touch(self, conversation_id: str, at: Optional[str] = None) -> None:
        safe_update(CONNECTOR.conversations(), conversation_id, {F()["LAST_MESSAGE_AT"]: at or iso_now()})

    def set_opt_in_status(self, conversation_id: str, status: OptInStatus) -> Conversation:
        names = F()
        status = OptInStatus(status)
        fields: Dict[str, Any] = {names["OPT_IN_STATUS"]: status.value}
        if status is OptInStatus.OPTED_IN:
            fields[names["OPTED_IN_AT"]] = iso_now()
            fields[names["OPTED_OUT_AT"]] = None
        elif status is OptInStatus.OPTED_OUT:
            fields[names["OPTED_OUT_AT"]] = iso_now()
        return self.update(conversation_id, fields)

    def deactivate(self, conversation_id: str) -> Conversation:
        conversation = self.require(conversation_id)
        if not conversation.is_active:
            return conversation
        updated = self.update(conversation_id, {F()["IS_ACTIVE"]: False})
        key = self.unique_key(conversation.agency_id, conversation.client_phone, conversation.type)
        if self.claims.get(key) == conversation_id:
            self.claims.release(key)
        logger.info("Conversation %s deactivated", conversation_id)
        return updated


RESELECT_BASE_DELAY = 0.05
# A racing loser waits out twice the winner's create-retry budget.
RESELECT_BUDGET_SEC = 2 * WRITE_RETRY_BUDGET_SEC


def reselect_attempts_for(budget_sec: float, base_delay: float = RESELECT_BASE_DELAY) -> int:
    """Fewest doubling backoff retries whose total wait covers ``budget_sec``."""
    attempts, waited = 0, 0.0
    while waited < budget_sec:
        waited += base_delay * 2**attempts
        attempts += 1
    return attempts


class ConversationResolver:
    """Finds or creates the active conversation for a deal / client phone."""

    def __init__(self, repository: ConversationRepository, *, reselect_attempts: Optional[int] = None) -> None:
        self.repo = repository
        if reselect_attempts is None:
            reselect_attempts = reselect_attempts_for(RESELECT_BUDGET_SEC)
        self.reselect_attempts = reselect_attempts

    def get_if_exists(self, deal_id: Optional[str], agency_id: str, client_phone: str) -> Optional[Conversation]:
        """Lookup without creation: deal first, then (agency, phone)."""
        if deal_id:
            conversation = self.repo.find_active_by_deal(deal_id)
            if conversation:
                return conversation
        phone = storage_phone(client_phone)
        if not phone:
            return None
        return self.repo.find_active_by_phone(agency_id, phone)

    def resolve(
        self,
        deal_id: Optional[str],
        agency_id: str,
        client_phone: str,
        agent_id: Optional[str] = None,
    ) -> Tuple[Conversation, bool]:
        """Return ``(conversation, created)``."""
        phone = storage_phone(client_phone)
        if not phone:
            raise ValueError("client phone is required to resolve a conversation")

        if deal_id:
            conversation = self.repo.find_active_by_deal(deal_id)
            if conversation:
                return conversation, False

        conversation = self.repo.find_active_by_phone(agency_id, phone)
        if conversation:
            if deal_id and not conversation.deal_id:
                conversation = self.repo.update(conversation.id, {F()["DEAL"]: deal_id})
            return conversation, False

        try:
            return self.repo.insert_active(agency_id=agency_id, agent_id=agent_id, deal_id=deal_id, client_phone=phone), True
        except ConflictError as conflict:
            logger.info("Conversation race on %s; re-reading winner", conflict.key)
            return self._reselect(conflict, deal_id, agency_id, phone, agent_id)

    def _reselect(
        self,
        conflict: ConflictError,
        deal_id: Optional[str],
        agency_id: str,
        phone: str,
        agent_id: Optional[str],
    ) -> Tuple[Conversation, bool]:
        claims = self.repo.claims

        def _winner() -> Conversation:
            holder = claims.get(conflict.key)
            if holder and holder != PENDING:
                conversation = self.repo.get(holder)
                if conversation and conversation.is_active:
                    return conversation
                # claim points at a row deactivated or removed outside the engine
                claims.release(conflict.key)
                raise ConflictError(conflict.key, holder=holder)
            conversation = self.repo.find_active_by_phone(agency_id, phone)
            if conversation:
                return conversation
            if holder is None:
                raise ConflictError(conflict.key, holder=None)
            raise ConflictError(conflict.key, holder=PENDING)

        try:
            return retry(
                _winner,
                retries=self.reselect_attempts,
                base_delay=RESELECT_BASE_DELAY,
                exceptions=(ConflictError,),
                logger=logger,
            ), False
        except ConflictError:
            if claims.get(conflict.key) is None:
                # the stale claim was cleared; a fresh insert is safe to attempt once
                return self.repo.insert_active(
                    agency_id=agency_id, agent_id=agent_id, deal_id=deal_id, client_phone=phone
                ), True
            raise
