"""
📥 Inbound Webhook
────────────────────────────────────────────────────────────────────
- Accepts the Telnyx ``message.received`` envelope or a flat
  {from, to, text, id} body (JSON or form)
- Routes by the receiving agency number, then the client phone
- Handles STOP / START / HELP before anything else
- Urgent messages are forwarded to the writing agent by SMS and raised
  as an alert
- Unmatched numbers are acknowledged, never rejected
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request

from agency_sms.alerts import AlertNotifier
from agency_sms.config import settings
from agency_sms.conversations import ConversationRepository, ConversationResolver
from agency_sms.directory import Directory
from agency_sms.errors import DispatchError, NotFoundError, SmsEngineError
from agency_sms.idempotency import ClaimStore
from agency_sms.message_log import MessageLog
from agency_sms.models import Agency, Conversation, Deal
from agency_sms.runtime import get_logger, storage_phone
from agency_sms.schema import ComplianceReply, MessageDirection, MessageStatus, OptInStatus

logger = get_logger("inbound")

router = APIRouter()

DEDUP_TTL_SEC = 24 * 60 * 60

STOP, START, HELP = "STOP", "START", "HELP"
COMPLIANCE_KEYWORDS = {
    "STOP": STOP,
    "UNSUBSCRIBE": STOP,
    "START": START,
    "UNSTOP": START,
    "SUBSCRIBE": START,
    "HELP": HELP,
    "INFO": HELP,
}

URGENT_KEYWORDS = (
    "don't have money",
    "don't have the money",
    "can't pay",
    "cannot pay",
    "call me",
    "need help",
    "emergency",
    "urgent",
    "problem",
    "cancel policy",
    "cancelling",
)

RESUBSCRIBE_TEXT = (
    "Thanks for re-subscribing! You'll receive policy updates and reminders from {agency} by text. "
    "Reply STOP to opt out anytime."
)


# === PARSING ===
@dataclass(frozen=True)
class InboundEvent:
    from_phone: str
    to_phone: str
    text: str
    message_id: Optional[str] = None


def _phone_number(value: Any) -> Optional[str]:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = value.get("phone_number")
    return str(value).strip() if value else None


def parse_inbound_event(payload: Dict[str, Any]) -> Optional[InboundEvent]:
    """
    Normalize a carrier body. Returns None for envelopes that are not
    inbound messages (delivery receipts, setup pings). Raises ValueError when
    a message body lacks its phone numbers.
    """
    data = payload.get("data")
    if isinstance(data, dict):
        event_type = data.get("event_type")
        if event_type != "message.received":
            logger.info("Ignoring Telnyx event %s", event_type)
            return None
        body = data.get("payload") or {}
        from_phone = _phone_number(body.get("from"))
        to_phone = _phone_number(body.get("to"))
        text = body.get("text")
        message_id = body.get("id")
    else:
        from_phone = _phone_number(payload.get("from") or payload.get("From"))
        to_phone = _phone_number(payload.get("to") or payload.get("To"))
        text = payload.get("text") or payload.get("body") or payload.get("Body")
        message_id = payload.get("id") or payload.get("MessageSid")

    if not from_phone or not to_phone:
        raise ValueError("inbound message requires from and to")
    return InboundEvent(from_phone, to_phone, str(text or ""), str(message_id) if message_id else None)


def compliance_keyword(text: str) -> Optional[str]:
    return COMPLIANCE_KEYWORDS.get((text or "").strip().upper())


def urgent_keyword(text: str) -> Optional[str]:
    lowered = (text or "").lower().replace("’", "'")
    for keyword in URGENT_KEYWORDS:
        if keyword in lowered:
            return keyword
    return None


# === HANDLER ===
class InboundHandler:
    def __init__(
        self,
        *,
        directory: Directory,
        resolver: ConversationResolver,
        conversations: ConversationRepository,
        message_log: MessageLog,
        dispatcher: Any,
        notifier: AlertNotifier,
        claims: ClaimStore,
        help_text: str,
        unsubscribe_text: str,
    ) -> None:
        self.directory = directory
        self.resolver = resolver
        self.conversations = conversations
        self.log = message_log
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.claims = claims
        self.help_text = help_text
        self.unsubscribe_text = unsubscribe_text

    @staticmethod
    def dedup_key(message_id: str) -> str:
        return f"inbound:msg:{message_id}"

    def handle(self, event: InboundEvent) -> Dict[str, Any]:
        if event.message_id and not self.claims.claim(self.dedup_key(event.message_id), ttl=DEDUP_TTL_SEC):
            logger.info("Duplicate inbound delivery %s", event.message_id)
            return {"ok": True, "status": "duplicate", "message_id": event.message_id}
        try:
            return self._route(event)
        except Exception:
            if event.message_id:
                self.claims.release(self.dedup_key(event.message_id))
            raise

    def _route(self, event: InboundEvent) -> Dict[str, Any]:
        client_phone = storage_phone(event.from_phone)

        agency = self.directory.find_agency_by_phone(event.to_phone)
        if agency is None:
            logger.warning("No agency found for receiving number %s", event.to_phone)
            return {"ok": True, "status": "unknown_number"}

        deal = self.directory.find_deal_by_phone(agency.id, client_phone)
        if deal is None:
            logger.warning("No deal for client phone %s in agency %s", client_phone, agency.id)
            return {"ok": True, "status": "unmatched"}

        conversation, _ = self.resolver.resolve(deal.id, agency.id, client_phone, deal.agent_id)

        keyword = compliance_keyword(event.text)
        metadata: Dict[str, Any] = {"client_phone": client_phone, "telnyx_message_id": event.message_id}
        if keyword:
            metadata["compliance_keyword"] = keyword
        message = self.log.append(
            conversation,
            sender_id=None,
            receiver_id=deal.agent_id,
            body=event.text,
            direction=MessageDirection.INBOUND,
            status=MessageStatus.RECEIVED,
            metadata=metadata,
            provider_id=event.message_id,
        )
        logger.info("📥 Inbound from %s logged on conversation %s", client_phone, conversation.id)

        result: Dict[str, Any] = {
            "ok": True,
            "status": "received",
            "conversation_id": conversation.id,
            "message_id": message.id,
        }
        if keyword:
            result["status"] = "compliance"
            result["keyword"] = keyword
            result["reply_status"] = self._handle_compliance(keyword, conversation, agency, deal, client_phone)
            return result

        urgent = urgent_keyword(event.text)
        result["urgent"] = bool(urgent)
        if urgent:
            self._escalate(agency, deal, client_phone, event.text)
        return result

    # === COMPLIANCE ===
    def _handle_compliance(
        self, keyword: str, conversation: Conversation, agency: Agency, deal: Deal, client_phone: str
    ) -> str:
        if keyword == STOP:
            self.conversations.set_opt_in_status(conversation.id, OptInStatus.OPTED_OUT)
            logger.info("🛑 Conversation %s opted out", conversation.id)
            return self._reply(conversation, agency, deal, client_phone, self.unsubscribe_text, ComplianceReply.OPT_OUT_CONFIRMATION)
        if keyword == START:
            self.conversations.set_opt_in_status(conversation.id, OptInStatus.OPTED_IN)
            logger.info("✅ Conversation %s opted back in", conversation.id)
            text = RESUBSCRIBE_TEXT.format(agency=agency.name or "your agency")
            return self._reply(conversation, agency, deal, client_phone, text, ComplianceReply.OPT_IN_WELCOME)
        return self._reply(conversation, agency, deal, client_phone, self.help_text, ComplianceReply.HELP_RESPONSE)

    def _reply(
        self,
        conversation: Conversation,
        agency: Agency,
        deal: Deal,
        client_phone: str,
        text: str,
        reply_type: ComplianceReply,
    ) -> str:
        metadata: Dict[str, Any] = {"automated": True, "type": reply_type.value, "client_phone": client_phone}
        status, provider_id = MessageStatus.SENT, None
        try:
            provider_id = self.dispatcher.send(agency.phone, client_phone, text).get("provider_id")
        except DispatchError as exc:
            logger.error("Compliance reply %s failed for %s: %s", reply_type.value, client_phone, exc)
            status = MessageStatus.FAILED
            metadata["send_error"] = str(exc)
        self.log.append(
            conversation,
            sender_id=deal.agent_id,
            receiver_id=None,
            body=text,
            direction=MessageDirection.OUTBOUND,
            status=status,
            metadata=metadata,
            provider_id=provider_id,
        )
        return status.value

    # === ESCALATION ===
    def _escalate(self, agency: Agency, deal: Deal, client_phone: str, text: str) -> None:
        client = deal.client_name or client_phone
        forward = f'URGENT: Client {client} says: "{text}"'
        agent_label = deal.agent_id or "unassigned"
        try:
            agent = self.directory.get_agent(deal.agent_id)
            agent_label = agent.full_name or agent.id
            if agent.phone:
                self.dispatcher.send(agency.phone, agent.phone, forward)
                logger.info("Forwarded urgent message to agent %s", agent.id)
            else:
                logger.warning("Agent %s has no phone; urgent message not forwarded", agent.id)
        except NotFoundError:
            logger.warning("No agent on deal %s; urgent message not forwarded", deal.id)
        except DispatchError as exc:
            logger.error("Failed to forward urgent message to agent: %s", exc)
        self.notifier.notify(f"{forward} (agent: {agent_label}, agency: {agency.name})")


# === AUTHENTICATION ===
def _is_authorized(header_token: Optional[str], query_token: Optional[str]) -> bool:
    token = settings().WEBHOOK_TOKEN
    if not token:
        return True  # auth disabled
    return header_token == token or query_token == token


# === BODY PARSING ===
async def _parse_body(request: Request) -> Dict[str, Any]:
    """JSON or form body; anything else is a 422."""
    content_type = request.headers.get("content-type", "").lower()
    try:
        if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
            form = await request.form()
            return {k: (v if isinstance(v, str) else str(v)) for k, v in dict(form).items()}
        body = await request.json()
        return dict(body) if isinstance(body, dict) else {}
    except ValueError as exc:
        logger.warning("⚠️ Failed to parse request body: %s", exc)
        raise HTTPException(status_code=422, detail="Invalid payload")


# === FASTAPI ROUTES ===
@router.post("/telnyx-webhook")
async def telnyx_webhook(
    request: Request,
    x_webhook_token: Optional[str] = Header(None, alias="X-Webhook-Token"),
    token: Optional[str] = Query(None),
):
    """Inbound SMS from Telnyx."""
    if not _is_authorized(x_webhook_token, token):
        raise HTTPException(status_code=401, detail="Unauthorized")

    data = await _parse_body(request)
    try:
        event = parse_inbound_event(data)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    if event is None:
        return {"ok": True, "status": "ignored"}

    from agency_sms.engine import get_engine

    try:
        return await asyncio.to_thread(get_engine().inbound.handle, event)
    except SmsEngineError as exc:
        logger.exception("❌ Inbound webhook error")
        raise HTTPException(status_code=500, detail=str(exc))
