"""
Agency SMS Engine: HTTP surface
- Telnyx inbound webhook
- Cron-triggered daily message runs (one per trigger type, or all)
- Conversation start (fires the welcome message) and deactivation
- Draft approval queue and failed-message retry
- Startup refuses to run with an incomplete store configuration
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from agency_sms.config import settings
from agency_sms.engine import get_engine
from agency_sms.errors import ConflictError, DraftStateError, NotFoundError
from agency_sms.inbound_webhook import router as inbound_router
from agency_sms.runtime import configure_logging, get_logger

logger = get_logger("main")

VERSION = "1.0.0"

app = FastAPI(title="Agency SMS Engine", version=VERSION)
app.include_router(inbound_router)  # → /telnyx-webhook


# ─────────────────────────── Auth helpers ───────────────────────────
def _extract_token(request: Request, qp_token: Optional[str], h_webhook: Optional[str], h_cron: Optional[str]) -> str:
    if qp_token:
        return qp_token
    if h_webhook:
        return h_webhook
    if h_cron:
        return h_cron
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1]
    return ""


def _require_token(request: Request, qp_token: Optional[str], h_webhook: Optional[str], h_cron: Optional[str]):
    expected = settings().CRON_TOKEN
    if not expected:
        return
    if _extract_token(request, qp_token, h_webhook, h_cron) != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _iso_ts() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def _parse_day(raw: Optional[str]) -> Optional[date]:
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Invalid date: {raw!r} (expected YYYY-MM-DD)")


# ─────────────────────────── Error mapping ──────────────────────────
@app.exception_handler(NotFoundError)
async def _not_found(_request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"ok": False, "error": str(exc)})


@app.exception_handler(DraftStateError)
async def _draft_state(_request: Request, exc: DraftStateError):
    return JSONResponse(status_code=409, content={"ok": False, "error": str(exc), "status": exc.status})


@app.exception_handler(ConflictError)
async def _conflict(_request: Request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"ok": False, "error": "operation already in progress"})


@app.exception_handler(ValueError)
async def _invalid(_request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"ok": False, "error": str(exc)})


# ─────────────────────────── Request bodies ─────────────────────────
class MessageIdsRequest(BaseModel):
    message_ids: List[str]


class EditDraftRequest(BaseModel):
    message_id: str
    body: str


class StartConversationRequest(BaseModel):
    deal_id: str


# ─────────────────────────── Startup checks ─────────────────────────
@app.on_event("startup")
async def startup_checks():
    configure_logging()
    s = settings()
    logger.info("✅ Environment loaded:")
    logger.info("   persistent_store=%s dry_run=%s tz=%s", s.persistent_store, s.TELNYX_DRY_RUN, s.SCHEDULER_TZ)
    if not s.TELNYX_API_KEY and not s.TELNYX_DRY_RUN:
        logger.warning("🚨 TELNYX_API_KEY missing; every dispatch will fail")
    # ConfigurationError here stops the service
    get_engine()
    logger.info("✅ Startup checks passed")


# ─────────────────────────── Health ────────────────────────────────
@app.get("/ping")
async def ping():
    return {"ok": True, "pong": True, "time": _iso_ts()}


@app.get("/health")
async def health():
    s = settings()
    return {
        "ok": True,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store": "airtable" if s.persistent_store else "memory",
        "dry_run": s.TELNYX_DRY_RUN,
        "version": VERSION,
    }


# ─────────────────────────── Cron ──────────────────────────────────
@app.post("/cron/{trigger_type}")
async def cron_trigger(
    trigger_type: str,
    request: Request,
    day: Optional[str] = Query(None, alias="date"),
    x_cron_token: Optional[str] = Header(None),
    x_webhook_token: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
):
    """Run one trigger type, or ``all`` of them, for today or ``?date=``."""
    _require_token(request, token, x_webhook_token, x_cron_token)
    today = _parse_day(day)
    scheduler = get_engine().scheduler
    if trigger_type == "all":
        return await asyncio.to_thread(scheduler.run_all, today)
    return await asyncio.to_thread(scheduler.run, trigger_type, today)


# ─────────────────────────── Conversations ─────────────────────────
@app.post("/conversations/start")
async def start_conversation(
    payload: StartConversationRequest,
    request: Request,
    x_cron_token: Optional[str] = Header(None),
    x_webhook_token: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
):
    _require_token(request, token, x_webhook_token, x_cron_token)
    return await asyncio.to_thread(get_engine().scheduler.start_conversation, payload.deal_id)


@app.post("/conversations/{conversation_id}/deactivate")
async def deactivate_conversation(
    conversation_id: str,
    request: Request,
    x_cron_token: Optional[str] = Header(None),
    x_webhook_token: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
):
    _require_token(request, token, x_webhook_token, x_cron_token)
    conversation = await asyncio.to_thread(get_engine().conversations.deactivate, conversation_id)
    return {"ok": True, "conversation_id": conversation.id, "is_active": conversation.is_active}


# ─────────────────────────── Drafts ────────────────────────────────
@app.get("/sms/drafts")
async def list_drafts(
    request: Request,
    x_cron_token: Optional[str] = Header(None),
    x_webhook_token: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
):
    _require_token(request, token, x_webhook_token, x_cron_token)
    drafts = await asyncio.to_thread(get_engine().drafts.pending)
    return {"ok": True, "count": len(drafts), "drafts": [m.as_dict() for m in drafts]}


@app.post("/sms/drafts/approve")
async def approve_drafts(
    payload: MessageIdsRequest,
    request: Request,
    x_cron_token: Optional[str] = Header(None),
    x_webhook_token: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
):
    _require_token(request, token, x_webhook_token, x_cron_token)
    return await asyncio.to_thread(get_engine().drafts.approve, payload.message_ids)


@app.post("/sms/drafts/reject")
async def reject_drafts(
    payload: MessageIdsRequest,
    request: Request,
    x_cron_token: Optional[str] = Header(None),
    x_webhook_token: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
):
    _require_token(request, token, x_webhook_token, x_cron_token)
    return await asyncio.to_thread(get_engine().drafts.reject, payload.message_ids)


@app.post("/sms/drafts/edit")
async def edit_draft(
    payload: EditDraftRequest,
    request: Request,
    x_cron_token: Optional[str] = Header(None),
    x_webhook_token: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
):
    _require_token(request, token, x_webhook_token, x_cron_token)
    message = await asyncio.to_thread(get_engine().drafts.edit_body, payload.message_id, payload.body)
    return {"ok": True, "message": message.as_dict()}


@app.post("/sms/failed/retry")
async def retry_failed(
    payload: MessageIdsRequest,
    request: Request,
    x_cron_token: Optional[str] = Header(None),
    x_webhook_token: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
):
    _require_token(request, token, x_webhook_token, x_cron_token)
    return await asyncio.to_thread(get_engine().drafts.retry_failed, payload.message_ids)
