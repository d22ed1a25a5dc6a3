"""
⏰ Trigger Scheduler
────────────────────────────────────────────────────────────────────
- One loop for every automated message type
- Agencies and agents batch-fetched once per run
- Candidates evaluated in a thread pool; writes serialize per
  (deal, type, day) through the run ledger claim
- Per-item counts; one bad candidate never aborts the run
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from agency_sms.config import scheduler_today
from agency_sms.conversations import ConversationResolver
from agency_sms.directory import Directory
from agency_sms.eligibility import GateDecision, SendMode, can_auto_send
from agency_sms.errors import DispatchError, NotFoundError
from agency_sms.idempotency import PENDING, TriggerRunLedger
from agency_sms.message_log import MessageLog
from agency_sms.models import Agency, Agent, Deal, Message
from agency_sms.runtime import get_logger
from agency_sms.schema import MessageDirection, MessageStatus, TriggerType
from agency_sms.templates import render, template_for, unknown_placeholders
from agency_sms.triggers import Trigger, TriggerContext

logger = get_logger("scheduler")

SENT = "sent"
DRAFTED = "drafted"
SKIPPED = "skipped"
FAILED = "failed"

PLACEHOLDER_VALIDATION_FAILED = "placeholder_validation_failed"
SEND_FAILED = "send_failed"
ALREADY_RAN = "already_ran"


def _outcome(deal: Deal, result: str, reason: str, message: Optional[Message] = None) -> Dict[str, Any]:
    return {
        "deal_id": deal.id,
        "result": result,
        "reason": reason,
        "message_id": message.id if message else None,
    }


class TriggerScheduler:
    def __init__(
        self,
        *,
        directory: Directory,
        resolver: ConversationResolver,
        message_log: MessageLog,
        ledger: TriggerRunLedger,
        dispatcher: Any,
        triggers: Dict[TriggerType, Trigger],
        workers: int = 4,
    ) -> None:
        self.directory = directory
        self.resolver = resolver
        self.log = message_log
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.triggers = triggers
        self.workers = max(int(workers), 1)

    def trigger(self, trigger_type: TriggerType | str) -> Trigger:
        try:
            return self.triggers[TriggerType(trigger_type)]
        except (KeyError, ValueError):
            raise ValueError(f"unknown trigger type: {trigger_type}")

    # ------------------------------------------------------------------
    # Daily runs
    # ------------------------------------------------------------------
    def run(self, trigger_type: TriggerType | str, today: Optional[date] = None) -> Dict[str, Any]:
        """Evaluate one trigger type for ``today`` and report per-item counts."""
        trigger = self.trigger(trigger_type)
        if not trigger.scheduled:
            raise ValueError(f"{trigger.type.value} is not a scheduled trigger")
        today = today or scheduler_today()
        started = time.monotonic()

        candidates = trigger.find_candidates(self.directory.active_deals(), today)
        agencies = self.directory.agencies_by_id(d.agency_id for d in candidates)
        agents = self.directory.agents_by_id(d.agent_id for d in candidates if d.agent_id)

        report: Dict[str, Any] = {
            "ok": True,
            "type": trigger.type.value,
            "date": today.isoformat(),
            "total": len(candidates),
            SENT: 0,
            DRAFTED: 0,
            SKIPPED: 0,
            FAILED: 0,
            "skip_reasons": {},
            "errors": [],
        }
        if candidates:
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix=f"trigger-{trigger.type.value}") as pool:
                outcomes = list(pool.map(lambda d: self._evaluate(trigger, d, agencies, agents, today), candidates))
            for outcome in outcomes:
                report[outcome["result"]] += 1
                if outcome["result"] == SKIPPED:
                    reasons = report["skip_reasons"]
                    reasons[outcome["reason"]] = reasons.get(outcome["reason"], 0) + 1
                elif outcome["result"] == FAILED:
                    report["errors"].append({"deal_id": outcome["deal_id"], "reason": outcome["reason"]})

        report["duration_ms"] = int((time.monotonic() - started) * 1000)
        logger.info(
            "✅ %s run %s: total=%d sent=%d drafted=%d skipped=%d failed=%d (%dms)",
            trigger.type.value,
            report["date"],
            report["total"],
            report[SENT],
            report[DRAFTED],
            report[SKIPPED],
            report[FAILED],
            report["duration_ms"],
        )
        return report

    def run_all(self, today: Optional[date] = None) -> Dict[str, Any]:
        today = today or scheduler_today()
        runs = [self.run(t.type, today) for t in self.triggers.values() if t.scheduled]
        return {"ok": all(r["ok"] for r in runs), "date": today.isoformat(), "runs": runs}

    def _evaluate(
        self,
        trigger: Trigger,
        deal: Deal,
        agencies: Dict[str, Agency],
        agents: Dict[str, Agent],
        today: date,
    ) -> Dict[str, Any]:
        try:
            agency = agencies.get(deal.agency_id)
            if agency is None:
                raise NotFoundError("agency", deal.agency_id)
            agent = agents.get(deal.agent_id or "")
            if agent is None:
                raise NotFoundError("agent", deal.agent_id)
            conversation = self.resolver.get_if_exists(deal.id, deal.agency_id, deal.client_phone)
            return self.deliver(trigger, TriggerContext(deal, agent, agency, conversation), today)
        except NotFoundError as exc:
            logger.info("⏭️ %s skipped for deal %s: %s", trigger.type.value, deal.id, exc)
            return _outcome(deal, SKIPPED, f"{exc.kind}_not_found")
        except Exception as exc:
            logger.exception("❌ %s failed for deal %s", trigger.type.value, deal.id)
            return _outcome(deal, FAILED, str(exc))

    # ------------------------------------------------------------------
    # One candidate
    # ------------------------------------------------------------------
    def deliver(self, trigger: Trigger, ctx: TriggerContext, today: date) -> Dict[str, Any]:
        """Gate, claim, render and log a single automated message."""
        deal = ctx.deal
        decision = can_auto_send(
            ctx.agency.config,
            ctx.agent.tier,
            ctx.agent.auto_send_override,
            ctx.conversation,
            trigger.type,
        )
        if not decision.eligible:
            logger.info("⏭️ %s skipped for deal %s: %s", trigger.type.value, deal.id, decision.reason.value)
            return _outcome(deal, SKIPPED, decision.reason.value)
        if ctx.conversation is None:
            raise NotFoundError("conversation", deal.id)

        period = trigger.period_key(today)
        type_key = trigger.type.value
        if not self.ledger.claim(deal.id, type_key, period):
            logger.info("⏭️ %s already produced for deal %s (%s)", type_key, deal.id, period)
            return _outcome(deal, SKIPPED, ALREADY_RAN)

        try:
            message, result, reason = self._write(trigger, ctx, decision, today, period)
        except Exception:
            # nothing reached the client yet; let a later run try again
            if self.ledger.holder(deal.id, type_key, period) == PENDING:
                self.ledger.release(deal.id, type_key, period)
            raise
        self.ledger.record(deal.id, type_key, period, message.id)
        return _outcome(deal, result, reason, message)

    def _write(
        self,
        trigger: Trigger,
        ctx: TriggerContext,
        decision: GateDecision,
        today: date,
        period: str,
    ) -> Tuple[Message, str, str]:
        deal, agency, conversation = ctx.deal, ctx.agency, ctx.conversation
        template = template_for(trigger.type, agency.config.for_trigger(trigger.type).template)
        body = render(template, trigger.values(ctx, today))

        metadata = trigger.metadata(ctx, today)
        metadata["idempotency_key"] = self.ledger.key(deal.id, trigger.type.value, period)

        mode, reason = decision.mode, decision.reason.value
        unknown = unknown_placeholders(template, trigger.type)
        if unknown:
            logger.warning("Template for %s uses unsupported placeholders: %s", trigger.type.value, sorted(unknown))
            metadata["unknown_placeholders"] = sorted(unknown)
            if mode is SendMode.AUTO:
                mode, reason = SendMode.DRAFT, PLACEHOLDER_VALIDATION_FAILED

        if mode is SendMode.AUTO:
            try:
                sent = self.dispatcher.send(agency.phone, deal.client_phone, body)
            except DispatchError as exc:
                logger.warning("Auto-send failed for deal %s, keeping a draft: %s", deal.id, exc)
                metadata["send_error"] = str(exc)
                mode, reason = SendMode.DRAFT, SEND_FAILED
            else:
                metadata["send_reason"] = reason
                provider_id = sent.get("provider_id")
                try:
                    message = self._append(ctx, body, MessageStatus.SENT, metadata, provider_id)
                except Exception:
                    # the client already has the text; keep the run claimed
                    self.ledger.record(deal.id, trigger.type.value, period, f"dispatched:{provider_id}")
                    raise
                logger.info("📤 %s sent to deal %s (conversation %s)", trigger.type.value, deal.id, conversation.id)
                return message, SENT, reason

        metadata["send_reason"] = reason
        message = self._append(ctx, body, MessageStatus.DRAFT, metadata, None)
        logger.info("📝 %s drafted for deal %s: %s", trigger.type.value, deal.id, reason)
        return message, DRAFTED, reason

    def _append(
        self,
        ctx: TriggerContext,
        body: str,
        status: MessageStatus,
        metadata: Dict[str, Any],
        provider_id: Optional[str],
    ) -> Message:
        return self.log.append(
            ctx.conversation,
            sender_id=ctx.agent.id,
            receiver_id=None,
            body=body,
            direction=MessageDirection.OUTBOUND,
            status=status,
            metadata=metadata,
            provider_id=provider_id,
        )

    # ------------------------------------------------------------------
    # Welcome
    # ------------------------------------------------------------------
    def start_conversation(self, deal_id: str, today: Optional[date] = None) -> Dict[str, Any]:
        """Resolve the deal's conversation; a newly created one gets the welcome message."""
        deal = self.directory.get_deal(deal_id)
        if not deal.client_phone:
            raise ValueError(f"deal {deal_id} has no client phone")
        agency = self.directory.get_agency(deal.agency_id)
        agent = self.directory.get_agent(deal.agent_id)

        conversation, created = self.resolver.resolve(deal.id, deal.agency_id, deal.client_phone, agent.id)
        welcome = None
        if created:
            trigger = self.trigger(TriggerType.WELCOME)
            welcome = self.deliver(trigger, TriggerContext(deal, agent, agency, conversation), today or scheduler_today())
        return {
            "ok": True,
            "conversation_id": conversation.id,
            "created": created,
            "welcome": welcome,
        }
