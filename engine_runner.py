"""
⚙️  Engine Runner
-----------------
Runs the daily trigger sweeps once (cron-friendly):
  • One step per trigger type, each with a timeout
  • Retry with backoff; reruns are safe because every message is
    claimed per (deal, type, day)
  • Compact JSON-line logs
  • Health pings at start and finish
"""

from __future__ import annotations

import argparse
import concurrent.futures
import json
import os
import random
import signal
import sys
import time
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import requests

from agency_sms.engine import get_engine
from agency_sms.errors import ConfigurationError
from agency_sms.runtime import configure_logging, get_logger
from agency_sms.schema import TriggerType

logger = get_logger("engine_runner")

# =========================
# Env / Defaults
# =========================
ENV = {
    "RETRIES": int(os.getenv("ENGINE_RETRIES", "2")),
    "BASE_BACKOFF_SEC": int(os.getenv("ENGINE_BASE_BACKOFF", "2")),
    "STEP_TIMEOUT_SEC": int(os.getenv("ENGINE_STEP_TIMEOUT_SEC", "600")),
    "HEALTHCHECK_URL": os.getenv("HEALTHCHECK_URL"),
    "SERVICE_NAME": os.getenv("ENGINE_SERVICE_NAME", "engine_runner"),
    "INSTANCE_ID": os.getenv("ENGINE_INSTANCE_ID", str(uuid.uuid4())[:8]),
}

SCHEDULED_TYPES = [t.value for t in TriggerType if t is not TriggerType.WELCOME]

_SHUTDOWN = False


# ---------- Signal Handling ----------
def _sig_handler(signum, frame):
    global _SHUTDOWN
    _SHUTDOWN = True
    jlog("signal", sig=signum, note="shutdown_requested")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def jlog(event: str, **kw):
    print(
        json.dumps(
            {"ts": _now_iso(), "event": event, "service": ENV["SERVICE_NAME"], "instance": ENV["INSTANCE_ID"], **kw},
            ensure_ascii=False,
            default=str,
        )
    )


def _health_ping(stage: str, ok: bool, extra: Optional[Dict[str, Any]] = None):
    url = ENV["HEALTHCHECK_URL"]
    if not url:
        return
    payload = {
        "ts": _now_iso(),
        "service": ENV["SERVICE_NAME"],
        "instance": ENV["INSTANCE_ID"],
        "stage": stage,
        "ok": bool(ok),
    }
    if extra:
        payload.update(extra)
    try:
        requests.post(url, json=payload, timeout=3)
    except requests.exceptions.RequestException as exc:
        logger.warning("Health ping failed: %s", exc)


# ---------- Timeout-safe wrapper ----------
def _run_with_timeout(fn, timeout_sec: int, *args, **kwargs):
    ex = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    try:
        return ex.submit(fn, *args, **kwargs).result(timeout=timeout_sec)
    except concurrent.futures.TimeoutError:
        raise RuntimeError(f"timeout_after_{timeout_sec}s")
    finally:
        ex.shutdown(wait=False)


# ---------- Step Runner with retries ----------
def _run_step(name: str, fn, *args, retries: int, base_backoff: int, **kwargs) -> Tuple[bool, Dict[str, Any]]:
    attempts, last_err = 0, None
    timeout_sec = ENV["STEP_TIMEOUT_SEC"]

    while attempts <= retries and not _SHUTDOWN:
        try:
            jlog("step_start", step=name, attempt=attempts + 1, timeout_sec=timeout_sec)
            rv = _run_with_timeout(fn, timeout_sec, *args, **kwargs)
            jlog("step_ok", step=name, attempt=attempts + 1, result_summary=_compact_result(rv))
            return True, rv
        except ConfigurationError:
            raise
        except Exception as e:
            last_err = str(e)
            logger.exception("Step %s failed", name)
            if attempts == retries:
                break
            delay = base_backoff * (2**attempts) + random.randint(0, 2)
            jlog("step_retry", step=name, attempt=attempts + 1, delay_sec=delay, error=last_err)
            end = time.time() + delay
            while time.time() < end and not _SHUTDOWN:
                time.sleep(0.25)
            attempts += 1
    jlog("step_fail", step=name, error=last_err or "unknown")
    return False, {"ok": False, "error": last_err or "unknown"}


def _compact_result(result: Any) -> Dict[str, Any]:
    if not isinstance(result, dict):
        return {"ok": bool(result)}
    keys = ("ok", "type", "date", "total", "sent", "drafted", "skipped", "failed", "duration_ms")
    return {k: result.get(k) for k in keys if k in result}


# ---------- CLI ----------
def _parse_args(argv: Optional[List[str]] = None):
    p = argparse.ArgumentParser(description="Run the daily automated-message triggers once.")
    p.add_argument(
        "triggers",
        nargs="*",
        help=f"Trigger types to run: {', '.join(SCHEDULED_TYPES)} or all (default: all).",
    )
    p.add_argument("--date", type=date.fromisoformat, default=None, help="Evaluate as of YYYY-MM-DD.")
    p.add_argument("--retries", type=int, default=ENV["RETRIES"])
    p.add_argument("--backoff", type=int, default=ENV["BASE_BACKOFF_SEC"])
    args = p.parse_args(argv)
    args.triggers = args.triggers or ["all"]
    unknown = [t for t in args.triggers if t not in SCHEDULED_TYPES and t != "all"]
    if unknown:
        p.error(f"unknown trigger type(s): {', '.join(unknown)}")
    return args


# ---------- MAIN ----------
def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    configure_logging()
    signal.signal(signal.SIGINT, _sig_handler)
    signal.signal(signal.SIGTERM, _sig_handler)

    selected = SCHEDULED_TYPES if "all" in args.triggers else list(dict.fromkeys(args.triggers))

    try:
        scheduler = get_engine().scheduler
    except ConfigurationError as exc:
        jlog("fatal_config", error=str(exc))
        print(str(exc), file=sys.stderr)
        return 2

    exit_code = 0
    jlog("runner_start", triggers=selected, date=args.date)
    _health_ping("runner_start", ok=True)

    for trigger_type in selected:
        if _SHUTDOWN:
            break
        ok, res = _run_step(
            trigger_type,
            scheduler.run,
            trigger_type,
            args.date,
            retries=args.retries,
            base_backoff=args.backoff,
        )
        _health_ping(trigger_type, ok=ok, extra=_compact_result(res))
        if not ok or res.get("failed"):
            exit_code = 1

    jlog("runner_finish", code=exit_code)
    _health_ping("runner_finish", ok=(exit_code == 0))
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
