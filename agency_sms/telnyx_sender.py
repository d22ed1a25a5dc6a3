# agency_sms/telnyx_sender.py
"""
📡 Telnyx Sender: outbound SMS transport
- Telnyx v2 messages endpoint (JSON body, bearer auth)
- Every transport failure, timeouts included, surfaces as TelnyxError
- Never retries on its own; callers decide what a failure means
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

import requests

from agency_sms.config import settings
from agency_sms.errors import DispatchError
from agency_sms.runtime import get_logger, normalize_phone

logger = get_logger("telnyx_sender")

MAX_BODY_CHARS = 1600


class TelnyxError(DispatchError):
    """Dispatch failure raised by the Telnyx transport."""


# =========================
# Small helpers
# =========================
def _has_value(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def _validate_payload(payload: Dict[str, Any]) -> None:
    """Ensure required transport fields are present and sane."""

    problems: List[str] = []

    for field in ("from", "to"):
        if not _has_value(payload.get(field)):
            problems.append(f"{field} is required")

    text = payload.get("text")
    if not _has_value(text):
        problems.append("text is required")
    elif len(str(text)) > MAX_BODY_CHARS:
        problems.append(f"text exceeds {MAX_BODY_CHARS} characters")

    if problems:
        raise TelnyxError("Invalid Telnyx payload: " + "; ".join(problems), payload=dict(payload))


def _extract_error_body(resp: Any) -> Any:
    """Parse JSON body if available; fallback to plain text."""
    if resp is None:
        return None
    try:
        return resp.json()
    except ValueError:
        text = getattr(resp, "text", None)
        return text.strip() if text else None


def _summarize_error_body(body: Any) -> str:
    if body is None:
        return ""
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0] if isinstance(errors[0], dict) else {}
            detail = first.get("detail") or first.get("title")
            if _has_value(detail):
                return str(detail)
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if _has_value(value):
                return str(value)
        return str(body)
    return str(body)


def _http_post(url: str, payload: Dict[str, Any], api_key: str, timeout: float, dry_run: bool = False) -> Dict[str, Any]:
    if dry_run:
        logger.info("[DRY RUN] POST %s payload=%s", url, payload)
        return {"data": {"id": f"dry_run_{int(time.time() * 1000)}", "to": [{"status": "queued"}]}}

    try:
        resp = requests.post(
            url,
            json=payload,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            timeout=timeout,
        )
    except requests.exceptions.Timeout as exc:
        raise TelnyxError(f"Telnyx request timed out after {timeout}s", payload=payload) from exc
    except requests.exceptions.RequestException as exc:
        raise TelnyxError(f"Telnyx request failed: {exc}", payload=payload) from exc

    if resp.status_code == 429:
        raise TelnyxError(
            f"429 rate limited; retry_after={resp.headers.get('Retry-After')}",
            status_code=429,
            body=resp.headers.get("Retry-After"),
            payload=payload,
        )
    if resp.status_code >= 400:
        body = _extract_error_body(resp)
        logger.error("Telnyx %s error body: %s", resp.status_code, body)
        summary = _summarize_error_body(body)
        message = f"Telnyx HTTP {resp.status_code}"
        if summary:
            message = f"{message}: {summary}"
        raise TelnyxError(message, status_code=resp.status_code, body=body, payload=payload)
    try:
        return resp.json()
    except ValueError:
        return {"raw": resp.text}


# =========================
# Dispatcher
# =========================
class TelnyxDispatcher:
    """``send(from_number, to, text) -> {"provider_id": ...}`` over Telnyx."""

    def __init__(self, api_key: Optional[str], api_url: str, *, timeout: float = 15.0, dry_run: bool = False) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.timeout = timeout
        self.dry_run = dry_run

    def send(self, from_number: Optional[str], to: Optional[str], text: str) -> Dict[str, Any]:
        if not self.api_key and not self.dry_run:
            raise TelnyxError("TELNYX_API_KEY is not configured")

        payload = {
            "from": normalize_phone(from_number),
            "to": normalize_phone(to),
            "text": (text or "").strip(),
        }
        _validate_payload(payload)

        logger.info("📤 Sending SMS → %s: %s...", payload["to"], payload["text"][:60])
        resp = _http_post(self.api_url, payload, self.api_key or "", self.timeout, dry_run=self.dry_run)

        data = (resp or {}).get("data") or {}
        provider_id = data.get("id")
        if not provider_id:
            raise TelnyxError("Telnyx response carried no message id", body=resp, payload=payload)
        recipients = data.get("to") or []
        status = (recipients[0] or {}).get("status") if recipients else None
        return {"provider_id": provider_id, "status": status or "queued"}


def build_dispatcher() -> TelnyxDispatcher:
    s = settings()
    return TelnyxDispatcher(
        s.TELNYX_API_KEY,
        s.TELNYX_API_URL,
        timeout=s.DISPATCH_TIMEOUT_SEC,
        dry_run=s.TELNYX_DRY_RUN,
    )
