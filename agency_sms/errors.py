"""Error taxonomy shared by the engine, the scheduler and the HTTP layer."""

from __future__ import annotations

from typing import Any, Dict, Optional


class SmsEngineError(RuntimeError):
    """Base class for engine errors."""


class ConfigurationError(SmsEngineError):
    """Required external configuration is missing. Fatal at startup."""


class NotFoundError(SmsEngineError):
    """A deal, agent, agency, conversation or message is missing at lookup time."""

    def __init__(self, kind: str, key: Any) -> None:
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class ConflictError(SmsEngineError):
    """Another writer already holds the uniqueness claim for this key."""

    def __init__(self, key: str, holder: Optional[str] = None) -> None:
        super().__init__(f"conflict on {key}")
        self.key = key
        self.holder = holder


class DraftStateError(SmsEngineError):
    """An operation required a draft message but found another status."""

    def __init__(self, message_id: str, status: Optional[str]) -> None:
        super().__init__(f"message {message_id} is not a draft (status={status})")
        self.message_id = message_id
        self.status = status


class DispatchError(SmsEngineError):
    """Transport failure; carries HTTP metadata and response body."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Any = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.payload = payload

    def __str__(self) -> str:  # pragma: no cover - string formatting helper
        base = super().__str__()
        if self.body in (None, "", b""):
            return base
        body_repr = str(self.body).strip()
        if not body_repr or body_repr in base:
            return base
        return f"{base} | body={body_repr}"


class OptedOutError(SmsEngineError):
    """The client revoked SMS consent; nothing may be sent to them."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"conversation {conversation_id} is opted out")
        self.conversation_id = conversation_id
