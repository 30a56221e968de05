"""
Admission collaborators: the audit sink and the rate limiter.

Both are consulted by ``MedicalRAG.submit`` around the workflow. The defaults here
log audit events and keep rate-limit counters in process memory; deployments can
swap in anything satisfying the protocols.
"""

import hashlib
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Literal, Optional, Protocol, Tuple

from pydantic import BaseModel, Field

logger = logging.getLogger("PediatricRAG")

SENSITIVE_KEYS = ("password", "token", "api_key", "apikey", "ssn", "email", "phone")
MAX_DETAIL_CHARS = 1000

HIGH_RISK_ACTIONS = {"rate_limited", "phi_rejected", "unauthorized_access"}
MEDIUM_RISK_ACTIONS = {"medical_query"}


class AuditEvent(BaseModel):
    """One audit record."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    action: str
    resource: str = "rag"
    client_id: Optional[str] = None
    success: bool = True
    details: Dict[str, Any] = Field(default_factory=dict)
    risk_level: Literal["low", "medium", "high"] = "low"


def hash_client_id(client_id: Optional[str]) -> str:
    """Client identifiers are only stored and logged in hashed form."""
    return hashlib.sha256((client_id or "anonymous").encode("utf-8")).hexdigest()[:16]


def sanitize_details(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Redact sensitive keys and truncate long string values."""
    sanitized: Dict[str, Any] = {}
    for key, value in (details or {}).items():
        if key.lower() in SENSITIVE_KEYS:
            sanitized[key] = "[REDACTED]"
        elif isinstance(value, str) and len(value) > MAX_DETAIL_CHARS:
            sanitized[key] = value[:MAX_DETAIL_CHARS] + "... [TRUNCATED]"
        else:
            sanitized[key] = value
    return sanitized


def assess_risk(action: str, success: bool) -> Literal["low", "medium", "high"]:
    if action in HIGH_RISK_ACTIONS:
        return "high"
    if not success or action in MEDIUM_RISK_ACTIONS:
        return "medium"
    return "low"


def make_audit_event(
    action: str,
    client_id: Optional[str] = None,
    success: bool = True,
    details: Optional[Dict[str, Any]] = None,
) -> AuditEvent:
    return AuditEvent(
        action=action,
        client_id=hash_client_id(client_id),
        success=success,
        details=sanitize_details(details),
        risk_level=assess_risk(action, success),
    )


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Writes audit events to a dedicated logger."""

    def __init__(self, logger_name: str = "PediatricRAG.audit"):
        self.audit_logger = logging.getLogger(logger_name)

    def record(self, event: AuditEvent) -> None:
        self.audit_logger.info(
            f"AUDIT {event.action} success={event.success} risk={event.risk_level} "
            f"client={event.client_id} id={event.id} details={event.details}"
        )


def emit_audit(sink: Optional[AuditSink], event: AuditEvent) -> None:
    """Fire-and-forget delivery. A failing sink never fails the request."""
    if sink is None:
        return
    try:
        sink.record(event)
    except Exception as e:
        logger.error(f"Audit sink failed for action '{event.action}': {e}", exc_info=True)


class RateLimitDecision(BaseModel):
    allowed: bool
    remaining: int
    reset_in: float = Field(description="Seconds until the current window resets.")


class RateLimiter(Protocol):
    def check(self, client_id: Optional[str]) -> RateLimitDecision: ...


class FixedWindowRateLimiter:
    """
    Counts requests per hashed client id in fixed windows.

    Counters live in a plain dict; concurrent requests may race on the same
    entry, which at worst admits a request or two beyond the limit.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 15 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._windows: Dict[str, Tuple[int, float]] = {}

    def _cleanup(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._windows.items() if now > reset_at]
        for key in expired:
            del self._windows[key]

    def check(self, client_id: Optional[str]) -> RateLimitDecision:
        now = self.clock()
        self._cleanup(now)
        key = hash_client_id(client_id)

        entry = self._windows.get(key)
        if entry is None:
            self._windows[key] = (1, now + self.window_seconds)
            return RateLimitDecision(
                allowed=True,
                remaining=self.max_requests - 1,
                reset_in=self.window_seconds,
            )

        count, reset_at = entry
        if count >= self.max_requests:
            return RateLimitDecision(allowed=False, remaining=0, reset_in=reset_at - now)

        self._windows[key] = (count + 1, reset_at)
        return RateLimitDecision(
            allowed=True,
            remaining=self.max_requests - count - 1,
            reset_in=reset_at - now,
        )
