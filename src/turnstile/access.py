"""
Access Evaluator and Access Middleware.

The evaluator turns session state into exactly one decision:

    unknown-session -> deny
    paid-active     -> allow   (checked before the trial, so a payment that
                                lands as the trial runs out never bounces)
    trial-active    -> allow
    expired         -> deny

The guard sits in front of protected operations. It pulls the session id out
of the request, asks the evaluator, and maps the answer onto an HTTP-style
outcome.
"""

from __future__ import annotations

import functools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from .errors import AccessDeniedError
from .sessions import Fingerprint, SessionRecord, SessionStore, is_valid_session_id
from .verifier import PaymentVerifier

logger = logging.getLogger(__name__)


class AccessReason(str, Enum):
    UNKNOWN_SESSION = "unknown-session"
    PAID_ACTIVE = "paid-active"
    TRIAL_ACTIVE = "trial-active"
    EXPIRED = "expired"


@dataclass(frozen=True)
class AccessDecision:
    has_access: bool
    reason: AccessReason
    trial_expires_at: Optional[float] = None
    access_expires_at: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "has_access": self.has_access,
            "reason": self.reason.value,
            "trial_expires_at": self.trial_expires_at,
            "access_expires_at": self.access_expires_at,
        }


UNKNOWN = AccessDecision(False, AccessReason.UNKNOWN_SESSION)


class AccessEvaluator:
    def __init__(
        self,
        sessions: SessionStore,
        verifier: Optional[PaymentVerifier] = None,
        verify_on_check: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.sessions = sessions
        self.verifier = verifier
        self.verify_on_check = verify_on_check
        self._clock = clock

    def check_access(
        self,
        session_id: str,
        fingerprint: Optional[Fingerprint] = None,
    ) -> AccessDecision:
        """Decide access for a session. Never raises."""
        try:
            return self._check(session_id, fingerprint)
        except Exception:
            logger.exception("Access check failed for session %s", (session_id or "")[:8])
            return UNKNOWN

    def _check(self, session_id: str, fingerprint: Optional[Fingerprint]) -> AccessDecision:
        if not self.sessions.validate(session_id, fingerprint):
            return UNKNOWN
        record = self.sessions.get(session_id)
        if record is None:
            return UNKNOWN

        decision = self.decide(record)
        if decision.reason == AccessReason.EXPIRED and self.verify_on_check and self.verifier:
            result = self.verifier.verify_payment(session_id)
            if result.verified:
                record = self.sessions.get(session_id) or record
                decision = self.decide(record)
        return decision

    def decide(self, record: SessionRecord) -> AccessDecision:
        now = self._clock()
        if record.is_paid and record.access_expires_at is not None and now < record.access_expires_at:
            reason, allowed = AccessReason.PAID_ACTIVE, True
        elif now < record.trial_expires_at:
            reason, allowed = AccessReason.TRIAL_ACTIVE, True
        else:
            reason, allowed = AccessReason.EXPIRED, False
        return AccessDecision(
            has_access=allowed,
            reason=reason,
            trial_expires_at=record.trial_expires_at,
            access_expires_at=record.access_expires_at,
        )


@dataclass
class GuardedRequest:
    """The parts of an incoming request the guard looks at."""

    headers: Mapping[str, str]
    body: Optional[Mapping[str, Any]] = None
    fingerprint: Optional[Fingerprint] = None


@dataclass
class AccessOutcome:
    allowed: bool
    status_code: int
    reason: str
    requires_payment: bool = False
    decision: Optional[AccessDecision] = None
    session_id: Optional[str] = None

    def to_dict(self) -> dict:
        d = {
            "allowed": self.allowed,
            "reason": self.reason,
            "requires_payment": self.requires_payment,
        }
        if self.decision:
            d.update(self.decision.to_dict())
        return d


def extract_session_id(
    headers: Mapping[str, str],
    body: Optional[Mapping[str, Any]] = None,
) -> Optional[str]:
    """Session id from Authorization: Bearer, X-Session-ID, or body.sessionId."""
    lowered = {k.lower(): v for k, v in headers.items()}
    auth = lowered.get("authorization", "")
    if auth.lower().startswith("bearer "):
        token = auth[7:].strip()
        if token:
            return token
    header_id = lowered.get("x-session-id", "").strip()
    if header_id:
        return header_id
    if body:
        value = body.get("sessionId") or body.get("session_id")
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class AccessGuard:
    def __init__(self, evaluator: AccessEvaluator):
        self.evaluator = evaluator

    def evaluate(self, request: GuardedRequest) -> AccessOutcome:
        session_id = extract_session_id(request.headers, request.body)
        if session_id is None:
            logger.info("Access attempt without session id")
            return AccessOutcome(False, 401, "missing-session")
        if not is_valid_session_id(session_id):
            logger.info("Access attempt with malformed session id")
            return AccessOutcome(False, 400, "invalid-session-id")

        decision = self.evaluator.check_access(session_id, request.fingerprint)
        logger.info(
            "Access %s for session %s (%s)",
            "granted" if decision.has_access else "denied",
            session_id[:8], decision.reason.value,
        )
        if decision.has_access:
            return AccessOutcome(True, 200, decision.reason.value, decision=decision, session_id=session_id)
        return AccessOutcome(
            False,
            403,
            decision.reason.value,
            requires_payment=decision.reason == AccessReason.EXPIRED,
            decision=decision,
            session_id=session_id,
        )

    def protect(self, handler: Callable[[GuardedRequest, AccessDecision], Any]):
        """Wrap `handler(request, decision)`; denied calls raise AccessDeniedError."""

        @functools.wraps(handler)
        def guarded(request: GuardedRequest):
            outcome = self.evaluate(request)
            if not outcome.allowed:
                raise AccessDeniedError(
                    f"Access denied: {outcome.reason}",
                    status_code=outcome.status_code,
                    reason=outcome.reason,
                    requires_payment=outcome.requires_payment,
                )
            return handler(request, outcome.decision)

        return guarded
