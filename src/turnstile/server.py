"""
HTTP adapter: a thin FastAPI layer over the Gateway contract.

Endpoints are plain `def` functions, so FastAPI runs them on its worker
thread pool; ledger calls block a worker, never the event loop.

Speech and chat services are injected collaborators. They are only called
after the access guard lets the request through.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import logging
from typing import Any, Optional, Protocol

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from .access import AccessDecision, GuardedRequest, extract_session_id
from .errors import (
    AccessDeniedError,
    LedgerUnavailableError,
    RateLimitedError,
    SessionExpiredError,
    SessionNotFoundError,
    TurnstileError,
    ValidationError,
)
from .gateway import Gateway
from .sessions import Fingerprint

logger = logging.getLogger(__name__)


class Transcriber(Protocol):
    def transcribe(self, audio: bytes) -> str: ...


class Synthesizer(Protocol):
    def synthesize(self, text: str) -> bytes: ...


class ChatCompleter(Protocol):
    def complete(self, prompt: str, history: list[dict]) -> str: ...


class SessionBody(BaseModel):
    sessionId: Optional[str] = None


class CheckBody(BaseModel):
    sessionId: Optional[str] = None
    sender: Optional[str] = None


class VerifyBody(BaseModel):
    sessionId: Optional[str] = None
    txRef: str
    sender: Optional[str] = None


class WebhookBody(BaseModel):
    address: str
    txRef: Optional[str] = None


class ChatBody(BaseModel):
    sessionId: Optional[str] = None
    message: str
    history: list[dict] = []


class TranscribeBody(BaseModel):
    sessionId: Optional[str] = None
    audio: str  # base64


class SynthesizeBody(BaseModel):
    sessionId: Optional[str] = None
    text: str


class SweepBody(BaseModel):
    mode: str = "all"
    sessionId: Optional[str] = None


def _fingerprint(request: Request) -> Fingerprint:
    return Fingerprint(
        user_agent=request.headers.get("user-agent") or "unknown",
        ip_address=request.client.host if request.client else "unknown",
    )


def _session_id(request: Request, body: Optional[BaseModel] = None) -> Optional[str]:
    data = body.model_dump() if body is not None else None
    return extract_session_id(dict(request.headers), data) or request.query_params.get("sessionId")


def _required_session_id(request: Request, body: Optional[BaseModel] = None) -> str:
    session_id = _session_id(request, body)
    if not session_id:
        raise ValidationError("sessionId is required")
    return session_id


def create_app(
    gateway: Gateway,
    transcriber: Optional[Transcriber] = None,
    synthesizer: Optional[Synthesizer] = None,
    completer: Optional[ChatCompleter] = None,
) -> FastAPI:
    app = FastAPI(title="turnstile")
    app.state.gateway = gateway

    @app.exception_handler(TurnstileError)
    def handle_error(request: Request, exc: TurnstileError) -> JSONResponse:
        headers = {}
        if isinstance(exc, AccessDeniedError):
            status = exc.status_code
            body: dict[str, Any] = {
                "error": str(exc),
                "reason": exc.reason,
                "requires_payment": exc.requires_payment,
            }
        else:
            if isinstance(exc, ValidationError):
                status = 400
            elif isinstance(exc, SessionNotFoundError):
                status = 404
            elif isinstance(exc, SessionExpiredError):
                status = 410
            elif isinstance(exc, RateLimitedError):
                status = 429
                headers["Retry-After"] = str(max(1, int(exc.retry_after)))
            elif isinstance(exc, LedgerUnavailableError):
                status = 503
            else:
                logger.error("Unhandled %s on %s: %s", type(exc).__name__, request.url.path, exc)
                status = 500
            body = {"error": str(exc)}
        return JSONResponse(body, status_code=status, headers=headers)

    def require_admin(x_admin_token: Optional[str] = Header(default=None)) -> None:
        expected = gateway.config.server.admin_token
        if not expected or not x_admin_token or not hmac.compare_digest(
            x_admin_token.encode(), expected.encode()
        ):
            logger.warning("Rejected admin request")
            raise AccessDeniedError("Admin token required", status_code=401, reason="admin-token")

    def guarded(request: Request, body: BaseModel) -> GuardedRequest:
        return GuardedRequest(
            headers=dict(request.headers),
            body=body.model_dump(),
            fingerprint=_fingerprint(request),
        )

    @app.get("/")
    def root():
        return {"status": "ok"}

    # --- sessions ---

    @app.post("/session")
    def session(request: Request, body: SessionBody = SessionBody()):
        return gateway.create_or_resume_session(_session_id(request, body), _fingerprint(request))

    @app.get("/session/status")
    def session_status(request: Request):
        return gateway.session_status(_required_session_id(request))

    @app.post("/session/end")
    def session_end(request: Request, body: SessionBody = SessionBody()):
        return {"ended": gateway.end_session(_required_session_id(request, body))}

    # --- payments ---

    @app.get("/payment/instructions")
    def payment_instructions(request: Request):
        return gateway.get_payment_instructions(_required_session_id(request))

    @app.post("/payment/check")
    def payment_check(request: Request, body: CheckBody = CheckBody()):
        return gateway.check_payment(_required_session_id(request, body), sender=body.sender)

    @app.post("/payment/verify")
    def payment_verify(request: Request, body: VerifyBody):
        return gateway.verify_transaction(
            _required_session_id(request, body), body.txRef, sender=body.sender
        )

    @app.post("/payment/webhook")
    def payment_webhook(body: WebhookBody):
        return gateway.payment_webhook(body.address, body.txRef)

    # --- protected services ---

    @app.post("/chat")
    def chat(request: Request, body: ChatBody):
        def handle(req: GuardedRequest, decision: AccessDecision) -> dict:
            if completer is None:
                return JSONResponse({"error": "Chat service not configured"}, status_code=501)
            return {"reply": completer.complete(body.message, body.history), "access": decision.to_dict()}

        return gateway.guard.protect(handle)(guarded(request, body))

    @app.post("/transcribe")
    def transcribe(request: Request, body: TranscribeBody):
        def handle(req: GuardedRequest, decision: AccessDecision) -> dict:
            if transcriber is None:
                return JSONResponse({"error": "Transcription service not configured"}, status_code=501)
            try:
                audio = base64.b64decode(body.audio, validate=True)
            except (binascii.Error, ValueError):
                raise ValidationError("audio must be base64") from None
            return {"text": transcriber.transcribe(audio)}

        return gateway.guard.protect(handle)(guarded(request, body))

    @app.post("/synthesize")
    def synthesize(request: Request, body: SynthesizeBody):
        def handle(req: GuardedRequest, decision: AccessDecision):
            if synthesizer is None:
                return JSONResponse({"error": "Synthesis service not configured"}, status_code=501)
            return Response(synthesizer.synthesize(body.text), media_type="audio/mpeg")

        return gateway.guard.protect(handle)(guarded(request, body))

    # --- admin ---

    @app.post("/admin/sweep", dependencies=[Depends(require_admin)])
    def admin_sweep(body: SweepBody = SweepBody()):
        return gateway.admin_sweep(body.mode, body.sessionId).to_dict()

    @app.get("/admin/stats", dependencies=[Depends(require_admin)])
    def admin_stats():
        return gateway.admin_stats()

    @app.get("/admin/transfers", dependencies=[Depends(require_admin)])
    def admin_transfers():
        return gateway.admin_transfer_stats()

    return app
