"""
Link Gate Server - Python/FastAPI Implementation

Run: uvicorn server:create_app --factory --host 0.0.0.0 --port 3000
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask
from starlette.responses import Response

import events
from challenge import render_challenge
from detection import Classifier, RequestDescriptor, resolve_client_id
from events import EventSink
from pow import ProofEngine, ProofSubmission, checks_failed
from session import SessionMemory, SessionState
from settings import Settings, load_settings
from stores import FingerprintStore, RateLimiter, ReplayCache
from tokens import TYP_PASS, InvalidToken, TokenService

logger = logging.getLogger(__name__)

GENERIC_DENIAL = "invalid or expired"

NO_INDEX_HEADERS = {
    "Cache-Control": "no-store",
    "X-Robots-Tag": "noindex, nofollow, noarchive",
    "Referrer-Policy": "no-referrer",
}


class MalformedRequest(Exception):
    pass


# =============================================================================
# Gateway state machine
# =============================================================================

class State(str, Enum):
    START = "start"
    RATE_CHECKED = "rate_checked"
    CLASSIFIED = "classified"
    SESSION_VALID = "session_valid"
    PROOF_VERIFIED = "proof_verified"
    CHALLENGE_ISSUED = "challenge_issued"
    TOKEN_ISSUED = "token_issued"
    PREVIEW = "preview"
    REDIRECT = "redirect"
    REJECTED = "rejected"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


@dataclass
class Outcome:
    state: State
    response: Response
    trail: List[State] = field(default_factory=list)


class Gateway:
    def __init__(
        self,
        settings: Settings,
        classifier: Classifier,
        rate_limiter: RateLimiter,
        tokens: TokenService,
        proofs: ProofEngine,
        sessions: SessionMemory,
        redeemed: ReplayCache,
        sink: EventSink,
    ):
        self.settings = settings
        self.classifier = classifier
        self.rate_limiter = rate_limiter
        self.tokens = tokens
        self.proofs = proofs
        self.sessions = sessions
        self.redeemed = redeemed
        self.sink = sink

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        clock: Callable[[], float] = time.time,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "Gateway":
        tokens = TokenService(settings.secret_key.get_secret_value(), clock=clock)
        proofs = ProofEngine(
            tokens,
            FingerprintStore(clock=clock),
            ReplayCache(clock=clock),
            difficulty=settings.pow_difficulty,
            challenge_ttl_seconds=settings.challenge_ttl_seconds,
            score_threshold=settings.score_threshold,
            min_pointer_events=settings.min_pointer_events,
            fallback_enabled=settings.fallback_enabled,
            fallback_delay_seconds=settings.fallback_delay_seconds,
        )
        sessions = SessionMemory(
            tokens,
            ttl_seconds=settings.session_ttl_seconds,
            cookie_name=settings.session_cookie_name,
            secure=settings.session_cookie_secure,
        )
        return cls(
            settings,
            Classifier.from_settings(settings),
            RateLimiter(settings.rate_limit_window_ms, settings.rate_limit_max, clock=clock),
            tokens,
            proofs,
            sessions,
            ReplayCache(clock=clock),
            EventSink(settings.webhook_url, settings.webhook_timeout_seconds, clock=clock,
                      transport=transport),
        )

    async def handle(self, req: RequestDescriptor) -> Outcome:
        trail = [State.START]
        recorded: List[Dict[str, Any]] = []

        def emit(event: str, **detail):
            recorded.append(self.sink.record(event, req, **detail))

        try:
            outcome = self._run(req, trail, emit)
        except Exception as e:
            # Nothing may reach a framework error page
            logger.exception("gate failure for %s", req.client_id)
            emit(events.ERROR, error=type(e).__name__)
            trail.append(State.ERROR)
            outcome = Outcome(State.ERROR, PlainTextResponse("internal error", status_code=500), trail)

        wanted = [entry for entry in recorded if self.sink.wants(entry)]
        if wanted:
            outcome.response.background = BackgroundTask(self.sink.deliver, wanted)
        return outcome

    def _run(self, req: RequestDescriptor, trail: List[State], emit) -> Outcome:
        def finish(state: State, response: Response) -> Outcome:
            trail.append(state)
            return Outcome(state, response, trail)

        # 1. Rate limit before anything else
        if not self.rate_limiter.admit(req.client_id):
            emit(events.RATE_LIMITED)
            return finish(State.RATE_LIMITED, Response(status_code=429))
        trail.append(State.RATE_CHECKED)

        # 2. Classification; rejected clients get nothing to calibrate against
        verdict = self.classifier.classify(req)
        if not verdict.passed:
            emit(events.REJECTED, reason=verdict.reason)
            return finish(State.REJECTED, Response(status_code=204))
        trail.append(State.CLASSIFIED)

        method = req.method.upper()
        if method == "HEAD":
            return finish(State.PREVIEW, Response(status_code=200, headers=NO_INDEX_HEADERS))
        if method == "POST":
            return self._submit_proof(req, trail, emit, finish)

        # 3. Remembered session
        if self.sessions.recall(req.cookie_header) is SessionState.VALID:
            trail.append(State.SESSION_VALID)
            emit(events.REDIRECT, via="session")
            return finish(State.REDIRECT, self._redirect())

        # 4. Pass token redemption
        token = req.query.get(self.settings.token_param)
        if token is not None:
            claims = self._redeem(token)
            if claims is None:
                emit(events.TOKEN_INVALID)
                return finish(State.REJECTED, PlainTextResponse(
                    GENERIC_DENIAL, status_code=403, headers=NO_INDEX_HEADERS))
            trail.append(State.PROOF_VERIFIED)
            response = self._redirect()
            self.sessions.remember(claims).apply(response)
            emit(events.REDIRECT, via="token")
            return finish(State.REDIRECT, response)

        # 5. Challenge
        challenge = self.proofs.issue_challenge()
        html = render_challenge(
            challenge,
            token_param=self.settings.token_param,
            fallback_enabled=self.settings.fallback_enabled,
            fallback_delay_seconds=self.settings.fallback_delay_seconds,
        )
        emit(events.CHALLENGE_ISSUED, difficulty=challenge.difficulty)
        return finish(State.CHALLENGE_ISSUED, HTMLResponse(html, headers=NO_INDEX_HEADERS))

    def _submit_proof(self, req: RequestDescriptor, trail: List[State], emit, finish) -> Outcome:
        if not isinstance(req.body, dict):
            raise MalformedRequest("proof submission is not a JSON object")
        try:
            submission = ProofSubmission.model_validate(req.body)
        except ValidationError as e:
            raise MalformedRequest(f"{e.error_count()} invalid field(s)") from None

        verdict = self.proofs.evaluate(submission, req.client_id)
        if not verdict.passed:
            emit(events.PROOF_FAILED, reason=verdict.reason,
                 failed=",".join(checks_failed(verdict)) or "-")
            return finish(State.REJECTED, JSONResponse(
                {"error": GENERIC_DENIAL}, status_code=403, headers=NO_INDEX_HEADERS))

        trail.append(State.PROOF_VERIFIED)
        token = self.tokens.issue(TYP_PASS, self.settings.token_ttl_seconds, proof=verdict.proof_claims())
        claims = self.tokens.verify(token, TYP_PASS)
        emit(events.TOKEN_ISSUED, score=verdict.score, fallback=verdict.fallback)
        return finish(State.TOKEN_ISSUED, JSONResponse(
            {"token": token, "expiresAt": claims["exp"]}, headers=NO_INDEX_HEADERS))

    def _redeem(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            claims = self.tokens.verify(token, TYP_PASS)
        except InvalidToken as e:
            logger.debug("pass token rejected: %s", e.reason)
            return None
        if not self.redeemed.consume(claims["nonce"], claims["exp"]):
            logger.debug("pass token replayed")
            return None
        return claims

    def _redirect(self) -> Response:
        return RedirectResponse(
            self.settings.destination_url,
            status_code=302,
            headers={"Cache-Control": "no-store", "Referrer-Policy": "no-referrer"},
        )


# =============================================================================
# HTTP surface
# =============================================================================

async def describe(request: Request, settings: Settings) -> RequestDescriptor:
    headers = request.headers
    peer = request.client.host if request.client else None

    body = None
    if request.method.upper() == "POST":
        raw = await request.body()
        try:
            parsed = json.loads(raw) if raw else None
        except ValueError:
            parsed = None
        body = parsed if isinstance(parsed, dict) else None

    return RequestDescriptor(
        client_id=resolve_client_id(headers, settings.client_ip_headers, peer),
        user_agent=headers.get("user-agent"),
        method=request.method,
        path=request.url.path,
        query=dict(request.query_params),
        cookie_header=headers.get("cookie", ""),
        country=headers.get(settings.country_header),
        asn=headers.get(settings.asn_header),
        body=body,
    )


def create_app(
    settings: Optional[Settings] = None,
    clock: Callable[[], float] = time.time,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the gate. Raises ConfigurationError when settings are missing or unsafe."""
    settings = settings or load_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    gateway = Gateway.from_settings(settings, clock=clock, transport=transport)
    app = FastAPI(title="Link Gate", version="1.0.0", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.gateway = gateway

    @app.exception_handler(Exception)
    async def internal_error(request: Request, exc: Exception):
        logger.error("unhandled error on %s: %s", request.url.path, type(exc).__name__)
        return PlainTextResponse("internal error", status_code=500)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.api_route("/{path:path}", methods=["GET", "HEAD", "POST"])
    async def gate(request: Request, path: str = ""):
        req = await describe(request, settings)
        outcome = await gateway.handle(req)
        return outcome.response

    return app


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 3000))
    uvicorn.run(create_app(), host="0.0.0.0", port=port)
