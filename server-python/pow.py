"""
Proof engine: SHA-256 proof-of-work plus soft browser signals.

The challenge material is itself a signed challenge token, so the server
keeps no per-challenge state. The client searches for a nonce such that
SHA-256(material + nonce) has ``difficulty`` leading zero bits; the server
checks it with one hash.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from stores import FingerprintStore, ReplayCache
from tokens import TYP_CHALLENGE, InvalidToken, TokenService

logger = logging.getLogger(__name__)

MAX_NONCE_LENGTH = 64


# =============================================================================
# Models
# =============================================================================

class Signals(BaseModel):
    screen: Optional[str] = None
    hardwareConcurrency: Optional[int] = None
    timezone: Optional[str] = None
    pointerMoves: int = Field(default=0, ge=0)
    webdriver: bool = False


class ProofSubmission(BaseModel):
    challenge: str
    nonce: str = Field(default="", max_length=MAX_NONCE_LENGTH)
    signals: Signals = Field(default_factory=Signals)
    fallback: bool = False


@dataclass
class Challenge:
    material: str
    difficulty: int
    expires_at: int


@dataclass
class ProofVerdict:
    passed: bool
    score: int = 0
    checks: Dict[str, bool] = field(default_factory=dict)
    fallback: bool = False
    reason: str = ""
    difficulty: int = 0

    def proof_claims(self) -> Dict[str, Any]:
        return {"difficulty": self.difficulty, "score": self.score, "fallback": self.fallback}


# =============================================================================
# Proof-of-work predicate
# =============================================================================

def leading_zero_bits(digest: bytes) -> int:
    zeros = 0
    for byte in digest:
        if byte == 0:
            zeros += 8
            continue
        for bit in range(7, -1, -1):
            if (byte >> bit) & 1:
                return zeros
            zeros += 1
    return zeros


def verify_proof(material: str, nonce: str, difficulty: int) -> bool:
    if not nonce or len(nonce) > MAX_NONCE_LENGTH:
        return False
    digest = hashlib.sha256(f"{material}{nonce}".encode()).digest()
    return leading_zero_bits(digest) >= difficulty


def solve(material: str, difficulty: int, limit: int = 10_000_000) -> Optional[str]:
    """Brute-force a nonce the way the challenge page does. Used by tests and tooling."""
    for i in range(limit):
        nonce = str(i)
        if verify_proof(material, nonce, difficulty):
            return nonce
    return None


def fingerprint_of(signals: Signals) -> Optional[str]:
    parts = [signals.screen, signals.hardwareConcurrency, signals.timezone]
    if any(p in (None, "") for p in parts):
        return None
    return hashlib.sha256("|".join(str(p) for p in parts).encode()).hexdigest()[:16]


# =============================================================================
# Proof Engine
# =============================================================================

class ProofEngine:
    def __init__(
        self,
        tokens: TokenService,
        fingerprints: FingerprintStore,
        replay: ReplayCache,
        difficulty: int = 16,
        challenge_ttl_seconds: int = 120,
        score_threshold: int = 2,
        min_pointer_events: int = 1,
        fallback_enabled: bool = True,
        fallback_delay_seconds: int = 8,
    ):
        self.tokens = tokens
        self.fingerprints = fingerprints
        self.replay = replay
        self.difficulty = difficulty
        self.challenge_ttl_seconds = challenge_ttl_seconds
        self.score_threshold = score_threshold
        self.min_pointer_events = min_pointer_events
        self.fallback_enabled = fallback_enabled
        self.fallback_delay_seconds = fallback_delay_seconds

    def issue_challenge(self) -> Challenge:
        material = self.tokens.issue(
            TYP_CHALLENGE, self.challenge_ttl_seconds, proof={"difficulty": self.difficulty}
        )
        claims = self.tokens.verify(material, TYP_CHALLENGE)
        return Challenge(material=material, difficulty=self.difficulty, expires_at=claims["exp"])

    def evaluate(self, submission: ProofSubmission, client_id: str) -> ProofVerdict:
        try:
            claims = self.tokens.verify(submission.challenge, TYP_CHALLENGE)
        except InvalidToken as e:
            return ProofVerdict(False, reason=f"challenge_{e.reason}")

        difficulty = int(claims.get("proof", {}).get("difficulty", self.difficulty))
        if self.replay.seen(claims["nonce"]):
            return ProofVerdict(False, reason="challenge_reused", difficulty=difficulty)

        checks = self._score(submission, client_id, difficulty)
        score = sum(1 for ok in checks.values() if ok)
        # The soft signals only grade a client that actually did the work
        passed = checks["pow"] and score >= self.score_threshold
        verdict = ProofVerdict(passed, score, checks, difficulty=difficulty)

        if not verdict.passed and submission.fallback:
            if self._fallback_due(claims):
                verdict.passed = True
                verdict.fallback = True
            else:
                verdict.reason = "fallback_too_early"
        elif not verdict.passed:
            verdict.reason = "score_below_threshold" if checks["pow"] else "pow_missing"

        if verdict.passed:
            self.replay.consume(claims["nonce"], claims["exp"])
        logger.debug("proof for %s: score=%d checks=%s fallback=%s",
                     client_id, score, checks, verdict.fallback)
        return verdict

    def _score(self, submission: ProofSubmission, client_id: str, difficulty: int) -> Dict[str, bool]:
        signals = submission.signals
        checks = {"pow": verify_proof(submission.challenge, submission.nonce, difficulty)}

        fp = fingerprint_of(signals)
        checks["fingerprint"] = fp is not None and self.fingerprints.observe(client_id, fp)

        checks["behavior"] = (
            not signals.webdriver and signals.pointerMoves >= self.min_pointer_events
        )
        return checks

    def _fallback_due(self, claims: Dict[str, Any]) -> bool:
        if not self.fallback_enabled:
            return False
        return self.tokens.now_ms() >= claims["iat"] + self.fallback_delay_seconds * 1000


def checks_failed(verdict: ProofVerdict) -> List[str]:
    return [name for name, ok in verdict.checks.items() if not ok]
