"""Tests for the proof-of-work predicate and proof scoring."""

from __future__ import annotations

import hashlib

import pytest

from pow import (
    ProofEngine,
    ProofSubmission,
    Signals,
    fingerprint_of,
    leading_zero_bits,
    solve,
    verify_proof,
)
from stores import FingerprintStore, ReplayCache
from tokens import TYP_CHALLENGE, TokenService

HUMAN_SIGNALS = {
    "screen": "1920x1080",
    "hardwareConcurrency": 8,
    "timezone": "Europe/Berlin",
    "pointerMoves": 14,
    "webdriver": False,
}


@pytest.fixture
def engine(clock) -> ProofEngine:
    tokens = TokenService("c" * 40, clock=clock)
    return ProofEngine(
        tokens,
        FingerprintStore(clock=clock),
        ReplayCache(clock=clock),
        difficulty=4,
        challenge_ttl_seconds=120,
        score_threshold=2,
        min_pointer_events=1,
        fallback_enabled=True,
        fallback_delay_seconds=8,
    )


def submission(material: str, nonce: str = "", signals=None, fallback: bool = False) -> ProofSubmission:
    return ProofSubmission.model_validate({
        "challenge": material,
        "nonce": nonce,
        "signals": HUMAN_SIGNALS if signals is None else signals,
        "fallback": fallback,
    })


@pytest.mark.parametrize("digest,expected", [
    (b"\x00\x00\xff", 16),
    (b"\x80", 0),
    (b"\x0f", 4),
    (b"\x00\x01", 15),
    (b"\x00\x00", 16),
])
def test_leading_zero_bits(digest, expected):
    assert leading_zero_bits(digest) == expected


def test_verify_proof_matches_sha256():
    nonce = solve("material", 8)
    assert nonce is not None
    digest = hashlib.sha256(f"material{nonce}".encode()).digest()
    assert leading_zero_bits(digest) >= 8
    assert verify_proof("material", nonce, 8)


def test_verify_proof_rejects_wrong_nonce():
    nonce = solve("material", 8)
    # A solution for one challenge says nothing about another
    assert not verify_proof("other-material", nonce, 40)
    assert not verify_proof("material", "", 0)
    assert not verify_proof("material", "9" * 65, 0)


def test_issue_challenge_is_signed_challenge_token(engine):
    challenge = engine.issue_challenge()
    claims = engine.tokens.verify(challenge.material, TYP_CHALLENGE)
    assert challenge.difficulty == 4
    assert claims["proof"]["difficulty"] == 4
    assert challenge.expires_at == claims["exp"]


def test_full_score_passes(engine):
    challenge = engine.issue_challenge()
    nonce = solve(challenge.material, challenge.difficulty)

    verdict = engine.evaluate(submission(challenge.material, nonce), "198.51.100.7")

    assert verdict.passed
    assert verdict.score == 3
    assert verdict.checks == {"pow": True, "fingerprint": True, "behavior": True}
    assert verdict.proof_claims() == {"difficulty": 4, "score": 3, "fallback": False}


def test_two_of_three_passes(engine):
    challenge = engine.issue_challenge()
    nonce = solve(challenge.material, challenge.difficulty)
    signals = dict(HUMAN_SIGNALS, pointerMoves=0)

    verdict = engine.evaluate(submission(challenge.material, nonce, signals), "198.51.100.7")

    assert verdict.passed
    assert verdict.checks["behavior"] is False


def test_pow_alone_is_not_enough(engine):
    challenge = engine.issue_challenge()
    nonce = solve(challenge.material, challenge.difficulty)
    signals = {"webdriver": True, "pointerMoves": 50}

    verdict = engine.evaluate(submission(challenge.material, nonce, signals), "198.51.100.7")

    assert not verdict.passed
    assert verdict.score == 1
    assert verdict.reason == "score_below_threshold"


def test_changed_fingerprint_is_soft_negative(engine):
    first = engine.issue_challenge()
    engine.evaluate(submission(first.material, solve(first.material, 4)), "198.51.100.7")

    second = engine.issue_challenge()
    changed = dict(HUMAN_SIGNALS, hardwareConcurrency=2)
    verdict = engine.evaluate(submission(second.material, solve(second.material, 4), changed), "198.51.100.7")

    assert verdict.checks["fingerprint"] is False
    assert verdict.passed


def test_challenge_cannot_be_used_twice(engine):
    challenge = engine.issue_challenge()
    nonce = solve(challenge.material, challenge.difficulty)
    assert engine.evaluate(submission(challenge.material, nonce), "198.51.100.7").passed

    verdict = engine.evaluate(submission(challenge.material, nonce), "198.51.100.7")
    assert not verdict.passed
    assert verdict.reason == "challenge_reused"


def test_expired_challenge_rejected(engine, clock):
    challenge = engine.issue_challenge()
    nonce = solve(challenge.material, challenge.difficulty)
    clock.advance(120)

    verdict = engine.evaluate(submission(challenge.material, nonce), "198.51.100.7")
    assert not verdict.passed
    assert verdict.reason == "challenge_expired"


def test_forged_challenge_rejected(engine, clock):
    forged = TokenService("d" * 40, clock=clock).issue(TYP_CHALLENGE, 120, proof={"difficulty": 0})
    verdict = engine.evaluate(submission(forged, "1"), "198.51.100.7")
    assert verdict.reason == "challenge_bad_signature"


def test_fallback_refused_before_delay(engine, clock):
    challenge = engine.issue_challenge()
    clock.advance(7)

    verdict = engine.evaluate(submission(challenge.material, signals={}, fallback=True), "198.51.100.7")
    assert not verdict.passed
    assert verdict.reason == "fallback_too_early"


def test_fallback_issues_after_delay(engine, clock):
    challenge = engine.issue_challenge()
    clock.advance(8)

    verdict = engine.evaluate(submission(challenge.material, signals={}, fallback=True), "198.51.100.7")
    assert verdict.passed
    assert verdict.fallback
    assert verdict.score == 0
    assert verdict.proof_claims()["fallback"] is True


def test_fallback_disabled(engine, clock):
    engine.fallback_enabled = False
    challenge = engine.issue_challenge()
    clock.advance(60)

    verdict = engine.evaluate(submission(challenge.material, signals={}, fallback=True), "198.51.100.7")
    assert not verdict.passed


def test_fallback_not_flagged_when_score_passes(engine, clock):
    challenge = engine.issue_challenge()
    clock.advance(10)
    nonce = solve(challenge.material, challenge.difficulty)

    verdict = engine.evaluate(submission(challenge.material, nonce, fallback=True), "198.51.100.7")
    assert verdict.passed
    assert verdict.fallback is False


def test_fingerprint_needs_all_stable_signals():
    assert fingerprint_of(Signals(**HUMAN_SIGNALS)) is not None
    assert fingerprint_of(Signals(screen="1x1", hardwareConcurrency=4)) is None


def wrong_nonce(material: str, difficulty: int) -> str:
    return next(n for n in (f"x{i}" for i in range(100)) if not verify_proof(material, n, difficulty))


def test_soft_signals_without_work_do_not_pass(engine):
    challenge = engine.issue_challenge()
    signals = {"screen": "1x1", "hardwareConcurrency": 1, "timezone": "UTC", "pointerMoves": 1}

    verdict = engine.evaluate(
        submission(challenge.material, wrong_nonce(challenge.material, challenge.difficulty), signals),
        "198.51.100.7",
    )

    assert not verdict.passed
    assert verdict.score == 2
    assert verdict.checks["pow"] is False
    assert verdict.reason == "pow_missing"
    assert not engine.replay.seen(engine.tokens.verify(challenge.material, TYP_CHALLENGE)["nonce"])
