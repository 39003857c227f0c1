"""
Signed, time-boxed tokens.

Format: base64url(payload_json) + "." + base64url(HMAC-SHA256(secret, payload_json)).
Timestamps are epoch milliseconds. A token is valid strictly before its
``exp`` and only for the purpose (``typ``) it was issued for.
"""

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Callable, Dict, Optional

SEPARATOR = "."

TYP_CHALLENGE = "challenge"
TYP_PASS = "pass"
TYP_SESSION = "session"


class InvalidToken(Exception):
    """Token failed verification. ``reason`` is for logs, never for responses."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class TokenService:
    def __init__(self, secret_key: str, clock: Callable[[], float] = time.time):
        if not secret_key:
            # Settings already enforces this; guard direct construction too
            raise ValueError("secret_key is required")
        self._key = secret_key.encode()
        self.clock = clock

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _sign(self, payload: bytes) -> bytes:
        return hmac.new(self._key, payload, hashlib.sha256).digest()

    def issue(self, typ: str, ttl_seconds: float, proof: Optional[Dict[str, Any]] = None) -> str:
        issued_at = self.now_ms()
        claims = {
            "typ": typ,
            "iat": issued_at,
            "exp": issued_at + int(ttl_seconds * 1000),
            "nonce": secrets.token_hex(16),
        }
        if proof is not None:
            claims["proof"] = proof
        payload = json.dumps(claims, sort_keys=True, separators=(",", ":")).encode()
        return f"{b64encode(payload)}{SEPARATOR}{b64encode(self._sign(payload))}"

    def verify(self, token: Optional[str], typ: str) -> Dict[str, Any]:
        """Return the claims of a valid token, raise InvalidToken otherwise."""
        if not token or not isinstance(token, str):
            raise InvalidToken("missing")

        payload_part, sep, tag_part = token.partition(SEPARATOR)
        if not sep or not payload_part or not tag_part:
            raise InvalidToken("malformed")

        try:
            payload = b64decode(payload_part)
            tag = b64decode(tag_part)
        except (binascii.Error, ValueError):
            raise InvalidToken("bad_encoding")
        # The decoder tolerates stray characters and padding bits; only the
        # canonical spelling is accepted so every bit of the text is covered.
        if b64encode(payload) != payload_part or b64encode(tag) != tag_part:
            raise InvalidToken("bad_encoding")

        if not hmac.compare_digest(tag, self._sign(payload)):
            raise InvalidToken("bad_signature")

        try:
            claims = json.loads(payload)
        except ValueError:
            raise InvalidToken("bad_payload")
        if not isinstance(claims, dict):
            raise InvalidToken("bad_payload")

        if claims.get("typ") != typ:
            raise InvalidToken("wrong_type")

        exp = claims.get("exp")
        if not isinstance(exp, int) or self.now_ms() >= exp:
            raise InvalidToken("expired")

        return claims
