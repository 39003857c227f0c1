"""Session memory: a signed cookie that lets a verified client skip the challenge."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from starlette.requests import cookie_parser
from starlette.responses import Response

from stores import ReplayCache
from tokens import TYP_SESSION, InvalidToken, TokenService

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    VALID = "valid"
    ABSENT = "absent"
    EXPIRED = "expired"


@dataclass(frozen=True)
class CookieDirective:
    key: str
    value: str
    max_age: int
    secure: bool = True
    httponly: bool = True
    samesite: str = "lax"
    path: str = "/"

    def apply(self, response: Response) -> None:
        response.set_cookie(
            key=self.key,
            value=self.value,
            max_age=self.max_age,
            path=self.path,
            secure=self.secure,
            httponly=self.httponly,
            samesite=self.samesite,
        )


def read_cookie(cookie_header: Optional[str], name: str) -> Optional[str]:
    if not cookie_header:
        return None
    # Browser-style parsing: one unreadable sibling cookie must not hide ours
    return cookie_parser(cookie_header).get(name) or None


class SessionMemory:
    def __init__(
        self,
        tokens: TokenService,
        ttl_seconds: int = 12 * 60 * 60,
        cookie_name: str = "__gate",
        secure: bool = True,
    ):
        self.tokens = tokens
        self.ttl_seconds = ttl_seconds
        self.cookie_name = cookie_name
        self.secure = secure
        self.revoked = ReplayCache(clock=tokens.clock)

    def remember(self, pass_claims: dict) -> CookieDirective:
        marker = self.tokens.issue(TYP_SESSION, self.ttl_seconds, proof=pass_claims.get("proof"))
        return CookieDirective(
            key=self.cookie_name,
            value=marker,
            max_age=self.ttl_seconds,
            secure=self.secure,
        )

    def recall(self, cookie_header: Optional[str]) -> SessionState:
        marker = read_cookie(cookie_header, self.cookie_name)
        if not marker:
            return SessionState.ABSENT
        try:
            claims = self.tokens.verify(marker, TYP_SESSION)
        except InvalidToken as e:
            logger.debug("session marker rejected: %s", e.reason)
            return SessionState.EXPIRED
        if self.revoked.seen(claims["nonce"]):
            return SessionState.EXPIRED
        return SessionState.VALID

    def revoke(self, marker: str) -> bool:
        """Invalidate one marker before its expiry. False if it was not valid."""
        try:
            claims = self.tokens.verify(marker, TYP_SESSION)
        except InvalidToken:
            return False
        self.revoked.consume(claims["nonce"], claims["exp"])
        return True
